"""Durable, append-only event log.

Events are appended one JSON object per line to a file per correlation
id (`<directory>/<request_id>.jsonl`). Ids that are not filesystem-safe are
sanitized and suffixed with a short digest so distinct ids never share a
file. Write handles are opened lazily; at most `max_open_handles` stay open,
the least recently written closing first, and `release` closes one once its
history is complete. Every write is flushed so a reader in another
instance (or process) sees it immediately.

Reads always come from disk, so a freshly constructed log can replay the
history written by an earlier one.

Source:
- src/agentflow/events/models.py (PipelineEvent)
"""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import List, TextIO

from pydantic import ValidationError

from agentflow.events.models import PipelineEvent


logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")

DEFAULT_MAX_OPEN_HANDLES = 64


class EventLog(ABC):
    """Append-only storage for published events, keyed by correlation id."""

    @abstractmethod
    def append(self, event: PipelineEvent) -> None:
        """Persist event at the end of its correlation id's history.

        Raises:
            OSError: If the event cannot be written.
        """

    @abstractmethod
    def read(self, request_id: str) -> List[PipelineEvent]:
        """Return the stored history for request_id in append order."""

    def release(self, request_id: str) -> None:
        """Drop resources held for request_id. Later appends may reacquire them."""

    def close(self) -> None:
        """Release any open resources. The default does nothing."""


class JsonlEventLog(EventLog):
    """EventLog writing JSONL files under a directory.

    Attributes:
        directory: Where the per-id files live. Created on first append.
        max_open_handles: Cap on write handles kept open at once.

    Example:
        >>> log = JsonlEventLog(Path("/var/lib/agentflow/events"))
        >>> log.append(event)
        >>> JsonlEventLog(Path("/var/lib/agentflow/events")).read(event.request_id)
        [PipelineEvent(...)]
    """

    def __init__(self, directory: Path, max_open_handles: int = DEFAULT_MAX_OPEN_HANDLES):
        self.directory = Path(directory)
        self.max_open_handles = max(1, max_open_handles)
        self._handles: "OrderedDict[str, TextIO]" = OrderedDict()

    def path_for(self, request_id: str) -> Path:
        """Return the log file path for request_id."""
        safe_id = _UNSAFE_ID_CHARS.sub("_", request_id)
        if safe_id != request_id or safe_id in ("", ".", ".."):
            digest = hashlib.sha256(request_id.encode("utf-8")).hexdigest()[:12]
            safe_id = f"{safe_id}-{digest}"
        return self.directory / f"{safe_id}.jsonl"

    def append(self, event: PipelineEvent) -> None:
        handle = self._handles.get(event.request_id)
        if handle is None or handle.closed:
            self.directory.mkdir(parents=True, exist_ok=True)
            handle = open(self.path_for(event.request_id), "a", encoding="utf-8")
            self._handles[event.request_id] = handle
            while len(self._handles) > self.max_open_handles:
                _, oldest = self._handles.popitem(last=False)
                oldest.close()
        else:
            self._handles.move_to_end(event.request_id)

        handle.write(event.to_json_line() + "\n")
        handle.flush()

    def read(self, request_id: str) -> List[PipelineEvent]:
        path = self.path_for(request_id)
        if not path.exists():
            return []

        events: List[PipelineEvent] = []
        with open(path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(PipelineEvent.model_validate_json(line))
                except ValidationError:
                    logger.warning(
                        "Skipping malformed event log line",
                        extra={"path": str(path), "line_number": line_number},
                    )
        return events

    @property
    def open_handles(self) -> int:
        return len(self._handles)

    def release(self, request_id: str) -> None:
        """Close the write handle for one correlation id, if open."""
        handle = self._handles.pop(request_id, None)
        if handle is not None and not handle.closed:
            handle.close()

    def close(self) -> None:
        for request_id in list(self._handles):
            self.release(request_id)
