"""Session registry with transition publishing and optional persistence.

SessionStore is the single owner of every Session. Status changes go
through transition(), which checks the session's state machine, publishes
a session.transition event and persists the record.

When a persist path is configured, the full set of session records is
written as one JSON document after every change and reloaded at startup.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from agentflow.events.bus import EventBus
from agentflow.events.models import EventType
from agentflow.sessions.models import Session, utcnow
from agentflow.state.models import SessionStatus


logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory session registry keyed by session id.

    Attributes:
        bus: Event bus for transition events.
        persist_path: JSON file the records are mirrored to, if any.
    """

    def __init__(
        self,
        bus: EventBus,
        persist_path: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.bus = bus
        self.persist_path = persist_path
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    def add(self, session: Session) -> None:
        self._sessions[session.id] = session
        self.save()

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list(self, status: Optional[SessionStatus] = None) -> List[Session]:
        sessions = list(self._sessions.values())
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        return sessions

    def remove(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None)
        if removed is None:
            return False
        self.save()
        return True

    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_active)

    def active_for_issue(self, issue_number: int) -> Optional[Session]:
        """Most recent active session for an issue, ignoring prompt-only sessions."""
        candidates = [
            s for s in self._sessions.values()
            if s.is_active and not s.is_prompt_only and s.issue.number == issue_number
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    def find_for_signal(
        self,
        branch: Optional[str] = None,
        pr_number: Optional[int] = None,
        issue_number: Optional[int] = None,
    ) -> Optional[Session]:
        """Find the active session a code-host signal belongs to.

        Matches by PR number first, then by branch, then by issue number.
        """
        active = [s for s in self._sessions.values() if s.is_active]
        if pr_number:
            for session in active:
                if session.pr_number == pr_number:
                    return session
        if branch:
            for session in active:
                if session.branch == branch:
                    return session
        if issue_number:
            return self.active_for_issue(issue_number)
        return None

    def touch(self, session: Session) -> None:
        """Record activity on a session and persist it."""
        session.touch(self._clock())
        self.save()

    async def transition(
        self,
        session: Session,
        to_status: SessionStatus,
        reason: Optional[str] = None,
    ) -> bool:
        """Move a session to to_status if its state machine allows it.

        Returns:
            True if the transition happened. Rejections are logged, not raised.
        """
        from_status = session.status
        if not session.machine.try_transition(to_status):
            return False

        session.touch(self._clock())
        logger.info(
            "Session transitioned",
            extra={
                "session_id": session.id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "reason": reason,
            },
        )
        data = {"from": from_status.value, "to": to_status.value}
        if reason:
            data["reason"] = reason
        await self.bus.publish(EventType.SESSION_TRANSITION, session.id, data)
        self.save()
        return True

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save(self) -> None:
        """Write every record to persist_path. No-op when persistence is off."""
        if self.persist_path is None:
            return
        records = [s.to_dict() for s in self._sessions.values()]
        tmp_path = self.persist_path.with_suffix(self.persist_path.suffix + ".tmp")
        try:
            self.persist_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(records, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.persist_path)
        except OSError:
            logger.exception(
                "Failed to persist sessions",
                extra={"path": str(self.persist_path)},
            )

    def load(self) -> int:
        """Load records from persist_path. Returns the number loaded."""
        if self.persist_path is None or not self.persist_path.exists():
            return 0
        try:
            records = json.loads(self.persist_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception(
                "Failed to read persisted sessions",
                extra={"path": str(self.persist_path)},
            )
            return 0

        loaded = 0
        for record in records:
            try:
                session = Session.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed session record",
                    extra={"error": str(e), "session_id": record.get("id")},
                )
                continue
            self._sessions[session.id] = session
            loaded += 1

        logger.info("Loaded persisted sessions", extra={"count": loaded})
        return loaded

    def __len__(self) -> int:
        return len(self._sessions)
