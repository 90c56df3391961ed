"""Workspace tool surface for agents.

WorkspaceTools implements the ToolRunner protocol with the tools agent
roles are granted:
- bash: run a shell command in the worktree with a timeout
- read_file: read a text file, optionally a line window
- edit_file: replace a unique string in a file, or create a file
- glob: list files matching a pattern
- grep: search file contents with a regular expression

Every path is resolved against the worktree and rejected if it escapes it.
Expected failures come back as ToolResult(is_error=True) so the model can
react to them.

Source:
- src/agentflow/agents/executor.py (ToolRunner)
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List

from agentflow.agents.models import ToolCall, ToolResult, ToolSpec


logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 30000
MAX_MATCHES = 200


class ToolInputError(Exception):
    """Raised for tool arguments the model got wrong."""


TOOL_SPECS: Dict[str, ToolSpec] = {
    "bash": ToolSpec(
        name="bash",
        description="Run a shell command in the worktree and return its output.",
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string"},
                "timeout_seconds": {"type": "integer", "minimum": 1},
            },
            "required": ["command"],
        },
    ),
    "read_file": ToolSpec(
        name="read_file",
        description="Read a text file relative to the worktree.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "offset": {"type": "integer", "minimum": 0},
                "limit": {"type": "integer", "minimum": 1},
            },
            "required": ["path"],
        },
    ),
    "edit_file": ToolSpec(
        name="edit_file",
        description=(
            "Replace old_string with new_string in a file. old_string must occur "
            "exactly once. With an empty old_string the file is created."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "old_string": {"type": "string"},
                "new_string": {"type": "string"},
            },
            "required": ["path", "new_string"],
        },
    ),
    "glob": ToolSpec(
        name="glob",
        description="List worktree files matching a glob pattern such as src/**/*.py.",
        parameters={
            "type": "object",
            "properties": {"pattern": {"type": "string"}},
            "required": ["pattern"],
        },
    ),
    "grep": ToolSpec(
        name="grep",
        description="Search file contents with a regular expression.",
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "glob": {"type": "string"},
            },
            "required": ["pattern"],
        },
    ),
}


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... [truncated {len(text) - MAX_OUTPUT_CHARS} chars]"


class WorkspaceTools:
    """ToolRunner confined to a worktree.

    Attributes:
        bash_timeout_seconds: Default timeout for bash commands.
    """

    def __init__(self, bash_timeout_seconds: int = 300):
        self.bash_timeout_seconds = bash_timeout_seconds
        self._handlers: Dict[str, Callable[[Path, Dict[str, Any]], Awaitable[str]]] = {
            "bash": self._bash,
            "read_file": self._read_file,
            "edit_file": self._edit_file,
            "glob": self._glob,
            "grep": self._grep,
        }

    def specs(self, names: List[str]) -> List[ToolSpec]:
        return [TOOL_SPECS[name] for name in names if name in TOOL_SPECS]

    async def run(self, call: ToolCall, worktree_path: str) -> ToolResult:
        handler = self._handlers.get(call.name)
        if handler is None:
            return ToolResult(
                call_id=call.id,
                name=call.name,
                output=f"Unknown tool: {call.name}",
                is_error=True,
            )

        root = Path(worktree_path).resolve()
        try:
            output = await handler(root, call.arguments)
        except (ToolInputError, OSError, UnicodeDecodeError, re.error) as e:
            logger.debug("Tool call failed", extra={"tool": call.name, "error": str(e)})
            return ToolResult(call_id=call.id, name=call.name, output=str(e), is_error=True)

        return ToolResult(call_id=call.id, name=call.name, output=_truncate(output))

    def _resolve(self, root: Path, relative: Any) -> Path:
        if not isinstance(relative, str) or not relative:
            raise ToolInputError("path must be a non-empty string")
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise ToolInputError(f"path escapes the worktree: {relative}")
        return target

    async def _bash(self, root: Path, args: Dict[str, Any]) -> str:
        command = args.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ToolInputError("command must be a non-empty string")
        timeout = int(args.get("timeout_seconds") or self.bash_timeout_seconds)

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ToolInputError(f"Command timed out after {timeout}s")

        text = stdout.decode("utf-8", errors="replace")
        return f"exit code {process.returncode}\n{text}"

    async def _read_file(self, root: Path, args: Dict[str, Any]) -> str:
        path = self._resolve(root, args.get("path"))
        lines = path.read_text(encoding="utf-8").splitlines()
        offset = int(args.get("offset") or 0)
        limit = int(args.get("limit") or len(lines))
        window = lines[offset:offset + limit]
        return "\n".join(
            f"{number:6d}\t{line}" for number, line in enumerate(window, start=offset + 1)
        )

    async def _edit_file(self, root: Path, args: Dict[str, Any]) -> str:
        path = self._resolve(root, args.get("path"))
        old = args.get("old_string") or ""
        new = args.get("new_string")
        if not isinstance(new, str):
            raise ToolInputError("new_string must be a string")

        if not old:
            if path.exists():
                raise ToolInputError(f"{args['path']} exists; pass old_string to edit it")
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(new, encoding="utf-8")
            return f"Created {args['path']}"

        content = path.read_text(encoding="utf-8")
        occurrences = content.count(old)
        if occurrences != 1:
            raise ToolInputError(
                f"old_string must occur exactly once in {args['path']}, found {occurrences}"
            )
        path.write_text(content.replace(old, new, 1), encoding="utf-8")
        return f"Edited {args['path']}"

    async def _glob(self, root: Path, args: Dict[str, Any]) -> str:
        pattern = args.get("pattern")
        if not isinstance(pattern, str) or not pattern:
            raise ToolInputError("pattern must be a non-empty string")
        matches = sorted(
            str(p.relative_to(root)) for p in root.glob(pattern)
            if p.is_file() and ".git" not in p.relative_to(root).parts
        )
        if not matches:
            return "No files matched"
        return "\n".join(matches[:MAX_MATCHES])

    async def _grep(self, root: Path, args: Dict[str, Any]) -> str:
        pattern = args.get("pattern")
        if not isinstance(pattern, str) or not pattern:
            raise ToolInputError("pattern must be a non-empty string")
        regex = re.compile(pattern)
        file_glob = args.get("glob") or "**/*"

        hits: List[str] = []
        for path in sorted(root.glob(file_glob)):
            if not path.is_file() or ".git" in path.relative_to(root).parts:
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    hits.append(f"{path.relative_to(root)}:{number}:{line}")
                    if len(hits) >= MAX_MATCHES:
                        return "\n".join(hits)
        return "\n".join(hits) if hits else "No matches"
