"""Git and GitHub CLI operations.

GitCli runs `git` and `gh` as async subprocesses with a timeout and
captures their output. It serves two collaborator roles:

- DiffStatsProvider: summarize a worktree's changes against its base
  branch (raises GitCommandError)
- GitOperations: worktree creation, commit, push, PR creation and merge
  for sessions. These return GitResult values instead of raising.

Source:
- src/agentflow/models.py (DiffStats)
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from agentflow.models import DiffStats


logger = logging.getLogger(__name__)

_PR_URL_NUMBER = re.compile(r"/pull/(\d+)")


class GitCommandError(Exception):
    """Raised when a required git command fails.

    Attributes:
        command: The command line that failed.
        exit_code: Process exit code (-1 for timeout/OS errors).
        stderr: Captured standard error.
    """

    def __init__(self, command: Sequence[str], exit_code: int, stderr: str):
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"{' '.join(self.command)} failed with exit code {exit_code}: {stderr.strip()}"
        )


@dataclass
class GitResult:
    """Outcome of a git operation.

    Attributes:
        ok: True when the operation succeeded.
        output: Useful output on success (path, URL, ...).
        error: Error description on failure.
    """

    ok: bool
    output: str = ""
    error: str = ""


@dataclass
class _CommandOutput:
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float


@runtime_checkable
class DiffStatsProvider(Protocol):
    async def diff_stats(self, worktree_path: str, base_branch: str) -> DiffStats:
        ...


@runtime_checkable
class GitOperations(Protocol):
    async def create_worktree(
        self, project_path: str, branch: str, base_branch: str
    ) -> GitResult:
        ...

    async def commit_all(self, worktree_path: str, message: str) -> GitResult:
        ...

    async def push(self, worktree_path: str, branch: str) -> GitResult:
        ...

    async def create_pr(
        self, worktree_path: str, title: str, body: str, base_branch: str, head_branch: str
    ) -> GitResult:
        ...

    async def merge_pr(self, project_path: str, pr_number: int) -> GitResult:
        ...


def parse_pr_number(url: str) -> Optional[int]:
    """Extract the pull request number from a PR URL."""
    match = _PR_URL_NUMBER.search(url)
    return int(match.group(1)) if match else None


def parse_numstat(output: str) -> DiffStats:
    """Parse `git diff --numstat` output.

    Binary files report "-" for both counts and contribute no lines.
    """
    added = deleted = 0
    files: List[str] = []
    for line in output.splitlines():
        parts = line.split("\t", 2)
        if len(parts) != 3:
            continue
        ins, dels, path = parts
        added += int(ins) if ins.isdigit() else 0
        deleted += int(dels) if dels.isdigit() else 0
        files.append(path)
    return DiffStats(
        files_changed=len(files),
        lines_added=added,
        lines_deleted=deleted,
        changed_files=files,
    )


class GitCli:
    """Git / gh subprocess runner.

    Attributes:
        git_path: git executable.
        gh_path: GitHub CLI executable.
        timeout_seconds: Per-command timeout.
        worktree_root: Where session worktrees are created. Defaults to
            a `<project>-worktrees` directory beside the project.
    """

    def __init__(
        self,
        git_path: str = "git",
        gh_path: str = "gh",
        timeout_seconds: int = 120,
        worktree_root: Optional[Path] = None,
    ):
        self.git_path = git_path
        self.gh_path = gh_path
        self.timeout_seconds = timeout_seconds
        self.worktree_root = worktree_root

    async def _run(self, args: Sequence[str], cwd: str) -> _CommandOutput:
        """Run a command and capture its output. Never raises."""
        start_time = time.monotonic()
        logger.debug("Running command", extra={"command": " ".join(args), "cwd": cwd})

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return _CommandOutput(-1, "", f"Failed to start {args[0]}: {exc}", 0.0)

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return _CommandOutput(
                -1,
                "",
                f"Process timed out after {self.timeout_seconds}s",
                time.monotonic() - start_time,
            )

        return _CommandOutput(
            exit_code=process.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_seconds=time.monotonic() - start_time,
        )

    async def _result(self, args: Sequence[str], cwd: str) -> GitResult:
        output = await self._run(args, cwd)
        if output.exit_code != 0:
            logger.warning(
                "Command failed",
                extra={
                    "command": " ".join(args),
                    "exit_code": output.exit_code,
                    "stderr": output.stderr.strip()[:500],
                },
            )
            return GitResult(ok=False, error=output.stderr.strip() or output.stdout.strip())
        return GitResult(ok=True, output=output.stdout.strip())

    # -------------------------------------------------------------------------
    # DiffStatsProvider
    # -------------------------------------------------------------------------

    async def diff_stats(self, worktree_path: str, base_branch: str) -> DiffStats:
        """Summarize committed changes on HEAD since it left base_branch.

        Raises:
            GitCommandError: If git cannot produce the diff.
        """
        args = [self.git_path, "diff", "--numstat", f"{base_branch}...HEAD"]
        output = await self._run(args, worktree_path)
        if output.exit_code != 0:
            raise GitCommandError(args, output.exit_code, output.stderr)
        return parse_numstat(output.stdout)

    # -------------------------------------------------------------------------
    # GitOperations
    # -------------------------------------------------------------------------

    def worktree_path_for(self, project_path: str, branch: str) -> Path:
        project = Path(project_path).resolve()
        root = self.worktree_root or project.parent / f"{project.name}-worktrees"
        return root / branch.replace("/", "-")

    async def create_worktree(
        self, project_path: str, branch: str, base_branch: str
    ) -> GitResult:
        path = self.worktree_path_for(project_path, branch)
        path.parent.mkdir(parents=True, exist_ok=True)
        result = await self._result(
            [self.git_path, "worktree", "add", "-b", branch, str(path), base_branch],
            project_path,
        )
        if result.ok:
            return GitResult(ok=True, output=str(path))
        return result

    async def commit_all(self, worktree_path: str, message: str) -> GitResult:
        """Stage and commit everything. A clean tree is a success."""
        status = await self._result(
            [self.git_path, "status", "--porcelain"], worktree_path
        )
        if not status.ok:
            return status
        if not status.output:
            return GitResult(ok=True, output="nothing to commit")

        staged = await self._result([self.git_path, "add", "-A"], worktree_path)
        if not staged.ok:
            return staged
        return await self._result(
            [self.git_path, "commit", "-m", message], worktree_path
        )

    async def push(self, worktree_path: str, branch: str) -> GitResult:
        return await self._result(
            [self.git_path, "push", "-u", "origin", branch], worktree_path
        )

    async def create_pr(
        self, worktree_path: str, title: str, body: str, base_branch: str, head_branch: str
    ) -> GitResult:
        """Open a pull request; output is the PR URL printed by gh."""
        return await self._result(
            [
                self.gh_path, "pr", "create",
                "--title", title,
                "--body", body,
                "--base", base_branch,
                "--head", head_branch,
            ],
            worktree_path,
        )

    async def merge_pr(self, project_path: str, pr_number: int) -> GitResult:
        return await self._result(
            [self.gh_path, "pr", "merge", str(pr_number), "--squash", "--delete-branch"],
            project_path,
        )
