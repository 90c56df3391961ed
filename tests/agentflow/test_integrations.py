"""Unit tests for the git helpers and the GitHub tracker client."""

import asyncio
import inspect
import json

import httpx
import pytest

from agentflow.integrations.git import GitCli, parse_numstat, parse_pr_number
from agentflow.integrations.github import GitHubAPIError, GitHubTracker, RateLimitError


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


class TestGitHelpers:

    def test_parse_numstat(self):
        stats = parse_numstat("10\t2\tsrc/app.py\n-\t-\tassets/logo.png\n3\t0\tREADME.md\n")

        assert stats.files_changed == 3
        assert stats.lines_added == 13
        assert stats.lines_deleted == 2
        assert stats.changed_files == ["src/app.py", "assets/logo.png", "README.md"]

    def test_parse_numstat_empty(self):
        assert parse_numstat("").files_changed == 0

    def test_parse_pr_number(self):
        assert parse_pr_number("https://github.com/acme/widgets/pull/17") == 17
        assert parse_pr_number("created") is None

    def test_worktree_path_is_beside_project(self, tmp_path):
        project = tmp_path.resolve() / "widgets"
        project.mkdir()
        path = GitCli().worktree_path_for(str(project), "issue/42/fix-login-ab12c")
        assert path == tmp_path.resolve() / "widgets-worktrees" / "issue-42-fix-login-ab12c"


# ---------------------------------------------------------------------------
# GitHub tracker
# ---------------------------------------------------------------------------


def _make_tracker(handler) -> GitHubTracker:
    return GitHubTracker(
        token="ghp_test",
        repo="acme/widgets",
        base_delay=0,
        transport=httpx.MockTransport(handler),
    )


class TestGitHubTracker:

    def test_public_methods_are_the_tracker_surface(self):
        public = {
            name for name, _ in inspect.getmembers(GitHubTracker, inspect.isfunction)
            if not name.startswith("_")
        }
        assert public == {"fetch_issue_detail", "add_comment", "close"}

    def test_fetch_issue_detail(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "number": 42,
                "title": "Login fails",
                "body": None,
                "html_url": "https://github.com/acme/widgets/issues/42",
                "labels": [{"name": "bug"}, "triage"],
            })

        async def scenario():
            async with _make_tracker(handler) as tracker:
                return await tracker.fetch_issue_detail(42)

        issue = run_async(scenario())

        assert issue.title == "Login fails"
        assert issue.body == ""
        assert issue.labels == ["bug", "triage"]
        assert seen[0].url.path == "/repos/acme/widgets/issues/42"
        assert seen[0].headers["Authorization"] == "Bearer ghp_test"

    def test_add_comment_posts_body(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": 1})

        async def scenario():
            async with _make_tracker(handler) as tracker:
                await tracker.add_comment(7, "Working on it")

        run_async(scenario())
        assert bodies == [{"body": "Working on it"}]

    def test_retries_transient_errors(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={"number": 1, "title": "ok"})

        async def scenario():
            async with _make_tracker(handler) as tracker:
                return await tracker.fetch_issue_detail(1)

        assert run_async(scenario()).title == "ok"
        assert len(attempts) == 3

    def test_rate_limit_is_not_retried(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"retry-after": "30"})

        async def scenario():
            async with _make_tracker(handler) as tracker:
                await tracker.fetch_issue_detail(1)

        with pytest.raises(RateLimitError) as exc_info:
            run_async(scenario())
        assert exc_info.value.retry_after == 30

    def test_not_found_raises_api_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"message": "Not Found"})

        async def scenario():
            async with _make_tracker(handler) as tracker:
                await tracker.fetch_issue_detail(999)

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(scenario())
        assert exc_info.value.status_code == 404

    def test_repo_must_be_owner_slash_name(self):
        with pytest.raises(ValueError):
            GitHubTracker(token="t", repo="widgets")
