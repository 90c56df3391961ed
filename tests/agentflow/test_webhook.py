"""Tests for GitHub webhook signature checks and signal parsing.

Property tests cover the parsers over generated branch names and PR
numbers; unit tests pin the ignore rules.
"""

from hypothesis import given, settings, strategies as st

from agentflow.sessions.models import SignalKind
from agentflow.webhook import WebhookHandler, compute_signature, issue_number_from_branch


# =============================================================================
# Hypothesis Strategies
# =============================================================================


@st.composite
def session_branch(draw: st.DrawFn) -> str:
    """Generate a branch name the way sessions name them."""
    slug = draw(st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-", min_size=1, max_size=40))
    suffix = draw(st.text(alphabet="0123456789abcdef", min_size=5, max_size=5))
    if draw(st.booleans()):
        number = draw(st.integers(min_value=1, max_value=100000))
        return f"issue/{number}/{slug}-{suffix}"
    return f"prompt/{slug}-{suffix}"


def _check_suite(conclusion: str, branch: str, pr_number=None) -> dict:
    suite = {"conclusion": conclusion, "head_branch": branch, "head_sha": "abc123"}
    suite["pull_requests"] = [{"number": pr_number}] if pr_number else []
    return {"action": "completed", "check_suite": suite}


def _review(state: str, branch: str, pr_number: int, action: str = "submitted") -> dict:
    return {
        "action": action,
        "review": {"state": state, "user": {"login": "octocat"}, "body": "Looks good"},
        "pull_request": {"number": pr_number, "head": {"ref": branch}},
    }


# =============================================================================
# Properties
# =============================================================================


class TestWebhookProperties:

    @settings(max_examples=100)
    @given(branch=session_branch())
    def test_issue_number_only_from_issue_branches(self, branch: str):
        number = issue_number_from_branch(branch)
        if branch.startswith("issue/"):
            assert number == int(branch.split("/")[1])
        else:
            assert number is None

    @settings(max_examples=100)
    @given(
        branch=session_branch(),
        conclusion=st.sampled_from(["success", "failure", "timed_out"]),
        pr_number=st.one_of(st.none(), st.integers(min_value=1, max_value=10000)),
    )
    def test_check_suite_conclusions(self, branch, conclusion, pr_number):
        result = WebhookHandler().parse("check_suite", _check_suite(conclusion, branch, pr_number))

        expected = SignalKind.CI_PASSED if conclusion == "success" else SignalKind.CI_FAILED
        assert result.signal.kind == expected
        assert result.signal.branch == branch
        assert result.signal.pr_number == pr_number
        assert result.signal.issue_number == issue_number_from_branch(branch)

    @settings(max_examples=100)
    @given(secret=st.text(min_size=1, max_size=40), body=st.binary(max_size=500))
    def test_own_signature_always_verifies(self, secret, body):
        handler = WebhookHandler(secret=secret)
        assert handler.verify_signature(body, compute_signature(secret, body))


# =============================================================================
# Unit tests
# =============================================================================


class TestSignatureVerification:

    def test_no_secret_accepts_anything(self):
        assert WebhookHandler().verify_signature(b"{}", None)
        assert WebhookHandler(secret="").secret is None

    def test_missing_or_wrong_signature(self):
        handler = WebhookHandler(secret="s3cret")
        assert not handler.verify_signature(b"{}", None)
        assert not handler.verify_signature(b"{}", compute_signature("other", b"{}"))
        assert not handler.verify_signature(b"{ }", compute_signature("s3cret", b"{}"))


class TestWebhookParsing:

    def test_merged_pull_request(self):
        payload = {
            "action": "closed",
            "pull_request": {
                "number": 17,
                "merged": True,
                "merge_commit_sha": "def456",
                "html_url": "https://github.com/acme/widgets/pull/17",
                "head": {"ref": "issue/42/login-fails-ab12c"},
            },
        }

        signal = WebhookHandler().parse("pull_request", payload).signal

        assert signal.kind == SignalKind.MERGED
        assert (signal.pr_number, signal.issue_number) == (17, 42)
        assert signal.details["merge_commit_sha"] == "def456"

    def test_closed_without_merge_is_ignored(self):
        payload = {"action": "closed", "pull_request": {"number": 17, "merged": False}}
        result = WebhookHandler().parse("pull_request", payload)
        assert result.ignored
        assert result.reason == "not a merged PR"

    def test_reviews(self):
        handler = WebhookHandler()
        approved = handler.parse("pull_request_review", _review("APPROVED", "prompt/x-00000", 3)).signal
        changes = handler.parse("pull_request_review", _review("changes_requested", "prompt/x-00000", 3)).signal

        assert approved.kind == SignalKind.APPROVED
        assert approved.details["reviewer"] == "octocat"
        assert changes.kind == SignalKind.CHANGES_REQUESTED

    def test_comment_reviews_and_edits_are_ignored(self):
        handler = WebhookHandler()
        assert handler.parse("pull_request_review", _review("commented", "b", 3)).reason == "review state: commented"
        assert handler.parse("pull_request_review", _review("approved", "b", 3, action="edited")).ignored

    def test_incomplete_or_neutral_check_suites_are_ignored(self):
        handler = WebhookHandler()
        assert handler.parse("check_suite", _check_suite("", "main")).reason == "incomplete check_suite data"
        assert handler.parse("check_suite", _check_suite("neutral", "main")).reason == "conclusion: neutral"

    def test_other_events_and_bad_payloads_are_ignored(self):
        handler = WebhookHandler()
        assert handler.parse("push", {}).reason == "event type: push"
        assert handler.parse("check_suite", ["not", "a", "dict"]).reason == "invalid payload"
