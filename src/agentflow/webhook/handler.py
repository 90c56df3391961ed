"""GitHub webhook handler for session signals.

This module provides the WebhookHandler class for validating and parsing
GitHub webhook deliveries into ExternalSignal objects that the session
manager routes to the owning session.

Handled events:
- pull_request (action=closed, merged=true) → merged
- pull_request_review (action=submitted, state=approved) → approved
- pull_request_review (action=submitted, state=changes_requested) → changes_requested
- check_suite (conclusion=success) → ci_passed
- check_suite (conclusion=failure or timed_out) → ci_failed

Everything else is ignored. Issue numbers are parsed from session branch
names of the form ``issue/<number>/<slug>``.

Signature validation: when a webhook secret is configured, the
X-Hub-Signature-256 header must carry ``sha256=<hex HMAC-SHA256 of body>``.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from agentflow.sessions.models import ExternalSignal, SignalKind

logger = logging.getLogger(__name__)


_ISSUE_BRANCH = re.compile(r"^issue/(\d+)")


def issue_number_from_branch(branch: str) -> Optional[int]:
    match = _ISSUE_BRANCH.match(branch or "")
    return int(match.group(1)) if match else None


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


@dataclass
class WebhookParseResult:
    """Outcome of parsing one delivery.

    Attributes:
        signal: The parsed signal, or None when the delivery is ignored.
        reason: Why the delivery was ignored.
    """

    signal: Optional[ExternalSignal] = None
    reason: str = ""

    @property
    def ignored(self) -> bool:
        return self.signal is None


class WebhookHandler:
    """Handler for GitHub webhook deliveries.

    Attributes:
        secret: The webhook secret. When empty, signatures are not checked.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret or None

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check a delivery's X-Hub-Signature-256 header.

        Returns:
            True when no secret is configured, or when the signature matches.
        """
        if self.secret is None:
            return True
        if not signature:
            return False
        return hmac.compare_digest(compute_signature(self.secret, body), signature)

    def parse(self, event_name: Optional[str], payload: Dict[str, Any]) -> WebhookParseResult:
        """Parse a delivery into a signal.

        Args:
            event_name: Value of the X-GitHub-Event header.
            payload: The decoded JSON body.

        Returns:
            A WebhookParseResult; never raises for unexpected payloads.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return WebhookParseResult(reason="invalid payload")

        if event_name == "pull_request":
            return self._parse_pull_request(payload)
        if event_name == "pull_request_review":
            return self._parse_review(payload)
        if event_name == "check_suite":
            return self._parse_check_suite(payload)
        return WebhookParseResult(reason=f"event type: {event_name}")

    def _parse_pull_request(self, payload: Dict[str, Any]) -> WebhookParseResult:
        pr = payload.get("pull_request") or {}
        if payload.get("action") != "closed" or not pr.get("merged"):
            return WebhookParseResult(reason="not a merged PR")

        head_ref = (pr.get("head") or {}).get("ref", "")
        signal = ExternalSignal(
            kind=SignalKind.MERGED,
            branch=head_ref or None,
            pr_number=pr.get("number"),
            issue_number=issue_number_from_branch(head_ref),
            details={
                "merge_commit_sha": pr.get("merge_commit_sha", ""),
                "pr_url": pr.get("html_url", ""),
            },
        )
        logger.info(
            "GitHub webhook: PR merged",
            extra={"branch": head_ref, "pr_number": signal.pr_number},
        )
        return WebhookParseResult(signal=signal)

    def _parse_review(self, payload: Dict[str, Any]) -> WebhookParseResult:
        if payload.get("action") != "submitted":
            return WebhookParseResult(reason="not a submitted review")

        review = payload.get("review") or {}
        pr = payload.get("pull_request") or {}
        head_ref = (pr.get("head") or {}).get("ref", "")
        state = str(review.get("state") or "").lower()

        if state == "approved":
            kind = SignalKind.APPROVED
        elif state == "changes_requested":
            kind = SignalKind.CHANGES_REQUESTED
        else:
            return WebhookParseResult(reason=f"review state: {state}")

        signal = ExternalSignal(
            kind=kind,
            branch=head_ref or None,
            pr_number=pr.get("number"),
            issue_number=issue_number_from_branch(head_ref),
            details={
                "reviewer": (review.get("user") or {}).get("login"),
                "review_body": review.get("body") or "",
            },
        )
        logger.info(
            "GitHub webhook: review submitted",
            extra={"branch": head_ref, "pr_number": signal.pr_number, "review_state": state},
        )
        return WebhookParseResult(signal=signal)

    def _parse_check_suite(self, payload: Dict[str, Any]) -> WebhookParseResult:
        suite = payload.get("check_suite") or {}
        conclusion = suite.get("conclusion") or ""
        head_branch = suite.get("head_branch") or ""
        head_sha = suite.get("head_sha") or ""

        if not conclusion or not head_branch:
            return WebhookParseResult(reason="incomplete check_suite data")

        if conclusion == "success":
            kind = SignalKind.CI_PASSED
        elif conclusion in ("failure", "timed_out"):
            kind = SignalKind.CI_FAILED
        else:
            return WebhookParseResult(reason=f"conclusion: {conclusion}")

        pull_requests = suite.get("pull_requests") or []
        pr_number = pull_requests[0].get("number") if pull_requests else None

        signal = ExternalSignal(
            kind=kind,
            branch=head_branch,
            pr_number=pr_number,
            issue_number=issue_number_from_branch(head_branch),
            details={"sha": head_sha, "conclusion": conclusion},
        )
        logger.info(
            "GitHub webhook: check suite completed",
            extra={"branch": head_branch, "conclusion": conclusion},
        )
        return WebhookParseResult(signal=signal)
