"""GitHub webhook intake: signature validation and signal parsing."""

from agentflow.webhook.handler import (
    WebhookHandler,
    WebhookParseResult,
    compute_signature,
    issue_number_from_branch,
)

__all__ = [
    "WebhookHandler",
    "WebhookParseResult",
    "compute_signature",
    "issue_number_from_branch",
]
