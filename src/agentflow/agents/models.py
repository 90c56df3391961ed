"""Agent role, context and result models.

This module defines the data models exchanged with quality agents:
- AgentRole: what an agent is asked to do and with which budget
- AgentContext: the working context handed to an agent run
- Finding / AgentResult: what an agent reports back
- ChatMessage / ToolCall / ModelResponse: the provider-neutral
  conversation records the executor exchanges with a model provider

Agent results carry the status the agent reported in its own JSON output;
the executor only overrides it for timeouts, errors and cancellation.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from agentflow.models import DiffStats, Tier


class AgentStatus(str, Enum):
    """Outcome of a single agent run.

    Attributes:
        PASSED: The agent found nothing blocking.
        FAILED: The agent reported blocking findings.
        ERROR: The run could not complete (provider or tool error, aborted).
        TIMEOUT: The agent exhausted its turn budget.
    """

    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    TIMEOUT = "timeout"


class FindingSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


_SEVERITY_ALIASES = {
    "high": "critical",
    "medium": "warning",
    "low": "warning",
}


class AgentRole(BaseModel):
    """Definition of a quality agent.

    Attributes:
        name: Role name (e.g. "security").
        description: One-line summary of the role.
        system_prompt: Instructions handed to the model.
        tools: Names of the tools the agent may call.
        max_turns: Model turn budget for one run.
        model: Model identifier.
        provider: Provider name resolved through the provider config.
    """

    name: str = Field(..., min_length=1)
    description: str = ""
    system_prompt: str = ""
    tools: List[str] = Field(default_factory=list)
    max_turns: int = Field(default=30, ge=1)
    model: str = "claude-sonnet-4-5-20250929"
    provider: str = "anthropic"


class AgentContext(BaseModel):
    """Working context for one agent run."""

    branch: str
    worktree_path: str
    tier: Tier
    diff_stats: DiffStats = Field(default_factory=DiffStats)
    base_branch: str = "main"
    previous_results: List["AgentResult"] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Finding(BaseModel):
    """A single issue reported by an agent.

    Attributes:
        severity: critical, warning or info.
        description: What the agent found.
        file: Path of the affected file, if any.
        line: Line number in file, if any.
        fix_applied: True when the agent already fixed it in the worktree.
        fix_description: What the fix changed.
    """

    severity: FindingSeverity = FindingSeverity.INFO
    description: str
    file: Optional[str] = None
    line: Optional[int] = None
    fix_applied: bool = False
    fix_description: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: Any) -> Any:
        """Fold the five-level scale some models use onto three levels."""
        if isinstance(v, str):
            return _SEVERITY_ALIASES.get(v.strip().lower(), v.strip().lower())
        return v


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    def add(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(input=self.input + other.input, output=self.output + other.output)


class AgentResultMetadata(BaseModel):
    duration_ms: int = 0
    turns_used: int = 0
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""
    provider: str = ""


class AgentResult(BaseModel):
    """Verdict of one agent run.

    Attributes:
        agent: Role name that produced the result.
        status: Reported outcome.
        findings: Issues found, in the order reported.
        fixes_applied: Short descriptions of fixes the agent made.
        metadata: Timing, turn and token accounting.
    """

    agent: str
    status: AgentStatus
    findings: List[Finding] = Field(default_factory=list)
    fixes_applied: List[str] = Field(default_factory=list)
    metadata: AgentResultMetadata = Field(default_factory=AgentResultMetadata)

    @property
    def is_failing(self) -> bool:
        return self.status != AgentStatus.PASSED


AgentContext.model_rebuild()


# =============================================================================
# Provider-neutral conversation records
# =============================================================================


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Output of a tool invocation, fed back to the model."""

    call_id: str
    name: str
    output: str
    is_error: bool = False


class ChatMessage(BaseModel):
    role: MessageRole
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None


class ModelResponse(BaseModel):
    """One model turn: text and/or tool calls, plus token usage."""

    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)


class ToolSpec(BaseModel):
    """Schema of a tool advertised to the model."""

    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
