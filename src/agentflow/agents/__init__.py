"""Quality agents: roles, execution loop, tools and model providers.

- roles: built-in agent roles and per-role override resolution
- executor: bounded model/tool loop producing an AgentResult
- tools: worktree-confined tool surface (bash, read, edit, glob, grep)
- provider: LangChain ChatOpenAI provider for OpenAI-compatible endpoints
"""

from agentflow.agents.executor import (
    AgentExecutor,
    AgentStep,
    LoopOutcome,
    ModelProvider,
    StepCallback,
    StepKind,
    ToolRunner,
    parse_agent_output,
)
from agentflow.agents.models import (
    AgentContext,
    AgentResult,
    AgentResultMetadata,
    AgentRole,
    AgentStatus,
    ChatMessage,
    Finding,
    FindingSeverity,
    MessageRole,
    ModelResponse,
    TokenUsage,
    ToolCall,
    ToolResult,
    ToolSpec,
)
from agentflow.agents.provider import (
    LangChainModelProvider,
    ModelProviderFactory,
    ProviderNotConfiguredError,
)
from agentflow.agents.roles import BASE_AGENT_ROLES, AgentName, resolve_agent_role
from agentflow.agents.tools import WorkspaceTools

__all__ = [
    # Models
    "AgentContext",
    "AgentResult",
    "AgentResultMetadata",
    "AgentRole",
    "AgentStatus",
    "ChatMessage",
    "Finding",
    "FindingSeverity",
    "MessageRole",
    "ModelResponse",
    "TokenUsage",
    "ToolCall",
    "ToolResult",
    "ToolSpec",
    # Roles
    "BASE_AGENT_ROLES",
    "AgentName",
    "resolve_agent_role",
    # Execution
    "AgentExecutor",
    "AgentStep",
    "LoopOutcome",
    "ModelProvider",
    "StepCallback",
    "StepKind",
    "ToolRunner",
    "parse_agent_output",
    "WorkspaceTools",
    # Providers
    "LangChainModelProvider",
    "ModelProviderFactory",
    "ProviderNotConfiguredError",
]
