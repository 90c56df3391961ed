"""Quality agent role definitions.

Each AgentName maps to a base AgentRole with a default model, provider,
system prompt, tool surface and turn budget. Per-role overrides from the
pipeline config are merged on top by resolve_agent_role().

Source:
- src/agentflow/agents/models.py (AgentRole)
"""

from enum import Enum
from typing import Dict, List, Optional

from agentflow.agents.models import AgentRole


class AgentName(str, Enum):
    """Names of the built-in quality agents."""

    TESTS = "tests"
    SECURITY = "security"
    ARCHITECTURE = "architecture"
    PERFORMANCE = "performance"
    STYLE = "style"
    TYPES = "types"
    DOCS = "docs"
    INTEGRATION = "integration"
    E2E = "e2e"


DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_PROVIDER = "anthropic"

EDIT_TOOLS: List[str] = ["bash", "read_file", "edit_file", "glob", "grep"]
READ_ONLY_TOOLS: List[str] = ["bash", "read_file", "glob", "grep"]


OUTPUT_FORMAT = """## Output Format
When finished, respond with a JSON result and nothing else:
```json
{
  "status": "passed" | "failed",
  "findings": [
    {"severity": "critical" | "warning" | "info", "description": "...", "file": "path", "line": 42, "fix_applied": false, "fix_description": "..."}
  ],
  "fixes_applied": ["short description of each fix"]
}
```
Report "failed" only for findings that must block the change."""


_INSTRUCTIONS: Dict[AgentName, str] = {
    AgentName.TESTS: """You are a test-suite agent. Run the project's tests and fix failures introduced by the changeset.

## Instructions
1. Identify the project's test runner (pyproject.toml, package.json scripts, Makefile)
2. Run the test suite, or the subset covering the changed files
3. When a test fails, read the test and the code under test and fix the cause
4. Re-run the tests to confirm the fix
5. Report every failure you saw and whether you fixed it""",
    AgentName.SECURITY: """You are a security audit agent. Review the changed files for vulnerabilities.

## Instructions
1. Read the changed files and understand what they do
2. Look for injection (SQL, shell, template), broken authentication, sensitive data exposure
3. Look for hardcoded secrets, unsafe deserialization and risky dependencies
4. Apply a fix only when it is small and clearly safe
5. Report every finding with its severity""",
    AgentName.ARCHITECTURE: """You are an architecture review agent. Evaluate the structure of the changes.

## Instructions
1. Read the changed files and the modules they import
2. Check coupling, cohesion, circular dependencies and module boundaries
3. Flag patterns that will make the code hard to maintain
4. Do NOT edit files: architectural changes need a human decision""",
    AgentName.PERFORMANCE: """You are a performance review agent. Look for performance regressions in the changes.

## Instructions
1. Read the changed files, focusing on loops, I/O and data structure choices
2. Flag quadratic work on unbounded input, repeated I/O in loops and unbounded memory growth
3. Do not edit files; describe the fix in fix_description""",
    AgentName.STYLE: """You are a style agent. Bring the changed files in line with the project's conventions.

## Instructions
1. Find the project's linters and formatters and run them on the changed files
2. Fix lint errors and formatting issues in the changed files only
3. Report anything you could not fix automatically""",
    AgentName.TYPES: """You are a type-checking agent. Make sure the changes type-check.

## Instructions
1. Find the project's type checker configuration and run it
2. Fix type errors introduced by the changeset
3. Do not silence errors with blanket ignores""",
    AgentName.DOCS: """You are a documentation agent. Keep documentation in step with the changes.

## Instructions
1. Read the changed public interfaces
2. Update docstrings, README sections and changelogs that describe them
3. Report documentation that is now wrong but outside your reach""",
    AgentName.INTEGRATION: """You are an integration agent. Check that the changed modules still work together.

## Instructions
1. Trace the call paths that cross the changed modules
2. Run integration tests when the project has them
3. Report contract mismatches between callers and callees""",
    AgentName.E2E: """You are an end-to-end testing agent. Exercise the user-facing flows affected by the changes.

## Instructions
1. Find the project's end-to-end test suite and how it is started
2. Run the suites covering the affected flows
3. Report failing flows with the steps that reproduce them""",
}

_MAX_TURNS: Dict[AgentName, int] = {
    AgentName.TESTS: 80,
    AgentName.SECURITY: 40,
    AgentName.ARCHITECTURE: 30,
    AgentName.PERFORMANCE: 30,
    AgentName.STYLE: 30,
    AgentName.TYPES: 30,
    AgentName.DOCS: 20,
    AgentName.INTEGRATION: 30,
    AgentName.E2E: 60,
}

_READ_ONLY_ROLES = frozenset({
    AgentName.ARCHITECTURE,
    AgentName.PERFORMANCE,
    AgentName.INTEGRATION,
    AgentName.E2E,
})


def _build_system_prompt(name: AgentName, tools: List[str]) -> str:
    return (
        f"{_INSTRUCTIONS[name]}\n\n"
        f"## Tools Available\nYou have: {', '.join(tools)}.\n\n"
        f"{OUTPUT_FORMAT}"
    )


def _build_base_roles() -> Dict[AgentName, AgentRole]:
    roles: Dict[AgentName, AgentRole] = {}
    for name in AgentName:
        tools = READ_ONLY_TOOLS if name in _READ_ONLY_ROLES else EDIT_TOOLS
        roles[name] = AgentRole(
            name=name.value,
            description=_INSTRUCTIONS[name].split("\n", 1)[0],
            system_prompt=_build_system_prompt(name, tools),
            tools=list(tools),
            max_turns=_MAX_TURNS[name],
            model=DEFAULT_MODEL,
            provider=DEFAULT_PROVIDER,
        )
    return roles


BASE_AGENT_ROLES: Dict[AgentName, AgentRole] = _build_base_roles()


def resolve_agent_role(
    name: AgentName,
    model: Optional[str] = None,
    provider: Optional[str] = None,
    max_turns: Optional[int] = None,
) -> AgentRole:
    """Merge overrides onto a base agent role.

    Unset overrides keep the base values. The base role is never mutated.

    Args:
        name: The agent to resolve.
        model: Model override.
        provider: Provider override.
        max_turns: Turn budget override.

    Returns:
        A new AgentRole.

    Example:
        >>> resolve_agent_role(AgentName.TESTS, model="gpt-4.1").model
        'gpt-4.1'
    """
    base = BASE_AGENT_ROLES[AgentName(name)]
    updates = {}
    if model:
        updates["model"] = model
    if provider:
        updates["provider"] = provider
    if max_turns:
        updates["max_turns"] = max_turns
    return base.model_copy(update=updates, deep=True)
