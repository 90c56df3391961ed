"""Planner and implementer agents for sessions.

OrchestratorAgent drives the two agentic steps of a session through the
same bounded model/tool loop as the quality agents:

- plan: read-only exploration producing a SessionPlan
- implement: edits in the session worktree, optionally with feedback from
  CI or review when a reaction respawns the agent

Source:
- src/agentflow/agents/executor.py (AgentExecutor.run_loop)
- src/agentflow/agents/roles.py (tool sets)
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError

from agentflow.agents.executor import AgentExecutor, LoopOutcome, StepCallback
from agentflow.agents.models import AgentRole, TokenUsage
from agentflow.agents.roles import EDIT_TOOLS, READ_ONLY_TOOLS
from agentflow.cancellation import CancellationToken, CancelledByRequest
from agentflow.config import OrchestratorConfig
from agentflow.integrations.github import IssueDetail
from agentflow.sessions.models import SessionPlan


logger = logging.getLogger(__name__)


PLANNER_PROMPT = """You are a senior engineer planning a change to resolve an issue.
Explore the repository with your tools. Do not modify any files.

When finished, respond with JSON only:
```json
{
  "summary": "one paragraph describing the change",
  "approach": "how you will implement it",
  "steps": ["ordered implementation steps"],
  "files_to_modify": ["relative/paths"],
  "estimated_complexity": "low | medium | high"
}
```"""

IMPLEMENTER_PROMPT = """You are a senior engineer implementing a planned change.
Edit files in the worktree with your tools and run the project's tests.
Do not commit or push; that is handled for you.
When finished, reply with a short summary of what you changed."""


class OrchestratorError(Exception):
    """Raised when a planning or implementation step cannot finish."""


@dataclass
class ImplementationResult:
    summary: str
    turns_used: int
    usage: TokenUsage


def issue_context(issue: IssueDetail) -> str:
    """Render the issue the way the planner and implementer see it."""
    heading = f"Task: {issue.title}" if issue.number == 0 else f"#{issue.number}: {issue.title}"
    lines = [heading, "", issue.body or ""]
    if issue.labels:
        lines.extend(["", f"Labels: {', '.join(issue.labels)}"])
    return "\n".join(lines).strip()


def parse_plan(text: str, issue: IssueDetail) -> SessionPlan:
    """Parse the planner's JSON, falling back to a plan built from raw text."""
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        try:
            data = json.loads(text[start:end + 1])
            if isinstance(data, dict) and data.get("summary"):
                return SessionPlan(**data)
        except (json.JSONDecodeError, ValidationError, TypeError):
            logger.warning("Planner returned malformed plan JSON", extra={"issue_number": issue.number})

    stripped = text.strip()
    summary = stripped.split("\n", 1)[0][:200] if stripped else issue.title
    return SessionPlan(summary=summary, approach=stripped)


class OrchestratorAgent:
    """Plans and implements issues for sessions.

    Attributes:
        config: Turn budgets for planning and implementation.
        executor_factory: Builds an executor for a role's model and provider.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        executor_factory: Callable[[AgentRole], AgentExecutor],
    ):
        self.config = config
        self.executor_factory = executor_factory

    def planner_role(self, model: str, provider: str) -> AgentRole:
        return AgentRole(
            name="planner",
            description="Plans the change for an issue",
            system_prompt=PLANNER_PROMPT,
            tools=list(READ_ONLY_TOOLS),
            max_turns=self.config.max_planning_turns,
            model=model,
            provider=provider,
        )

    def implementer_role(self, model: str, provider: str) -> AgentRole:
        return AgentRole(
            name="implementer",
            description="Implements a planned change",
            system_prompt=IMPLEMENTER_PROMPT,
            tools=list(EDIT_TOOLS),
            max_turns=self.config.max_implementing_turns,
            model=model,
            provider=provider,
        )

    async def plan(
        self,
        issue: IssueDetail,
        project_path: str,
        model: str,
        provider: str,
        token: Optional[CancellationToken] = None,
        on_step: Optional[StepCallback] = None,
    ) -> SessionPlan:
        """Produce a plan for issue by exploring project_path.

        Raises:
            OrchestratorError: If the planner runs out of turns.
            CancelledByRequest: If the token was cancelled.
        """
        role = self.planner_role(model, provider)
        outcome = await self._run(
            role,
            f"Plan the implementation of this issue.\n\n{issue_context(issue)}",
            project_path,
            token,
            on_step,
        )
        return parse_plan(outcome.text, issue)

    async def implement(
        self,
        issue: IssueDetail,
        plan: SessionPlan,
        worktree_path: str,
        branch: str,
        model: str,
        provider: str,
        feedback: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        on_step: Optional[StepCallback] = None,
    ) -> ImplementationResult:
        """Implement plan in worktree_path.

        Args:
            feedback: Reaction prompt when the agent is respawned for CI or review.

        Raises:
            OrchestratorError: If the implementer runs out of turns.
            CancelledByRequest: If the token was cancelled.
        """
        role = self.implementer_role(model, provider)
        parts = [
            issue_context(issue),
            "",
            "## Plan",
            plan.summary,
            "",
            plan.approach,
        ]
        if plan.steps:
            parts.extend(f"{i}. {step}" for i, step in enumerate(plan.steps, 1))
        parts.extend(["", f"You are on branch {branch}."])
        if feedback:
            parts.extend(["", "## Feedback", feedback])

        outcome = await self._run(role, "\n".join(parts), worktree_path, token, on_step)
        return ImplementationResult(
            summary=outcome.text,
            turns_used=outcome.turns_used,
            usage=outcome.usage,
        )

    async def _run(
        self,
        role: AgentRole,
        user_prompt: str,
        worktree_path: str,
        token: Optional[CancellationToken],
        on_step: Optional[StepCallback],
    ) -> LoopOutcome:
        executor = self.executor_factory(role)
        outcome = await executor.run_loop(
            role=role,
            system_prompt=role.system_prompt,
            user_prompt=user_prompt,
            worktree_path=worktree_path,
            token=token,
            on_step=on_step,
        )
        if outcome.aborted:
            raise CancelledByRequest(token.reason if token else None)
        if outcome.timed_out:
            raise OrchestratorError(f"{role.name} exceeded turn budget of {role.max_turns}")
        logger.info(
            "Orchestrator step finished",
            extra={"role": role.name, "turns_used": outcome.turns_used},
        )
        return outcome
