"""Agent executor: drives one agent through a bounded model/tool loop.

The executor hands the role prompt and working context to a model
provider, executes the tool calls the model requests through a tool
runner, and feeds the results back until the model answers without
tool calls or the role's turn budget is spent.

Outcomes:
- Final text parsed as the agent's JSON verdict (fenced or bare object)
- Unstructured final text: status passed with a single info finding
- Turn budget exhausted: status timeout
- Provider or tool runner exception: status error with a critical finding
- Cancellation observed at a turn boundary: status error, "Aborted"

execute() never raises for agent-level failures; the caller always gets
an AgentResult.

Source:
- src/agentflow/agents/models.py (AgentRole, AgentContext, AgentResult)
- src/agentflow/cancellation.py (CancellationToken)
"""

import inspect
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    Union,
    runtime_checkable,
)

from pydantic import ValidationError

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
from agentflow.cancellation import CancellationToken


logger = logging.getLogger(__name__)


@runtime_checkable
class ModelProvider(Protocol):
    """Opaque model capability: one conversation turn per call."""

    provider_name: str
    model_name: str

    async def complete(
        self,
        messages: List[ChatMessage],
        tools: List[ToolSpec],
    ) -> ModelResponse:
        """Run one model turn over the conversation so far.

        Raises:
            Exception: Any transport or provider failure.
        """
        ...


@runtime_checkable
class ToolRunner(Protocol):
    """Executes the tool calls an agent requests."""

    def specs(self, names: List[str]) -> List[ToolSpec]:
        """Return the schemas of the named tools, skipping unknown names."""
        ...

    async def run(self, call: ToolCall, worktree_path: str) -> ToolResult:
        """Execute call inside worktree_path.

        Expected failures (missing file, non-zero exit) are returned as
        results with is_error=True. Unexpected failures raise.
        """
        ...


class StepKind(str, Enum):
    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


@dataclass
class AgentStep:
    """A unit of streamed agent progress.

    Attributes:
        kind: text, tool_call or tool_result.
        turn: 1-based model turn the step belongs to.
        text: Model text, for TEXT steps.
        tool_call: The requested call, for TOOL_CALL steps.
        tool_result: The call's output, for TOOL_RESULT steps.
    """

    kind: StepKind
    turn: int
    text: str = ""
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None


StepCallback = Callable[[AgentStep], Union[None, Awaitable[None]]]


@dataclass
class LoopOutcome:
    """Raw outcome of a model/tool loop.

    Attributes:
        text: The last text the model produced.
        turns_used: Model turns consumed.
        usage: Accumulated token usage.
        timed_out: True when the turn budget ran out with tool calls pending.
        aborted: True when the cancellation token stopped the loop.
    """

    text: str = ""
    turns_used: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    timed_out: bool = False
    aborted: bool = False


class AgentExecutor:
    """Runs agent roles against one model provider and tool runner.

    Each quality agent gets its own executor so that agents never share
    provider state.

    Attributes:
        provider: The model provider for this agent.
        tool_runner: Executes requested tool calls.

    Example:
        >>> executor = AgentExecutor(provider, WorkspaceTools())
        >>> result = await executor.execute(role, context, token=token)
        >>> result.status
        <AgentStatus.PASSED: 'passed'>
    """

    def __init__(
        self,
        provider: ModelProvider,
        tool_runner: ToolRunner,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.tool_runner = tool_runner
        self._clock = clock

    async def execute(
        self,
        role: AgentRole,
        context: AgentContext,
        token: Optional[CancellationToken] = None,
        on_step: Optional[StepCallback] = None,
    ) -> AgentResult:
        """Run a quality agent and return its verdict.

        Args:
            role: The resolved agent role.
            context: Branch, worktree, tier, diff stats, previous results.
            token: Cancellation token checked at every turn boundary.
            on_step: Optional side channel for streamed progress.

        Returns:
            The agent's result. Never raises for agent-level failures.
        """
        started = self._clock()
        log_extra = {"agent": role.name, "branch": context.branch}
        logger.info("Agent run starting", extra=log_extra)

        try:
            outcome = await self.run_loop(
                role=role,
                system_prompt=build_system_prompt(role, context),
                user_prompt=build_task_prompt(context),
                worktree_path=context.worktree_path,
                token=token,
                on_step=on_step,
            )
        except Exception as e:
            logger.exception("Agent run failed", extra=log_extra)
            return self._result(
                role,
                AgentStatus.ERROR,
                [Finding(severity=FindingSeverity.CRITICAL, description=f"Agent error: {e}")],
                [],
                started,
                LoopOutcome(),
            )

        if outcome.aborted:
            logger.info("Agent run aborted", extra=log_extra)
            return self._result(
                role,
                AgentStatus.ERROR,
                [Finding(severity=FindingSeverity.CRITICAL, description="Aborted")],
                [],
                started,
                outcome,
            )

        if outcome.timed_out:
            logger.warning(
                "Agent exceeded its turn budget",
                extra={**log_extra, "max_turns": role.max_turns},
            )
            return self._result(
                role,
                AgentStatus.TIMEOUT,
                [
                    Finding(
                        severity=FindingSeverity.WARNING,
                        description=f"Exceeded turn budget of {role.max_turns}",
                    )
                ],
                [],
                started,
                outcome,
            )

        try:
            status, findings, fixes = parse_agent_output(outcome.text)
        except Exception as e:
            logger.exception("Agent output could not be parsed", extra=log_extra)
            return self._result(
                role,
                AgentStatus.ERROR,
                [Finding(severity=FindingSeverity.CRITICAL, description=f"Unparsable agent output: {e}")],
                [],
                started,
                outcome,
            )

        result = self._result(role, status, findings, fixes, started, outcome)
        logger.info(
            "Agent run finished",
            extra={
                **log_extra,
                "status": result.status.value,
                "findings": len(result.findings),
                "turns_used": outcome.turns_used,
            },
        )
        return result

    async def run_loop(
        self,
        role: AgentRole,
        system_prompt: str,
        user_prompt: str,
        worktree_path: str,
        token: Optional[CancellationToken] = None,
        on_step: Optional[StepCallback] = None,
    ) -> LoopOutcome:
        """Drive the model/tool loop for at most role.max_turns model turns.

        Raises:
            Exception: Provider and tool runner failures propagate.
        """
        messages: List[ChatMessage] = [
            ChatMessage(role=MessageRole.SYSTEM, content=system_prompt),
            ChatMessage(role=MessageRole.USER, content=user_prompt),
        ]
        tools = self.tool_runner.specs(role.tools)
        outcome = LoopOutcome()

        for turn in range(1, role.max_turns + 1):
            if token is not None and token.cancelled:
                outcome.aborted = True
                return outcome

            response = await self.provider.complete(messages, tools)
            outcome.turns_used = turn
            outcome.usage = outcome.usage.add(response.usage)

            if response.text:
                outcome.text = response.text
                await _notify(on_step, AgentStep(StepKind.TEXT, turn, text=response.text))

            messages.append(
                ChatMessage(
                    role=MessageRole.ASSISTANT,
                    content=response.text,
                    tool_calls=response.tool_calls,
                )
            )

            if not response.tool_calls:
                return outcome

            for call in response.tool_calls:
                await _notify(on_step, AgentStep(StepKind.TOOL_CALL, turn, tool_call=call))
                result = await self.tool_runner.run(call, worktree_path)
                await _notify(on_step, AgentStep(StepKind.TOOL_RESULT, turn, tool_result=result))
                messages.append(
                    ChatMessage(
                        role=MessageRole.TOOL,
                        content=result.output,
                        tool_call_id=call.id,
                    )
                )

        outcome.timed_out = True
        return outcome

    def _result(
        self,
        role: AgentRole,
        status: AgentStatus,
        findings: List[Finding],
        fixes: List[str],
        started: float,
        outcome: LoopOutcome,
    ) -> AgentResult:
        return AgentResult(
            agent=role.name,
            status=status,
            findings=findings,
            fixes_applied=fixes,
            metadata=AgentResultMetadata(
                duration_ms=int((self._clock() - started) * 1000),
                turns_used=outcome.turns_used,
                tokens_used=outcome.usage,
                model=role.model,
                provider=role.provider,
            ),
        )


async def _notify(callback: Optional[StepCallback], step: AgentStep) -> None:
    """Deliver a step to the callback. Callback failures never stop the agent."""
    if callback is None:
        return
    try:
        maybe_awaitable = callback(step)
        if inspect.isawaitable(maybe_awaitable):
            await maybe_awaitable
    except Exception:
        logger.exception("Step callback raised", extra={"step_kind": step.kind.value})


# =============================================================================
# Prompt construction
# =============================================================================


def build_system_prompt(role: AgentRole, context: AgentContext) -> str:
    """Combine the role prompt with the working context."""
    stats = context.diff_stats
    lines = [
        role.system_prompt,
        "",
        "## Working Context",
        f"- Branch: {context.branch}",
        f"- Base branch: {context.base_branch}",
        f"- Worktree: {context.worktree_path}",
        f"- Tier: {context.tier.value}",
        f"- Files changed: {stats.files_changed} "
        f"(+{stats.lines_added} / -{stats.lines_deleted})",
    ]
    if stats.changed_files:
        lines.append("- Changed files:")
        lines.extend(f"  - {path}" for path in stats.changed_files)

    if context.previous_results:
        lines.extend(["", "## Previous Results"])
        for previous in context.previous_results:
            lines.append(
                f"- {previous.agent}: {previous.status.value}, "
                f"{len(previous.findings)} finding(s)"
            )
            for finding in previous.findings:
                if finding.fix_applied:
                    continue
                location = f" ({finding.file}:{finding.line})" if finding.file else ""
                lines.append(f"  - [{finding.severity.value}] {finding.description}{location}")

    return "\n".join(lines)


def build_task_prompt(context: AgentContext) -> str:
    return (
        f"Review the changes on branch {context.branch} against "
        f"{context.base_branch} in {context.worktree_path}. "
        "Finish with the JSON result described in your instructions."
    )


# =============================================================================
# Output parsing
# =============================================================================


_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def _extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Find the agent's JSON verdict in free-form text."""
    candidates: List[str] = [m.group(1) for m in _FENCED_JSON.finditer(text)]

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        if '"status"' not in candidate:
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_agent_output(text: str) -> Tuple[AgentStatus, List[Finding], List[str]]:
    """Parse an agent's final text into status, findings and fixes.

    Args:
        text: The last text the model produced.

    Returns:
        Tuple of (status, findings, fixes_applied).
    """
    data = _extract_json_object(text)
    if data is None:
        summary = text.strip()[:2000] or "Agent finished without output"
        return (
            AgentStatus.PASSED,
            [Finding(severity=FindingSeverity.INFO, description=summary)],
            [],
        )

    raw_findings = data.get("findings") or []
    if not isinstance(raw_findings, list):
        logger.warning("Ignoring non-list findings", extra={"findings_type": type(raw_findings).__name__})
        raw_findings = []

    findings: List[Finding] = []
    for raw in raw_findings:
        if not isinstance(raw, dict):
            continue
        try:
            findings.append(Finding.model_validate(raw))
        except ValidationError:
            logger.warning("Skipping malformed finding", extra={"finding": raw})

    raw_fixes = data.get("fixes_applied")
    if isinstance(raw_fixes, list):
        fixes = [str(fix) for fix in raw_fixes if fix]
    else:
        fixes = [
            f.fix_description or f.description for f in findings if f.fix_applied
        ]

    raw_status = str(data.get("status", "")).strip().lower()
    try:
        status = AgentStatus(raw_status)
    except ValueError:
        has_critical = any(f.severity == FindingSeverity.CRITICAL for f in findings)
        status = AgentStatus.FAILED if has_critical else AgentStatus.PASSED

    return status, findings, fixes
