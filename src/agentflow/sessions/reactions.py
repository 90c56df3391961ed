"""Reaction engine: policy-driven responses to session signals.

The `reactions` config maps each ReactionSignal to a ReactionRule. The
engine turns a signal into a ReactionDecision (the configured action,
possibly overridden by retry or time limits) and then interprets the
decision's ReactionAction through an explicit handler table.

Escalation rules:
- respawn_agent escalates instead once the signal has been seen
  max_retries times, or has kept recurring for escalate_after_min minutes
- escalate is idempotent: each distinct reason is recorded and published
  at most once; an escalated session is never escalated "again"
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from agentflow.config import PipelineServiceConfig, ReactionAction, ReactionRule, ReactionSignal
from agentflow.events.bus import EventBus
from agentflow.events.models import EventType
from agentflow.integrations.git import GitResult
from agentflow.integrations.github import Tracker
from agentflow.sessions.models import Session, utcnow
from agentflow.sessions.store import SessionStore
from agentflow.state.models import SessionStatus


logger = logging.getLogger(__name__)

RespawnHandler = Callable[[Session, ReactionSignal, str], Awaitable[None]]
MergeHandler = Callable[[Session], Awaitable[GitResult]]


@dataclass
class ReactionDecision:
    """What the engine decided for one signal.

    Attributes:
        signal: The signal being handled.
        action: The action that will be interpreted.
        rule: The configured rule for the signal.
        attempt: How many times the signal has now been seen.
        max_retries: Retry limit for respawn_agent.
        forced: True when escalation overrode the configured action.
        reason: Human-readable reason, used for escalation and notices.
    """

    signal: ReactionSignal
    action: ReactionAction
    rule: ReactionRule
    attempt: int
    max_retries: int
    forced: bool
    reason: str


class ReactionEngine:
    """Decides and applies reactions for sessions.

    Attributes:
        config: Pipeline configuration (reactions, sessions).
        store: Session registry used for transitions.
        bus: Event bus for reaction events.
        respawn: Re-runs the implementer with feedback.
        merge: Merges a session's pull request.
        tracker: Issue tracker for notices, if configured.
    """

    def __init__(
        self,
        config: PipelineServiceConfig,
        store: SessionStore,
        bus: EventBus,
        respawn: RespawnHandler,
        merge: MergeHandler,
        tracker: Optional[Tracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.bus = bus
        self.respawn = respawn
        self.merge = merge
        self.tracker = tracker
        self._clock = clock
        self._interpreters: Dict[
            ReactionAction, Callable[[Session, ReactionDecision], Awaitable[None]]
        ] = {
            ReactionAction.RESPAWN_AGENT: self._apply_respawn,
            ReactionAction.NOTIFY: self._apply_notify,
            ReactionAction.ESCALATE: self._apply_escalate,
            ReactionAction.AUTO_MERGE: self._apply_auto_merge,
        }

    def decide(self, session: Session, signal: ReactionSignal) -> ReactionDecision:
        """Pick the action for signal and update the session's counters."""
        now = self._clock()
        rule = self.config.reactions.rule_for(signal)
        action = rule.action
        if signal == ReactionSignal.APPROVED_AND_GREEN and self.config.sessions.auto_merge:
            action = ReactionAction.AUTO_MERGE

        max_retries = self.config.max_retries_for(signal)
        first_seen = session.first_signal_at.setdefault(signal, now)
        attempt = min(session.retry_counts.get(signal, 0) + 1, max(max_retries, 1))
        session.retry_counts[signal] = attempt

        reason = rule.message or f"Reaction to {signal.value}"
        forced = False

        if action == ReactionAction.RESPAWN_AGENT:
            elapsed_min = (now - first_seen).total_seconds() / 60
            if attempt >= max_retries:
                forced = True
                reason = f"{signal.value} persisted after {max_retries} retries"
            elif rule.escalate_after_min is not None and elapsed_min >= rule.escalate_after_min:
                forced = True
                reason = f"{signal.value} unresolved after {rule.escalate_after_min:g} minutes"
            if forced:
                action = ReactionAction.ESCALATE

        return ReactionDecision(
            signal=signal,
            action=action,
            rule=rule,
            attempt=attempt,
            max_retries=max_retries,
            forced=forced,
            reason=reason,
        )

    async def react(self, session: Session, signal: ReactionSignal) -> ReactionDecision:
        """Decide, publish reaction.triggered, then interpret the action."""
        decision = self.decide(session, signal)
        logger.info(
            "Reaction triggered",
            extra={
                "session_id": session.id,
                "signal": signal.value,
                "action": decision.action.value,
                "attempt": decision.attempt,
                "forced": decision.forced,
            },
        )
        await self.bus.publish(
            EventType.REACTION_TRIGGERED,
            session.id,
            {
                "signal": signal.value,
                "action": decision.action.value,
                "attempt": decision.attempt,
                "max_retries": decision.max_retries,
                "forced": decision.forced,
            },
        )
        self.store.save()
        await self._interpreters[decision.action](session, decision)
        return decision

    # -------------------------------------------------------------------------
    # Interpreters
    # -------------------------------------------------------------------------

    async def _apply_respawn(self, session: Session, decision: ReactionDecision) -> None:
        await self.bus.publish(
            EventType.REACTION_AGENT_RESPAWNED,
            session.id,
            {
                "signal": decision.signal.value,
                "attempt": decision.attempt,
                "prompt": decision.rule.prompt,
            },
        )
        await self.respawn(session, decision.signal, decision.rule.prompt)

    async def _apply_notify(self, session: Session, decision: ReactionDecision) -> None:
        await self.notify(session, decision.reason)
        await self.bus.publish(
            EventType.REACTION_NOTIFIED,
            session.id,
            {"signal": decision.signal.value, "message": decision.reason},
        )

    async def _apply_escalate(self, session: Session, decision: ReactionDecision) -> None:
        await self.escalate(session, decision.reason, signal=decision.signal)

    async def _apply_auto_merge(self, session: Session, decision: ReactionDecision) -> None:
        result = await self.merge(session)
        if not result.ok:
            await self.escalate(session, f"Auto-merge failed: {result.error}", signal=decision.signal)
            return
        await self.bus.publish(
            EventType.REACTION_AUTO_MERGED,
            session.id,
            {"pr_number": session.pr_number, "pr_url": session.pr_url},
        )
        if await self.store.transition(session, SessionStatus.MERGED, reason="Auto-merged"):
            await self.bus.publish(
                EventType.SESSION_MERGED,
                session.id,
                {"pr_number": session.pr_number, "auto_merged": True},
            )

    # -------------------------------------------------------------------------
    # Shared actions
    # -------------------------------------------------------------------------

    async def escalate(
        self,
        session: Session,
        reason: str,
        signal: Optional[ReactionSignal] = None,
    ) -> bool:
        """Escalate a session to a human.

        Returns:
            True if a new escalation reason was recorded. False for repeated
            reasons and for sessions that can no longer be escalated.
        """
        if session.status != SessionStatus.ESCALATED and not session.machine.can_transition(
            SessionStatus.ESCALATED
        ):
            return False
        if reason in session.escalation_reasons:
            return False

        session.escalation_reasons.append(reason)
        if session.status != SessionStatus.ESCALATED:
            await self.store.transition(session, SessionStatus.ESCALATED, reason=reason)
            session.token.cancel(f"Escalated: {reason}")
            await self.bus.publish(EventType.SESSION_ESCALATED, session.id, {"reason": reason})
        else:
            self.store.save()

        data = {"reason": reason}
        if signal is not None:
            data["signal"] = signal.value
        await self.bus.publish(EventType.REACTION_ESCALATED, session.id, data)
        await self.notify(session, f"Escalated for human review: {reason}")
        return True

    async def notify(self, session: Session, message: str) -> None:
        """Comment on the session's issue. Best-effort."""
        if self.tracker is None or session.is_prompt_only:
            return
        try:
            await self.tracker.add_comment(session.issue.number, message)
        except Exception as e:
            logger.warning(
                "Failed to comment on issue",
                extra={"session_id": session.id, "issue_number": session.issue.number, "error": str(e)},
            )
