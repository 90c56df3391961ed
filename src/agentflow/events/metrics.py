"""Prometheus metrics for pipeline and session observability.

Metrics are updated by a MetricsSubscriber registered on the event bus
and exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- agentflow_pipelines_total: Counter of finished pipeline requests by outcome
- agentflow_pipeline_duration_seconds: Histogram of pipeline wall time
- agentflow_agent_runs_total: Counter of quality agent runs by agent and status
- agentflow_agent_duration_seconds: Histogram of agent run time
- agentflow_sessions_by_status: Gauge of sessions currently in each status
- agentflow_reactions_total: Counter of reactions by signal and action

Source:
- src/agentflow/events/models.py (PipelineEvent, EventType)
- src/agentflow/state/models.py (SessionStatus)
"""

import logging
from typing import Callable, Dict, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from agentflow.events.models import EventType, PipelineEvent
from agentflow.state.models import SessionStatus


logger = logging.getLogger(__name__)


# Covers a quick single-agent check up to a large multi-agent run
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    15.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
)

_PIPELINE_OUTCOMES = {
    EventType.PIPELINE_COMPLETED.value: "approved",
    EventType.PIPELINE_FAILED.value: "failed",
    EventType.PIPELINE_STOPPED.value: "stopped",
    EventType.PIPELINE_ERROR.value: "error",
}


class PipelineMetrics:
    """Container for all Prometheus metrics of the service.

    Attributes:
        registry: The Prometheus registry for these metrics.

    Example:
        >>> metrics = PipelineMetrics(registry=CollectorRegistry())
        >>> metrics.record_pipeline_finished("approved", 42.0)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.pipelines_total = Counter(
            "agentflow_pipelines_total",
            "Total number of pipeline requests that reached a terminal outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )

        self.pipeline_duration_seconds = Histogram(
            "agentflow_pipeline_duration_seconds",
            "Wall time of pipeline requests in seconds",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.agent_runs_total = Counter(
            "agentflow_agent_runs_total",
            "Total number of quality agent runs",
            labelnames=["agent", "status"],
            registry=self.registry,
        )

        self.agent_duration_seconds = Histogram(
            "agentflow_agent_duration_seconds",
            "Run time of individual quality agents in seconds",
            labelnames=["agent"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.sessions_by_status = Gauge(
            "agentflow_sessions_by_status",
            "Current number of sessions in each status",
            labelnames=["status"],
            registry=self.registry,
        )

        self.reactions_total = Counter(
            "agentflow_reactions_total",
            "Total number of reactions applied to external signals",
            labelnames=["signal", "action"],
            registry=self.registry,
        )

        for status in SessionStatus:
            self.sessions_by_status.labels(status=status.value).set(0)

    def record_pipeline_finished(
        self,
        outcome: str,
        duration_seconds: Optional[float] = None,
    ) -> None:
        self.pipelines_total.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            self.pipeline_duration_seconds.observe(duration_seconds)

    def record_agent_run(
        self,
        agent: str,
        status: str,
        duration_seconds: Optional[float] = None,
    ) -> None:
        self.agent_runs_total.labels(agent=agent, status=status).inc()
        if duration_seconds is not None:
            self.agent_duration_seconds.labels(agent=agent).observe(duration_seconds)

    def record_session_transition(
        self,
        from_status: Optional[str],
        to_status: Optional[str],
    ) -> None:
        """Move one session between status buckets of the gauge."""
        if from_status:
            self.sessions_by_status.labels(status=from_status).dec()
        if to_status:
            self.sessions_by_status.labels(status=to_status).inc()

    def record_reaction(self, signal: str, action: str) -> None:
        self.reactions_total.labels(signal=signal, action=action).inc()


_default_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Get or create the metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.

    Returns:
        PipelineMetrics: The metrics instance.
    """
    global _default_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = PipelineMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


def _ms_to_seconds(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value) / 1000.0
    except (TypeError, ValueError):
        return None


class MetricsSubscriber:
    """Event handler that updates Prometheus metrics.

    Handled events:
    - pipeline.completed/failed/stopped/error: pipelines_total, duration
    - pipeline.agent.completed/failed: agent_runs_total, agent duration
    - session.accepted, session.transition: sessions_by_status
    - reaction.triggered: reactions_total

    Attributes:
        metrics: The PipelineMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)
        self._handlers: Dict[str, Callable[[PipelineEvent], None]] = {
            EventType.PIPELINE_AGENT_COMPLETED.value: self._handle_agent_finished,
            EventType.PIPELINE_AGENT_FAILED.value: self._handle_agent_finished,
            EventType.SESSION_ACCEPTED.value: self._handle_session_accepted,
            EventType.SESSION_TRANSITION.value: self._handle_session_transition,
            EventType.REACTION_TRIGGERED.value: self._handle_reaction,
        }
        for event_type in _PIPELINE_OUTCOMES:
            self._handlers[event_type] = self._handle_pipeline_finished

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    def __call__(self, event: PipelineEvent) -> None:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return
        try:
            handler(event)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type,
                str(e),
                extra={
                    "event_type": event.event_type,
                    "request_id": event.request_id,
                },
            )

    def _handle_pipeline_finished(self, event: PipelineEvent) -> None:
        self._metrics.record_pipeline_finished(
            _PIPELINE_OUTCOMES[event.event_type],
            _ms_to_seconds(event.data.get("duration_ms")),
        )

    def _handle_agent_finished(self, event: PipelineEvent) -> None:
        self._metrics.record_agent_run(
            agent=str(event.data.get("agent", "unknown")),
            status=str(event.data.get("status", "unknown")),
            duration_seconds=_ms_to_seconds(event.data.get("duration_ms")),
        )

    def _handle_session_accepted(self, event: PipelineEvent) -> None:
        self._metrics.record_session_transition(None, SessionStatus.ACCEPTED.value)

    def _handle_session_transition(self, event: PipelineEvent) -> None:
        self._metrics.record_session_transition(
            event.data.get("from"),
            event.data.get("to"),
        )

    def _handle_reaction(self, event: PipelineEvent) -> None:
        self._metrics.record_reaction(
            signal=str(event.data.get("signal", "unknown")),
            action=str(event.data.get("action", "unknown")),
        )
