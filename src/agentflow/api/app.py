"""FastAPI application entry point for agentflow.

This module wires the service together and exposes its HTTP surface:
pipeline runs, sessions, the GitHub webhook receiver, event replay,
health and Prometheus metrics.

Source:
- src/agentflow/config.py (ServiceSettings, load_config)
- src/agentflow/pipeline/runner.py (PipelineRunner)
- src/agentflow/sessions/manager.py (SessionManager)
- src/agentflow/webhook/handler.py (WebhookHandler)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry

from agentflow import __version__
from agentflow.agents.executor import AgentExecutor
from agentflow.agents.models import AgentRole
from agentflow.agents.provider import ModelProviderFactory
from agentflow.agents.tools import WorkspaceTools
from agentflow.config import PipelineServiceConfig, ServiceSettings, get_settings, load_config
from agentflow.events.bus import EventBus
from agentflow.events.metrics import MetricsSubscriber, generate_metrics_output, get_metrics
from agentflow.events.subscribers import LoggingSubscriber
from agentflow.integrations.git import GitCli
from agentflow.integrations.github import GitHubTracker
from agentflow.pipeline.quality import QualityPipeline
from agentflow.pipeline.runner import PipelineRunner, build_quality_breaker
from agentflow.sessions.manager import SessionManager
from agentflow.sessions.orchestrator import OrchestratorAgent
from agentflow.sessions.store import SessionStore
from agentflow.webhook.handler import WebhookHandler


logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the HTTP layer talks to, built once per process."""

    settings: ServiceSettings
    config: PipelineServiceConfig
    bus: EventBus
    runner: PipelineRunner
    sessions: SessionManager
    webhook_handler: WebhookHandler
    metrics_registry: Optional[CollectorRegistry] = None
    tracker: Optional[GitHubTracker] = None
    background_tasks: List["asyncio.Task[None]"] = field(default_factory=list)


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: ServiceSettings, config: PipelineServiceConfig) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("agentflow configuration:")
    logger.info(f"  Project Path: {settings.project_path}")
    logger.info(f"  Main Branch: {config.branch.main}")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Repo: {settings.github_repo or config.tracker.repo}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(
        f"  Webhook Secret: {_redact_secret(settings.webhook_secret or config.webhook_secret)}"
    )
    logger.info(f"  Default Model: {config.orchestrator.provider}/{config.orchestrator.model}")
    logger.info(f"  Max Parallel Sessions: {config.tracker.max_parallel}")
    logger.info(f"  Auto Correction Attempts: {config.auto_correction.max_attempts}")
    logger.info(f"  Circuit Breaker Enabled: {config.circuit_breaker.enabled}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def build_services(
    settings: ServiceSettings,
    config: Optional[PipelineServiceConfig] = None,
) -> Services:
    """Wire all dependencies from settings and the YAML config.

    Args:
        settings: Validated process settings.
        config: Pre-loaded pipeline config; loaded from the project if None.

    Returns:
        Fully wired Services.
    """
    project_path = Path(settings.project_path).resolve()
    if config is None:
        config = load_config(
            project_path,
            Path(settings.config_file) if settings.config_file else None,
        )

    events_dir = Path(settings.events_path) if settings.events_path else config.events_directory(project_path)
    bus = EventBus.for_directory(events_dir)
    bus.subscribe(LoggingSubscriber())
    bus.subscribe(MetricsSubscriber(get_metrics()))

    provider_factory = ModelProviderFactory(config.llm_providers)
    tools = WorkspaceTools()

    def executor_factory(role: AgentRole) -> AgentExecutor:
        return AgentExecutor(provider_factory.create(role.provider, role.model), tools)

    git = GitCli()
    quality = QualityPipeline(bus, config, executor_factory)
    runner = PipelineRunner(
        config=config,
        bus=bus,
        diff_provider=git,
        quality_pipeline=quality,
        breaker=build_quality_breaker(config),
    )

    tracker: Optional[GitHubTracker] = None
    repo = settings.github_repo or config.tracker.repo
    if settings.github_token and repo:
        tracker = GitHubTracker(
            token=settings.github_token,
            repo=repo,
            base_url=settings.github_base_url,
        )
    else:
        logger.info("No GitHub tracker configured; sessions need inline issue details or a prompt")

    persist_path = Path(config.sessions.persist_path) if config.sessions.persist_path else None
    if persist_path is not None and not persist_path.is_absolute():
        persist_path = project_path / persist_path
    store = SessionStore(bus, persist_path=persist_path)
    store.load()

    sessions = SessionManager(
        config=config,
        store=store,
        bus=bus,
        orchestrator=OrchestratorAgent(config.orchestrator, executor_factory),
        git=git,
        tracker=tracker,
    )

    return Services(
        settings=settings,
        config=config,
        bus=bus,
        runner=runner,
        sessions=sessions,
        webhook_handler=WebhookHandler(settings.webhook_secret or config.webhook_secret),
        tracker=tracker,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        services: Pre-built services (tests). Built from the environment
            during startup when None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("agentflow starting up...")
        built = services
        if built is None:
            settings = get_settings()
            built = build_services(settings)
            logging.getLogger().setLevel(
                (settings.log_level or built.config.logging.level).upper()
            )
            _log_configuration(settings, built.config)
            built.background_tasks.append(
                asyncio.get_running_loop().create_task(
                    built.sessions.run_sweeper(settings.stale_sweep_interval_seconds)
                )
            )
        app.state.services = built
        logger.info("agentflow started successfully")

        yield

        logger.info("agentflow shutting down...")
        for task in built.background_tasks:
            task.cancel()
        await asyncio.gather(*built.background_tasks, return_exceptions=True)
        await built.runner.shutdown()
        await built.sessions.shutdown()
        if built.tracker is not None:
            await built.tracker.close()
        built.bus.close()
        logger.info("agentflow shutdown complete")

    from agentflow.api.pipelines import router as pipelines_router
    from agentflow.api.sessions import router as sessions_router
    from agentflow.api.webhooks import router as webhooks_router

    app = FastAPI(
        title="agentflow",
        description="Orchestration of autonomous quality agents and issue-to-PR sessions",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(pipelines_router)
    app.include_router(sessions_router)
    app.include_router(webhooks_router)

    @app.get("/health")
    async def health(request: Request):
        """Liveness probe with a summary of in-flight work."""
        svc: Services = request.app.state.services
        return {
            "status": "healthy",
            "version": __version__,
            "pipelines_running": len(svc.runner.registry.live_runs()),
            "sessions_active": svc.sessions.store.active_count(),
        }

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        svc: Services = request.app.state.services
        return Response(
            content=generate_metrics_output(svc.metrics_registry),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app


def main() -> None:
    """Run the service with uvicorn using host/port from the environment."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
