"""Service configuration.

Configuration comes from two layers:

- ServiceSettings: process settings read from environment variables with
  the AGENTFLOW_ prefix (pydantic-settings). Where the service listens,
  which project it drives, credentials.
- PipelineServiceConfig: pipeline behaviour read from
  `<project>/.pipeline/config.yaml`. Every field is optional with
  defaults; `${VAR}` references are resolved from the environment before
  validation. A missing file yields all defaults; an unparsable or invalid
  file is logged and also yields defaults.

When `branch.main` is not set explicitly, load_config() asks git for the
repository's default branch.
"""

import logging
import os
import re
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentflow.models import Tier


logger = logging.getLogger(__name__)

CONFIG_RELATIVE_PATH = Path(".pipeline") / "config.yaml"


# =============================================================================
# Process settings
# =============================================================================


class ServiceSettings(BaseSettings):
    """Process configuration from environment variables.

    All environment variables are prefixed with AGENTFLOW_
    (e.g., AGENTFLOW_GITHUB_TOKEN).
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Project
    # -------------------------------------------------------------------------
    # Repository the service operates on
    project_path: str = "."

    # Overrides <project>/.pipeline/config.yaml
    config_file: Optional[str] = None

    # Overrides events.path from the YAML config
    events_path: Optional[str] = None

    # Overrides logging.level from the YAML config
    log_level: Optional[str] = None

    # -------------------------------------------------------------------------
    # GitHub
    # -------------------------------------------------------------------------
    github_token: Optional[str] = None

    # owner/repo; falls back to tracker.repo
    github_repo: Optional[str] = None

    # Supports GitHub Enterprise
    github_base_url: str = "https://api.github.com"

    # Secret for X-Hub-Signature-256 validation; falls back to webhook_secret
    webhook_secret: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 3002

    # How often idle sessions are checked for the agent_stuck reaction
    stale_sweep_interval_seconds: int = 60

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("stale_sweep_interval_seconds")
    @classmethod
    def validate_sweep_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("stale_sweep_interval_seconds must be at least 1")
        return v

    @field_validator("events_path")
    @classmethod
    def validate_events_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate that an explicit events path is absolute."""
        if v is not None and not Path(v).is_absolute():
            raise ValueError("events_path must be an absolute path")
        return v


def get_settings() -> ServiceSettings:
    """Create ServiceSettings from the environment.

    Raises:
        pydantic.ValidationError: If a variable is set to an invalid value.
    """
    return ServiceSettings()


# =============================================================================
# Pipeline configuration (YAML)
# =============================================================================


class BranchConfig(BaseModel):
    main: str = "main"
    # Prefix of the branch quality agents commit their fixes to
    pipeline_prefix: str = "pipeline/"


class LLMProviderConfig(BaseModel):
    """An OpenAI-compatible chat endpoint."""

    base_url: str
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    timeout_seconds: float = 300.0


DEFAULT_LLM_PROVIDERS: Dict[str, LLMProviderConfig] = {
    "anthropic": LLMProviderConfig(
        base_url="https://api.anthropic.com/v1/",
        api_key_env="ANTHROPIC_API_KEY",
    ),
    "openai": LLMProviderConfig(
        base_url="https://api.openai.com/v1",
        api_key_env="OPENAI_API_KEY",
    ),
    "ollama": LLMProviderConfig(base_url="http://localhost:11434/v1"),
}


class EventsConfig(BaseModel):
    # Defaults to <project>/.pipeline/events
    path: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized == "warn":
            normalized = "warning"
        if normalized not in {"debug", "info", "warning", "error"}:
            raise ValueError("level must be one of debug, info, warning, error")
        return normalized


class TierConfig(BaseModel):
    """Thresholds and default agents for one tier.

    max_files / max_lines are inclusive upper bounds; the large tier has
    no bounds.
    """

    max_files: Optional[int] = Field(default=None, ge=0)
    max_lines: Optional[int] = Field(default=None, ge=0)
    agents: List[str] = Field(default_factory=list)


class TiersConfig(BaseModel):
    small: TierConfig = Field(
        default_factory=lambda: TierConfig(
            max_files=3,
            max_lines=50,
            agents=["tests", "style"],
        )
    )
    medium: TierConfig = Field(
        default_factory=lambda: TierConfig(
            max_files=10,
            max_lines=300,
            agents=["tests", "security", "architecture", "style", "types"],
        )
    )
    large: TierConfig = Field(
        default_factory=lambda: TierConfig(
            agents=[
                "tests",
                "security",
                "architecture",
                "performance",
                "style",
                "types",
                "docs",
                "integration",
            ],
        )
    )

    def for_tier(self, tier: Tier) -> TierConfig:
        return getattr(self, tier.value)


class AgentOverride(BaseModel):
    model: Optional[str] = None
    provider: Optional[str] = None
    max_turns: Optional[int] = Field(default=None, ge=1)


class AutoCorrectionConfig(BaseModel):
    # Waves re-running failed agents; 0 disables correction cycles
    max_attempts: int = Field(default=0, ge=0)


class CircuitBreakerConfig(BaseModel):
    enabled: bool = True
    failure_threshold: int = Field(default=5, ge=1)
    cooldown_seconds: float = Field(default=60.0, ge=0)


class TrackerConfig(BaseModel):
    type: str = "github"
    repo: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    exclude_labels: List[str] = Field(default_factory=lambda: ["wontfix", "blocked"])
    max_parallel: int = Field(default=5, ge=1)


class OrchestratorConfig(BaseModel):
    model: str = "claude-sonnet-4-5-20250929"
    provider: str = "anthropic"
    max_planning_turns: int = Field(default=30, ge=1)
    max_implementing_turns: int = Field(default=200, ge=1)


class SessionsConfig(BaseModel):
    # Fallbacks for reaction rules that leave max_retries unset
    max_retries_ci: int = Field(default=3, ge=0)
    max_retries_review: int = Field(default=2, ge=0)
    # Idle minutes after which an active session for the same issue is superseded
    stale_after_min: float = Field(default=2.0, ge=0)
    auto_merge: bool = False
    persist_path: Optional[str] = None


class ReactionSignal(str, Enum):
    """External signals a session reacts to."""

    CI_FAILED = "ci_failed"
    CHANGES_REQUESTED = "changes_requested"
    APPROVED_AND_GREEN = "approved_and_green"
    AGENT_STUCK = "agent_stuck"


class ReactionAction(str, Enum):
    """What the reaction engine does for a signal.

    Attributes:
        RESPAWN_AGENT: Re-enter implementing with the rule's feedback prompt.
        NOTIFY: Comment on the issue; no state change.
        ESCALATE: Hand the session to a human.
        AUTO_MERGE: Merge the pull request.
    """

    RESPAWN_AGENT = "respawn_agent"
    NOTIFY = "notify"
    ESCALATE = "escalate"
    AUTO_MERGE = "auto_merge"


_ALLOWED_ACTIONS: Dict[ReactionSignal, frozenset] = {
    ReactionSignal.CI_FAILED: frozenset({
        ReactionAction.RESPAWN_AGENT, ReactionAction.NOTIFY, ReactionAction.ESCALATE,
    }),
    ReactionSignal.CHANGES_REQUESTED: frozenset({
        ReactionAction.RESPAWN_AGENT, ReactionAction.NOTIFY, ReactionAction.ESCALATE,
    }),
    ReactionSignal.APPROVED_AND_GREEN: frozenset({
        ReactionAction.NOTIFY, ReactionAction.AUTO_MERGE,
    }),
    ReactionSignal.AGENT_STUCK: frozenset({
        ReactionAction.ESCALATE, ReactionAction.NOTIFY,
    }),
}


class ReactionRule(BaseModel):
    """Policy for one signal.

    Attributes:
        action: What to do when the signal arrives.
        prompt: Feedback handed to a respawned agent.
        message: Text used for notify and escalate.
        max_retries: Respawns allowed before escalation is forced.
        escalate_after_min: Escalate once the signal has recurred for this long.
        after_min: Idle minutes before agent_stuck fires.
    """

    action: ReactionAction
    prompt: str = ""
    message: str = ""
    max_retries: Optional[int] = Field(default=None, ge=0)
    escalate_after_min: Optional[float] = Field(default=None, ge=0)
    after_min: Optional[float] = Field(default=None, ge=0)


class ReactionsConfig(BaseModel):
    ci_failed: ReactionRule = Field(
        default_factory=lambda: ReactionRule(
            action=ReactionAction.RESPAWN_AGENT,
            prompt="CI failed on this PR. Read the failure logs and fix the issues.",
            max_retries=3,
        )
    )
    changes_requested: ReactionRule = Field(
        default_factory=lambda: ReactionRule(
            action=ReactionAction.RESPAWN_AGENT,
            prompt="Review comments have been posted. Address each comment and push fixes.",
            max_retries=2,
            escalate_after_min=30,
        )
    )
    approved_and_green: ReactionRule = Field(
        default_factory=lambda: ReactionRule(
            action=ReactionAction.NOTIFY,
            message="PR approved and CI green, ready to merge",
        )
    )
    agent_stuck: ReactionRule = Field(
        default_factory=lambda: ReactionRule(
            action=ReactionAction.ESCALATE,
            after_min=15,
            message="Session stuck, needs human review",
        )
    )

    @model_validator(mode="after")
    def validate_actions(self) -> "ReactionsConfig":
        for signal in ReactionSignal:
            rule = self.rule_for(signal)
            if rule.action not in _ALLOWED_ACTIONS[signal]:
                raise ValueError(
                    f"reactions.{signal.value}.action cannot be {rule.action.value}"
                )
        return self

    def rule_for(self, signal: ReactionSignal) -> ReactionRule:
        return getattr(self, signal.value)


class PipelineServiceConfig(BaseModel):
    """Pipeline behaviour loaded from `.pipeline/config.yaml`."""

    branch: BranchConfig = Field(default_factory=BranchConfig)
    llm_providers: Dict[str, LLMProviderConfig] = Field(
        default_factory=lambda: dict(DEFAULT_LLM_PROVIDERS)
    )
    webhook_secret: Optional[str] = None
    events: EventsConfig = Field(default_factory=EventsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tiers: TiersConfig = Field(default_factory=TiersConfig)
    agents: Dict[str, AgentOverride] = Field(default_factory=dict)
    auto_correction: AutoCorrectionConfig = Field(default_factory=AutoCorrectionConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    reactions: ReactionsConfig = Field(default_factory=ReactionsConfig)

    @field_validator("llm_providers")
    @classmethod
    def merge_default_providers(
        cls, v: Dict[str, LLMProviderConfig]
    ) -> Dict[str, LLMProviderConfig]:
        """Configured providers add to (and replace) the built-in ones."""
        return {**DEFAULT_LLM_PROVIDERS, **v}

    def events_directory(self, project_path: Path) -> Path:
        if self.events.path:
            path = Path(self.events.path)
            return path if path.is_absolute() else project_path / path
        return project_path / ".pipeline" / "events"

    def max_retries_for(self, signal: ReactionSignal) -> int:
        rule = self.reactions.rule_for(signal)
        if rule.max_retries is not None:
            return rule.max_retries
        if signal == ReactionSignal.CHANGES_REQUESTED:
            return self.sessions.max_retries_review
        return self.sessions.max_retries_ci


# =============================================================================
# Loader
# =============================================================================


_ENV_REFERENCE = re.compile(r"\$\{(\w+)\}")


def resolve_env_vars(value: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    """Recursively replace `${VAR}` in strings with environment values.

    Unset variables resolve to the empty string.
    """
    env = os.environ if environ is None else environ
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(lambda m: env.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [resolve_env_vars(item, env) for item in value]
    if isinstance(value, dict):
        return {key: resolve_env_vars(item, env) for key, item in value.items()}
    return value


def detect_default_branch(project_path: Path) -> Optional[str]:
    """Ask git for the repository's default branch.

    Tries `origin/HEAD` first, then local `main` and `master`.

    Returns:
        The branch name, or None if it cannot be determined.
    """
    try:
        ref = subprocess.run(
            ["git", "symbolic-ref", "refs/remotes/origin/HEAD"],
            cwd=project_path,
            capture_output=True,
            text=True,
            timeout=10,
        )
        if ref.returncode == 0 and ref.stdout.strip():
            return ref.stdout.strip().rsplit("/", 1)[-1]

        for candidate in ("main", "master"):
            check = subprocess.run(
                ["git", "rev-parse", "--verify", "--quiet", candidate],
                cwd=project_path,
                capture_output=True,
                text=True,
                timeout=10,
            )
            if check.returncode == 0:
                return candidate
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Default branch detection failed: %s", e)

    return None


def load_config(
    project_path: Path,
    config_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    detect_branch: bool = True,
) -> PipelineServiceConfig:
    """Load and validate the pipeline configuration.

    Args:
        project_path: Root of the repository.
        config_file: Explicit config path. Defaults to
            `<project_path>/.pipeline/config.yaml`.
        environ: Environment used for `${VAR}` resolution.
        detect_branch: Ask git for the default branch when branch.main
            is not set explicitly.

    Returns:
        The validated configuration, or all defaults on any load error.
    """
    path = config_file or (project_path / CONFIG_RELATIVE_PATH)
    raw: Dict[str, Any] = {}

    if path.exists():
        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(parsed, dict):
                raw = resolve_env_vars(parsed, environ)
            logger.info("Loaded pipeline config", extra={"config_path": str(path)})
        except (yaml.YAMLError, OSError) as e:
            logger.error(
                "Failed to parse pipeline config, using defaults",
                extra={"config_path": str(path), "error": str(e)},
            )
    else:
        logger.info("No pipeline config found, using defaults")

    branch_section = raw.get("branch")
    has_explicit_main = isinstance(branch_section, dict) and "main" in branch_section

    try:
        config = PipelineServiceConfig.model_validate(raw)
    except ValidationError as e:
        logger.error(
            "Pipeline config validation failed, using defaults",
            extra={"errors": e.errors(include_url=False)},
        )
        config = PipelineServiceConfig()
        has_explicit_main = False

    if detect_branch and not has_explicit_main:
        detected = detect_default_branch(project_path)
        if detected and detected != config.branch.main:
            logger.info(
                "Detected default branch",
                extra={"detected": detected, "previous": config.branch.main},
            )
            config.branch.main = detected

    return config
