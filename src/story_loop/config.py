"""Runtime configuration for the story loop."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND = "claude --dangerously-skip-permissions"
DEFAULT_COMPLETE_TOKEN = "<promise>COMPLETE</promise>"


@dataclass(slots=True)
class LoopSettings:
    """Iteration limits, budget and cooldown policy."""

    max_iterations: int = 0
    max_calls_per_hour: int = 100
    timeout_minutes: int = 20
    complete_token: str = DEFAULT_COMPLETE_TOKEN
    max_timeout_retries: int = 2
    timeout_retry_delay_seconds: float = 10.0
    success_pause_seconds: float = 5.0
    usage_limit_fallback_seconds: float = 3_600.0
    api_limit_cooldown_seconds: float = 3_600.0
    timeout_cooldown_seconds: float = 60.0
    error_cooldown_seconds: float = 30.0
    graceful_shutdown_seconds: int = 10
    show_countdown: bool = True

    @property
    def timeout_seconds(self) -> int:
        return self.timeout_minutes * 60


@dataclass(slots=True)
class AgentSettings:
    """External agent command and working directory."""

    command: str = DEFAULT_AGENT_COMMAND
    workdir: Path = Path()


@dataclass(slots=True)
class BreakerSettings:
    """Circuit breaker trip policy."""

    half_open_threshold: int = 2
    no_progress_threshold: int = 3
    same_error_threshold: int = 5
    degenerate_output_chars: int = 20
    history_limit: int = 20


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    projects_root: Path = Path("projects")
    loop: LoopSettings = field(default_factory=LoopSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)

    @classmethod
    def from_env(cls, projects_root: Path | None = None) -> Settings:
        """Load settings from environment; legacy variable names are honoured."""

        return cls(
            projects_root=projects_root
            or Path(os.getenv("STORY_LOOP_PROJECTS_ROOT", "projects")),
            loop=LoopSettings(
                max_iterations=int(
                    os.getenv("STORY_LOOP_MAX_ITERATIONS", os.getenv("MAX_ITERATIONS", "0")),
                ),
                max_calls_per_hour=int(
                    os.getenv(
                        "STORY_LOOP_MAX_CALLS_PER_HOUR",
                        os.getenv("MAX_CALLS_PER_HOUR", "100"),
                    ),
                ),
                timeout_minutes=int(
                    os.getenv(
                        "STORY_LOOP_TIMEOUT_MINUTES",
                        os.getenv("CLAUDE_TIMEOUT_MINUTES", "20"),
                    ),
                ),
                complete_token=os.getenv(
                    "STORY_LOOP_COMPLETE_TOKEN",
                    os.getenv("COMPLETE_TOKEN", DEFAULT_COMPLETE_TOKEN),
                ),
                max_timeout_retries=int(os.getenv("STORY_LOOP_MAX_TIMEOUT_RETRIES", "2")),
                timeout_retry_delay_seconds=float(
                    os.getenv("STORY_LOOP_TIMEOUT_RETRY_DELAY_SECONDS", "10"),
                ),
                success_pause_seconds=float(
                    os.getenv("STORY_LOOP_SUCCESS_PAUSE_SECONDS", "5"),
                ),
                usage_limit_fallback_seconds=float(
                    os.getenv("STORY_LOOP_USAGE_LIMIT_FALLBACK_SECONDS", "3600"),
                ),
                api_limit_cooldown_seconds=float(
                    os.getenv("STORY_LOOP_API_LIMIT_COOLDOWN_SECONDS", "3600"),
                ),
                timeout_cooldown_seconds=float(
                    os.getenv("STORY_LOOP_TIMEOUT_COOLDOWN_SECONDS", "60"),
                ),
                error_cooldown_seconds=float(
                    os.getenv("STORY_LOOP_ERROR_COOLDOWN_SECONDS", "30"),
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("STORY_LOOP_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                show_countdown=_env_bool("STORY_LOOP_SHOW_COUNTDOWN", default=True),
            ),
            agent=AgentSettings(
                command=os.getenv("STORY_LOOP_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                workdir=Path(os.getenv("STORY_LOOP_WORKDIR", ".")),
            ),
            breaker=BreakerSettings(
                half_open_threshold=int(os.getenv("STORY_LOOP_CB_HALF_OPEN_THRESHOLD", "2")),
                no_progress_threshold=int(
                    os.getenv("STORY_LOOP_CB_NO_PROGRESS_THRESHOLD", "3"),
                ),
                same_error_threshold=int(
                    os.getenv("STORY_LOOP_CB_SAME_ERROR_THRESHOLD", "5"),
                ),
                degenerate_output_chars=int(
                    os.getenv("STORY_LOOP_CB_DEGENERATE_OUTPUT_CHARS", "20"),
                ),
                history_limit=int(os.getenv("STORY_LOOP_CB_HISTORY_LIMIT", "20")),
            ),
        )

    def validate_for_run(self) -> None:
        """Raise configuration error if loop settings are unusable."""

        loop = self.loop
        if loop.max_iterations < 0:
            raise ValueError("STORY_LOOP_MAX_ITERATIONS must be >= 0 (0 = unlimited).")
        if loop.max_calls_per_hour <= 0:
            raise ValueError("STORY_LOOP_MAX_CALLS_PER_HOUR must be > 0.")
        if loop.timeout_minutes <= 0:
            raise ValueError("STORY_LOOP_TIMEOUT_MINUTES must be > 0.")
        if not loop.complete_token.strip():
            raise ValueError("STORY_LOOP_COMPLETE_TOKEN must be a non-empty string.")
        if loop.max_timeout_retries < 0:
            raise ValueError("STORY_LOOP_MAX_TIMEOUT_RETRIES must be >= 0.")
        for name, value in (
            ("TIMEOUT_RETRY_DELAY_SECONDS", loop.timeout_retry_delay_seconds),
            ("SUCCESS_PAUSE_SECONDS", loop.success_pause_seconds),
            ("USAGE_LIMIT_FALLBACK_SECONDS", loop.usage_limit_fallback_seconds),
            ("API_LIMIT_COOLDOWN_SECONDS", loop.api_limit_cooldown_seconds),
            ("TIMEOUT_COOLDOWN_SECONDS", loop.timeout_cooldown_seconds),
            ("ERROR_COOLDOWN_SECONDS", loop.error_cooldown_seconds),
        ):
            if value < 0:
                raise ValueError(f"STORY_LOOP_{name} must be >= 0.")

        try:
            argv = shlex.split(self.agent.command)
        except ValueError as error:
            raise ValueError(f"Invalid STORY_LOOP_AGENT_COMMAND: {error}") from error
        if not argv:
            raise ValueError("STORY_LOOP_AGENT_COMMAND must not be empty.")

        breaker = self.breaker
        if breaker.half_open_threshold <= 0:
            raise ValueError("STORY_LOOP_CB_HALF_OPEN_THRESHOLD must be > 0.")
        if breaker.no_progress_threshold < breaker.half_open_threshold:
            raise ValueError(
                "STORY_LOOP_CB_NO_PROGRESS_THRESHOLD must be >= "
                "STORY_LOOP_CB_HALF_OPEN_THRESHOLD.",
            )
        if breaker.same_error_threshold <= 0:
            raise ValueError("STORY_LOOP_CB_SAME_ERROR_THRESHOLD must be > 0.")
        if breaker.history_limit <= 0:
            raise ValueError("STORY_LOOP_CB_HISTORY_LIMIT must be > 0.")

    def project_dir(self, project_name: str) -> Path:
        return self.projects_root / project_name


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
