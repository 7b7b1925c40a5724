"""Domain models for the iteration controller."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path


class BreakerState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    HALF_OPEN = "HALF_OPEN"
    OPEN = "OPEN"


class OutcomeKind(str, Enum):
    """Terminal result of one invocation attempt sequence."""

    SUCCESS = "success"
    PROJECT_COMPLETE = "project_complete"
    API_LIMIT_REACHED = "api_limit_reached"
    TIMEOUT_EXHAUSTED = "timeout_exhausted"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    GENERIC_ERROR = "generic_error"


class LoopStatus(str, Enum):
    """Status tags published to ``status.json``."""

    RUNNING = "running"
    SUCCESS = "success"
    COMPLETE = "complete"
    USAGE_LIMIT = "usage_limit"
    API_LIMIT = "api_limit"
    TIMEOUT = "timeout"
    ERROR = "error"
    HALTED = "halted"
    MAX_ITERATIONS = "max_iterations"
    STOPPED = "stopped"


@dataclass(slots=True, frozen=True)
class ResponseAnalysis:
    """Signals extracted from one completed agent run."""

    files_modified: int = 0
    has_errors: bool = False
    error_message: str = ""
    exit_signal: bool = False


@dataclass(slots=True, frozen=True)
class ResetHint:
    """Parsed "resets <hour>" announcement."""

    hour: int
    reset_at: datetime
    wait: timedelta
    timezone: str | None
    raw: str


@dataclass(slots=True)
class InvocationOutcome:
    """Classified result of ``InvocationExecutor.execute``."""

    kind: OutcomeKind
    attempts: int
    exit_code: int | None = None
    log_path: Path | None = None
    output_size: int = 0
    analysis: ResponseAnalysis | None = None
    reset_hint: ResetHint | None = None
    error_message: str = ""


@dataclass(slots=True)
class LoopResult:
    """Final report of one ``IterationController.run`` call."""

    status: LoopStatus
    iterations: int
    invocations: int
    last_outcome: OutcomeKind | None = None
