"""Iteration controller: one project, one agent call at a time."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from story_loop.config import LoopSettings, Settings
from story_loop.loop.backend import AgentBackend, CliAgentBackend
from story_loop.loop.circuit_breaker import CircuitBreaker
from story_loop.loop.classifier import ResponseAnalyzer
from story_loop.loop.contracts import LEDGER_FILE, LOGS_DIR
from story_loop.loop.executor import InvocationExecutor
from story_loop.loop.ledger import TaskLedger
from story_loop.loop.models import (
    InvocationOutcome,
    LoopResult,
    LoopStatus,
    OutcomeKind,
    ResponseAnalysis,
)
from story_loop.loop.prompts import PromptBuilder
from story_loop.loop.rate_limiter import RateLimiter
from story_loop.loop.status import StatusPublisher
from story_loop.loop.waits import CountdownWaiter, Waiter, format_duration
from story_loop.loop.workspace import GitChangeProbe

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _RunState:
    iteration: int = 0
    invocations: int = 0
    last_outcome: OutcomeKind | None = None
    current_story: str = ""
    finished: LoopStatus | None = None


class IterationController:
    """Drives the agent until the ledger is complete, halted or capped."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        loop_settings: LoopSettings,
        executor: InvocationExecutor,
        rate_limiter: RateLimiter,
        breaker: CircuitBreaker,
        ledger: TaskLedger,
        publisher: StatusPublisher,
        prompt_builder: PromptBuilder,
        waiter: Waiter,
        stop_event: threading.Event,
    ) -> None:
        self.loop_settings = loop_settings
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.ledger = ledger
        self.publisher = publisher
        self.prompt_builder = prompt_builder
        self.waiter = waiter
        self.stop_event = stop_event

    def run(self) -> LoopResult:
        state = _RunState()
        logger.info(
            "Starting loop (max iterations: %s, calls/hour: %d, timeout: %d min)",
            self.loop_settings.max_iterations or "unlimited",
            self.loop_settings.max_calls_per_hour,
            self.loop_settings.timeout_minutes,
        )
        with self._signal_handlers():
            while state.finished is None:
                self._iterate(state)

        logger.info(
            "Loop finished: status=%s iterations=%d invocations=%d",
            state.finished.value,
            state.iteration,
            state.invocations,
        )
        return LoopResult(
            status=state.finished,
            iterations=state.iteration,
            invocations=state.invocations,
            last_outcome=state.last_outcome,
        )

    def _iterate(self, state: _RunState) -> None:
        if self.stop_event.is_set():
            self._finish(state, LoopStatus.STOPPED)
            return

        state.iteration += 1
        max_iterations = self.loop_settings.max_iterations
        if max_iterations > 0 and state.iteration > max_iterations:
            state.iteration -= 1
            logger.info("Max iterations reached (%d)", max_iterations)
            self._finish(state, LoopStatus.MAX_ITERATIONS)
            return

        if self.breaker.should_halt():
            logger.error("Circuit breaker is OPEN; run `story-loop reset` to resume")
            self._finish(state, LoopStatus.HALTED)
            return

        snapshot = self.ledger.load()
        if snapshot.is_complete:
            logger.info("All %d stories complete!", snapshot.total)
            self._finish(state, LoopStatus.COMPLETE)
            return

        if not self.rate_limiter.can_call():
            state.iteration -= 1
            if not self.rate_limiter.wait_until_next_hour():
                self._finish(state, LoopStatus.STOPPED)
            return

        story = snapshot.next_story()
        state.current_story = story.id if story else ""
        logger.info(
            "Loop #%d: %d/%d complete, next story %s",
            state.iteration,
            snapshot.complete,
            snapshot.total,
            state.current_story or "-",
        )
        self._publish(state, LoopStatus.RUNNING)

        try:
            prompt = self.prompt_builder.build(snapshot)
        except OSError as error:
            logger.error("Could not build prompt: %s", error)
            outcome = InvocationOutcome(
                kind=OutcomeKind.GENERIC_ERROR,
                attempts=0,
                error_message=f"prompt unavailable: {error}",
            )
        else:
            calls = self.rate_limiter.record_call()
            logger.info(
                "Call %d/%d this hour",
                calls,
                self.loop_settings.max_calls_per_hour,
            )
            outcome = self.executor.execute(prompt, self.loop_settings.timeout_seconds)
            state.invocations += 1

        state.last_outcome = outcome.kind
        if self.stop_event.is_set():
            self._finish(state, LoopStatus.STOPPED)
            return
        self._handle_outcome(state, outcome)

    def _handle_outcome(self, state: _RunState, outcome: InvocationOutcome) -> None:
        settings = self.loop_settings
        kind = outcome.kind

        if kind is OutcomeKind.PROJECT_COMPLETE:
            logger.info("Agent reported the project complete")
            self._finish(state, LoopStatus.COMPLETE)
            return

        if kind is OutcomeKind.SUCCESS:
            analysis = outcome.analysis or ResponseAnalysis()
            self.breaker.record_outcome(
                iteration=state.iteration,
                files_modified=analysis.files_modified,
                has_error=analysis.has_errors,
                output_size=outcome.output_size,
                error_message=analysis.error_message,
            )
            self._publish(state, LoopStatus.SUCCESS)
            self._pause(state, settings.success_pause_seconds, label="Next loop in")
            return

        if kind is OutcomeKind.USAGE_LIMIT_REACHED:
            self._publish(state, LoopStatus.USAGE_LIMIT)
            hint = outcome.reset_hint
            if hint is not None:
                wait_seconds = hint.wait.total_seconds()
                logger.warning(
                    "Usage limit reached; resets at %s%s (waiting %s)",
                    hint.reset_at.strftime("%Y-%m-%d %H:%M"),
                    f" ({hint.timezone})" if hint.timezone else "",
                    format_duration(wait_seconds),
                )
            else:
                wait_seconds = settings.usage_limit_fallback_seconds
                logger.warning(
                    "Usage limit reached; reset time unknown, waiting %s",
                    format_duration(wait_seconds),
                )
            self._pause(state, wait_seconds, label="Usage limit resets in")
            return

        if kind is OutcomeKind.API_LIMIT_REACHED:
            self._publish(state, LoopStatus.API_LIMIT)
            logger.warning(
                "API usage limit reached; waiting %s",
                format_duration(settings.api_limit_cooldown_seconds),
            )
            self._pause(state, settings.api_limit_cooldown_seconds, label="API limit resets in")
            return

        if kind is OutcomeKind.TIMEOUT_EXHAUSTED:
            self._publish(state, LoopStatus.TIMEOUT)
            logger.warning(
                "All timeout retries exhausted, waiting %ss before next loop...",
                f"{settings.timeout_cooldown_seconds:g}",
            )
            self._pause(state, settings.timeout_cooldown_seconds, label="Next loop in")
            return

        self.breaker.record_outcome(
            iteration=state.iteration,
            files_modified=0,
            has_error=True,
            output_size=outcome.output_size,
            error_message=outcome.error_message,
        )
        self._publish(state, LoopStatus.ERROR)
        logger.warning(
            "Execution failed, waiting %ss before retry...",
            f"{settings.error_cooldown_seconds:g}",
        )
        self._pause(state, settings.error_cooldown_seconds, label="Retrying in")

    def _pause(self, state: _RunState, seconds: float, *, label: str) -> None:
        if not self.waiter.wait(seconds, label=label):
            self._finish(state, LoopStatus.STOPPED)

    def _publish(self, state: _RunState, status: LoopStatus) -> None:
        try:
            self.publisher.publish(
                loop_count=state.iteration,
                status=status,
                current_story=state.current_story,
            )
        except OSError as error:
            logger.warning("Could not publish status %s: %s", status.value, error)

    def _finish(self, state: _RunState, status: LoopStatus) -> None:
        if status is LoopStatus.COMPLETE:
            state.current_story = ""
        self._publish(state, status)
        state.finished = status

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

    def _request_stop(self, *, signal_name: str) -> None:
        logger.warning("Received %s; stopping after the current step", signal_name)
        self.stop_event.set()


def build_iteration_controller(  # noqa: PLR0913
    *,
    settings: Settings,
    project_dir: Path,
    backend: AgentBackend | None = None,
    waiter: Waiter | None = None,
    stop_event: threading.Event | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> IterationController:
    """Wire the loop components for one project directory."""

    stop_event = stop_event or threading.Event()
    waiter = waiter or CountdownWaiter(
        stop_event=stop_event,
        show_countdown=settings.loop.show_countdown,
    )
    loop_settings = settings.loop
    workdir = settings.agent.workdir
    ledger = TaskLedger(project_dir / LEDGER_FILE)
    rate_limiter = RateLimiter(
        state_dir=project_dir,
        max_calls_per_hour=loop_settings.max_calls_per_hour,
        waiter=waiter,
        clock=clock,
    )
    executor = InvocationExecutor(
        backend=backend or CliAgentBackend(),
        command=settings.agent.command,
        logs_dir=project_dir / LOGS_DIR,
        complete_token=loop_settings.complete_token,
        analyzer=ResponseAnalyzer(state_dir=project_dir),
        waiter=waiter,
        workdir=workdir,
        change_probe=GitChangeProbe(workdir, exclude=(project_dir,)),
        max_timeout_retries=loop_settings.max_timeout_retries,
        retry_delay_seconds=loop_settings.timeout_retry_delay_seconds,
        graceful_shutdown_seconds=loop_settings.graceful_shutdown_seconds,
        shutdown_requested=stop_event.is_set,
        clock=clock,
    )
    return IterationController(
        loop_settings=loop_settings,
        executor=executor,
        rate_limiter=rate_limiter,
        breaker=CircuitBreaker(state_dir=project_dir, settings=settings.breaker),
        ledger=ledger,
        publisher=StatusPublisher(
            state_dir=project_dir,
            ledger=ledger,
            rate_limiter=rate_limiter,
        ),
        prompt_builder=PromptBuilder(
            project_dir=project_dir,
            workdir=workdir,
            complete_token=loop_settings.complete_token,
        ),
        waiter=waiter,
        stop_event=stop_event,
    )
