from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from story_loop.config import BreakerSettings
from story_loop.loop.circuit_breaker import CircuitBreaker
from story_loop.loop.models import BreakerState

pytestmark = [
    allure.epic("Story Loop"),
    allure.feature("Circuit Breaker"),
]


def _no_progress(breaker: CircuitBreaker, iteration: int) -> BreakerState:
    return breaker.record_outcome(
        iteration=iteration,
        files_modified=0,
        has_error=False,
        output_size=500,
    )


def _progress(breaker: CircuitBreaker, iteration: int) -> BreakerState:
    return breaker.record_outcome(
        iteration=iteration,
        files_modified=2,
        has_error=False,
        output_size=500,
    )


def test_fresh_breaker_is_closed(tmp_path: Path) -> None:
    breaker = CircuitBreaker(state_dir=tmp_path)

    assert breaker.state() is BreakerState.CLOSED
    assert breaker.should_halt() is False


def test_escalates_through_half_open_before_opening(tmp_path: Path) -> None:
    breaker = CircuitBreaker(state_dir=tmp_path)

    assert _no_progress(breaker, 1) is BreakerState.CLOSED
    assert _no_progress(breaker, 2) is BreakerState.HALF_OPEN
    assert _no_progress(breaker, 3) is BreakerState.OPEN
    assert breaker.should_halt() is True

    record = breaker.load()
    assert [entry.iteration for entry in record.failure_history] == [1, 2, 3]


def test_progress_in_half_open_closes_again(tmp_path: Path) -> None:
    breaker = CircuitBreaker(state_dir=tmp_path)
    _no_progress(breaker, 1)
    _no_progress(breaker, 2)

    assert _progress(breaker, 3) is BreakerState.CLOSED
    assert breaker.load().consecutive_no_progress == 0


def test_degenerate_output_is_not_progress(tmp_path: Path) -> None:
    breaker = CircuitBreaker(state_dir=tmp_path)

    for iteration in (1, 2):
        breaker.record_outcome(
            iteration=iteration,
            files_modified=3,
            has_error=False,
            output_size=5,
        )

    assert breaker.state() is BreakerState.HALF_OPEN


def test_open_is_sticky_until_reset(tmp_path: Path) -> None:
    breaker = CircuitBreaker(state_dir=tmp_path)
    for iteration in (1, 2, 3):
        _no_progress(breaker, iteration)

    for iteration in range(4, 10):
        assert _progress(breaker, iteration) is BreakerState.OPEN
        assert breaker.should_halt() is True

    breaker.reset("operator checked the agent")

    assert breaker.should_halt() is False
    record = breaker.load()
    assert record.state is BreakerState.CLOSED
    assert record.failure_history == []
    assert record.last_reset_reason == "operator checked the agent"


def test_repeated_identical_errors_open_directly(tmp_path: Path) -> None:
    settings = BreakerSettings(
        half_open_threshold=10,
        no_progress_threshold=10,
        same_error_threshold=3,
    )
    breaker = CircuitBreaker(state_dir=tmp_path, settings=settings)

    states = [
        breaker.record_outcome(
            iteration=iteration,
            files_modified=1,
            has_error=True,
            output_size=100,
            error_message="Error: cannot import name 'foo'",
        )
        for iteration in (1, 2, 3)
    ]

    assert states == [BreakerState.CLOSED, BreakerState.CLOSED, BreakerState.OPEN]


def test_history_is_trimmed(tmp_path: Path) -> None:
    breaker = CircuitBreaker(
        state_dir=tmp_path,
        settings=BreakerSettings(half_open_threshold=50, no_progress_threshold=50, history_limit=4),
    )
    for iteration in range(1, 8):
        _no_progress(breaker, iteration)

    assert [entry.iteration for entry in breaker.load().failure_history] == [4, 5, 6, 7]


def test_state_survives_restart(tmp_path: Path) -> None:
    first = CircuitBreaker(state_dir=tmp_path)
    for iteration in (1, 2, 3):
        _no_progress(first, iteration)

    assert CircuitBreaker(state_dir=tmp_path).should_halt() is True
    payload = json.loads((tmp_path / ".circuit_breaker.json").read_text("utf-8"))
    assert payload["state"] == "OPEN"
    assert payload["version"] == 1
    assert len(payload["failure_history"]) == 3


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        json.dumps({"state": "SIDEWAYS"}),
        json.dumps({"state": "OPEN", "failure_history": "nope"}),
        json.dumps({"state": "OPEN", "version": 99}),
    ],
)
def test_malformed_state_file_is_fresh_state(tmp_path: Path, content: str) -> None:
    (tmp_path / ".circuit_breaker.json").write_text(content, "utf-8")
    breaker = CircuitBreaker(state_dir=tmp_path)

    assert breaker.state() is BreakerState.CLOSED
    assert _no_progress(breaker, 1) is BreakerState.CLOSED


def test_describe_reports_state_and_last_outcome(tmp_path: Path) -> None:
    breaker = CircuitBreaker(state_dir=tmp_path)
    _no_progress(breaker, 1)
    _no_progress(breaker, 2)

    lines = breaker.describe()

    assert lines[0] == "Circuit breaker: HALF_OPEN"
    assert any("No-progress streak: 2/3" in line for line in lines)
    assert any("loop #2 files=0" in line for line in lines)
