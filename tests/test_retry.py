"""Tests for retry policy, the circuit breaker and the invocation rate limiter."""

import asyncio
import json
import os
import random
import threading
import time
from datetime import timedelta

import pytest

from taskloop.errors import CircuitOpen
from taskloop.models import (
    AgentSelection, CircuitBreakerConfig, CircuitState, ErrorCategory,
    OrchestratorConfig, RateLimitConfig, RetryConfig,
)
from taskloop.retry import (
    CircuitBreaker, InvocationRateLimiter, RetryAction, RetryController,
    build_fallback_chain, classify_error, error_signature,
)


class TestErrorClassification:
    """Tests for classify_error()."""

    def test_classify_billing_error(self):
        assert classify_error("Credit balance is too low") == ErrorCategory.BILLING
        assert classify_error("quota exceeded") == ErrorCategory.BILLING

    def test_classify_auth_error(self):
        assert classify_error("401 Unauthorized") == ErrorCategory.AUTH
        assert classify_error("invalid api key") == ErrorCategory.AUTH

    def test_classify_rate_limit_error(self):
        assert classify_error("429 Too Many Requests") == ErrorCategory.RATE_LIMIT
        assert classify_error("API is overloaded") == ErrorCategory.RATE_LIMIT

    def test_classify_transient_error(self):
        assert classify_error("connection reset by peer") == ErrorCategory.TRANSIENT
        assert classify_error("503 Service Unavailable") == ErrorCategory.TRANSIENT

    def test_classify_crash(self):
        assert classify_error("process exited with code 1") == ErrorCategory.AGENT_CRASH
        assert classify_error("Traceback (most recent call last):") == ErrorCategory.AGENT_CRASH

    def test_timeout_flag_wins(self):
        assert classify_error("429 Too Many Requests", timed_out=True) == ErrorCategory.TIMEOUT

    def test_classify_unknown_error(self):
        assert classify_error("something odd") == ErrorCategory.UNKNOWN
        assert classify_error("") == ErrorCategory.UNKNOWN
        assert classify_error(None) == ErrorCategory.UNKNOWN

    def test_error_signature(self):
        assert error_signature("a\nb\nboom") == error_signature("different head\nb\nboom", tail_lines=2)
        assert error_signature("") == ""


class TestFallbackChain:
    """Tests for build_fallback_chain()."""

    def test_primary_then_fallbacks_then_default(self):
        config = OrchestratorConfig(
            agent=AgentSelection(agent="claude", model="opus"),
            fallbacks=[AgentSelection(agent="codex")],
        )
        assert build_fallback_chain(config) == [
            AgentSelection(agent="claude", model="opus"),
            AgentSelection(agent="codex"),
            AgentSelection(agent="claude", model="sonnet"),
        ]

    def test_default_fallback_disabled(self):
        config = OrchestratorConfig(use_default_fallback=False)
        assert build_fallback_chain(config) == [AgentSelection(agent="claude")]

    def test_no_duplicate_entries(self):
        config = OrchestratorConfig(
            agent=AgentSelection(agent="claude", model="sonnet"),
            fallbacks=[AgentSelection(agent="claude", model="sonnet")],
        )
        assert build_fallback_chain(config) == [AgentSelection(agent="claude", model="sonnet")]


def _controller(chain_length: int = 1, **overrides) -> RetryController:
    values = dict(base_delay_seconds=1.0, max_delay_seconds=60.0, jitter_factor=0.0, max_retries=2)
    values.update(overrides)
    chain = [AgentSelection(agent="claude", model=f"m{i}") for i in range(chain_length)]
    return RetryController(RetryConfig(**values), chain, rng=random.Random(0))


class TestRetryController:
    """Tests for backoff and fallback decisions."""

    def test_exponential_backoff(self):
        controller = _controller()
        assert controller.calculate_delay(0) == 1.0
        assert controller.calculate_delay(1) == 2.0
        assert controller.calculate_delay(3) == 8.0

    def test_backoff_capped(self):
        controller = _controller(max_delay_seconds=5.0)
        assert controller.calculate_delay(10) == 5.0

    def test_rate_limit_waits_longer(self):
        controller = _controller()
        assert controller.calculate_delay(1, ErrorCategory.RATE_LIMIT) == 4.0

    def test_jitter_stays_in_bounds(self):
        controller = _controller(jitter_factor=0.1)
        for _ in range(20):
            delay = controller.calculate_delay(2)
            assert 3.6 <= delay <= 4.4

    def test_retries_then_exhausted(self):
        """Test that a single-entry chain retries max_retries times, then gives up."""
        controller = _controller()
        controller.start_phase()
        first = controller.on_failure(ErrorCategory.TRANSIENT)
        second = controller.on_failure(ErrorCategory.TRANSIENT)
        third = controller.on_failure(ErrorCategory.TRANSIENT)

        assert first.action == RetryAction.RETRY
        assert first.delay_seconds == 1.0
        assert second.action == RetryAction.RETRY
        assert second.delay_seconds == 2.0
        assert third.action == RetryAction.EXHAUSTED

    def test_fallback_before_retry_ceiling(self):
        """Test that the chain is walked before failures count against max_retries."""
        controller = _controller(chain_length=3, max_retries=1)
        controller.start_phase()

        decisions = [controller.on_failure(ErrorCategory.AGENT_CRASH) for _ in range(4)]

        assert [d.action for d in decisions] == [
            RetryAction.FALLBACK, RetryAction.FALLBACK, RetryAction.RETRY, RetryAction.EXHAUSTED,
        ]
        assert decisions[0].selection.model == "m1"
        assert decisions[1].selection.model == "m2"
        assert controller.current.model == "m2"

    def test_fallback_after_several_failures(self):
        controller = _controller(chain_length=2, fallback_after=2)
        controller.start_phase()
        assert controller.on_failure(ErrorCategory.TRANSIENT).action == RetryAction.RETRY
        assert controller.on_failure(ErrorCategory.TRANSIENT).action == RetryAction.FALLBACK

    def test_rate_limit_falls_back_immediately(self):
        controller = _controller(chain_length=2, fallback_after=5)
        controller.start_phase()
        decision = controller.on_failure(ErrorCategory.RATE_LIMIT)
        assert decision.action == RetryAction.FALLBACK
        assert decision.category == ErrorCategory.RATE_LIMIT

    def test_non_retryable_exhausts_without_fallback(self):
        controller = _controller()
        controller.start_phase()
        decision = controller.on_failure(ErrorCategory.BILLING)
        assert decision.action == RetryAction.EXHAUSTED
        assert "not retryable" in decision.reason

    def test_non_retryable_moves_down_chain(self):
        controller = _controller(chain_length=2, fallback_after=3)
        controller.start_phase()
        assert controller.on_failure(ErrorCategory.AUTH).action == RetryAction.FALLBACK

    def test_start_phase_resets_counts_not_position(self):
        controller = _controller(chain_length=2)
        controller.start_phase()
        controller.on_failure(ErrorCategory.TRANSIENT)
        controller.start_phase()
        assert controller.position == 1
        assert controller.retries_used == 0
        assert controller.phase_attempts == 0

    def test_empty_chain_rejected(self):
        with pytest.raises(ValueError):
            RetryController(RetryConfig(), [])


class TestCircuitBreaker:
    """Tests for the run-halting circuit breaker."""

    def test_opens_after_threshold(self, clock):
        """Test that exactly N consecutive failures open the breaker."""
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3), clock=clock)
        breaker.record_failure("error one")
        breaker.record_failure("error two")
        breaker.check()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure("error three")
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpen):
            breaker.check("002-001-x", "implement")

    def test_success_resets_count(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2), clock=clock)
        breaker.record_failure("a")
        breaker.record_success()
        breaker.record_failure("b")
        assert breaker.state == CircuitState.CLOSED

    def test_same_error_opens(self, clock):
        breaker = CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=10, same_error_threshold=2), clock=clock,
        )
        breaker.record_failure("identical")
        breaker.record_success()
        breaker.record_failure("identical")
        assert breaker.state == CircuitState.OPEN
        assert "same error" in breaker.snapshot.reason

    def test_disabled_never_opens(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(enabled=False, failure_threshold=1), clock=clock)
        breaker.record_failure("x")
        breaker.check()
        assert breaker.state == CircuitState.CLOSED

    def test_state_persists_across_instances(self, tmp_path, clock):
        state_file = tmp_path / "circuit.json"
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1), state_file=state_file, clock=clock)
        breaker.record_failure("x")

        reloaded = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1), state_file=state_file, clock=clock)
        assert reloaded.state == CircuitState.OPEN
        assert json.loads(state_file.read_text())["state"] == "open"

    def test_unreadable_state_is_ignored(self, tmp_path, clock):
        state_file = tmp_path / "circuit.json"
        state_file.write_text("{not json")
        assert CircuitBreaker(CircuitBreakerConfig(), state_file=state_file, clock=clock).state == CircuitState.CLOSED

    def test_half_open_after_cooldown(self, clock):
        """Test the open, half-open, closed cycle."""
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, cooldown_minutes=5), clock=clock)
        breaker.record_failure("x")

        clock.advance(minutes=4)
        breaker.resume_after_cooldown()
        assert breaker.state == CircuitState.OPEN

        clock.advance(minutes=2)
        breaker.resume_after_cooldown()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.check()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3, cooldown_minutes=0), clock=clock)
        for text in ("a", "b", "c"):
            breaker.record_failure(text)
        breaker.resume_after_cooldown()
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure("d")
        assert breaker.state == CircuitState.OPEN

    def test_transitions_are_logged(self, clock):
        events = []

        class Recorder:
            def log_event(self, event_type, **fields):
                events.append(fields)

        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1), clock=clock, events=Recorder())
        breaker.record_failure("x")
        assert events == [{"old": "closed", "new": "open", "reason": "1 consecutive phase failures"}]

    def test_tasks_without_changes_open_breaker(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(no_progress_threshold=3), clock=clock)
        breaker.record_progress(False, 100)
        breaker.record_progress(False, 100)
        assert breaker.state == CircuitState.CLOSED

        breaker.record_progress(False, 100)
        assert breaker.state == CircuitState.OPEN
        assert "no file changes" in breaker.snapshot.reason

    def test_progress_resets_count(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(no_progress_threshold=2), clock=clock)
        breaker.record_progress(False, 100)
        breaker.record_progress(True, 100)
        breaker.record_progress(False, 100)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot.no_progress_count == 1

    def test_declining_output_is_no_progress(self, clock):
        """Test that output under 70% of the recent average counts against progress even with changes."""
        breaker = CircuitBreaker(CircuitBreakerConfig(no_progress_threshold=1), clock=clock)
        breaker.record_progress(True, 1000)
        breaker.record_progress(True, 1000)
        breaker.record_progress(True, 750)
        assert breaker.state == CircuitState.CLOSED

        breaker.record_progress(True, 500)
        assert breaker.state == CircuitState.OPEN
        assert "output declining" in breaker.snapshot.reason

    def test_output_decline_can_be_disabled(self, clock):
        breaker = CircuitBreaker(
            CircuitBreakerConfig(no_progress_threshold=1, output_decline_percent=0), clock=clock,
        )
        for size in (1000, 1000, 10):
            breaker.record_progress(True, size)
        assert breaker.state == CircuitState.CLOSED

    def test_output_window_keeps_recent_tasks(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(), clock=clock)
        for size in range(1, 8):
            breaker.record_progress(True, size * 100)
        assert breaker.snapshot.output_sizes == [300, 400, 500, 600, 700]

    def test_progress_state_persists(self, tmp_path, clock):
        state_file = tmp_path / "circuit.json"
        breaker = CircuitBreaker(CircuitBreakerConfig(), state_file=state_file, clock=clock)
        breaker.record_progress(False, 250)

        reloaded = CircuitBreaker(CircuitBreakerConfig(), state_file=state_file, clock=clock)
        assert reloaded.snapshot.no_progress_count == 1
        assert reloaded.snapshot.output_sizes == [250]


class TestInvocationRateLimiter:
    """Tests for the rolling hourly invocation cap."""

    @pytest.mark.asyncio
    async def test_under_limit_does_not_wait(self, tmp_path, clock):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        limiter = InvocationRateLimiter(
            RateLimitConfig(calls_per_hour=3), state_file=tmp_path / "rate.json", clock=clock, sleep=fake_sleep,
        )
        await limiter.acquire()
        await limiter.acquire()

        assert sleeps == []
        assert limiter.remaining() == 1

    @pytest.mark.asyncio
    async def test_waits_when_budget_spent(self, tmp_path, clock):
        """Test that the call after the cap waits for the oldest to leave the window."""
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            clock.advance(seconds=seconds)

        limiter = InvocationRateLimiter(
            RateLimitConfig(calls_per_hour=2), state_file=tmp_path / "rate.json", clock=clock, sleep=fake_sleep,
        )
        await limiter.acquire()
        clock.advance(minutes=10)
        await limiter.acquire()
        await limiter.acquire()

        assert sleeps == [pytest.approx(timedelta(minutes=50).total_seconds())]

    @pytest.mark.asyncio
    async def test_budget_shared_through_state_file(self, tmp_path, clock):
        state_file = tmp_path / "rate.json"
        first = InvocationRateLimiter(RateLimitConfig(calls_per_hour=5), state_file=state_file, clock=clock)
        await first.acquire()
        await first.acquire()

        second = InvocationRateLimiter(RateLimitConfig(calls_per_hour=5), state_file=state_file, clock=clock)
        assert second.remaining() == 3

    @pytest.mark.asyncio
    async def test_disabled_records_nothing(self, tmp_path, clock):
        state_file = tmp_path / "rate.json"
        limiter = InvocationRateLimiter(RateLimitConfig(enabled=False), state_file=state_file, clock=clock)
        await limiter.acquire()
        assert not state_file.exists()

    def test_concurrent_workers_lose_no_calls(self, tmp_path, clock):
        """Test that workers sharing the state file never overwrite each other's calls."""
        state_file = tmp_path / "rate.json"
        barrier = threading.Barrier(6)

        def worker() -> None:
            limiter = InvocationRateLimiter(RateLimitConfig(calls_per_hour=1000), state_file=state_file, clock=clock)
            barrier.wait()
            for _ in range(5):
                asyncio.run(limiter.acquire())

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(json.loads(state_file.read_text())["calls"]) == 30
        assert not (tmp_path / "rate.json.guard").exists()

    @pytest.mark.asyncio
    async def test_waits_for_busy_guard(self, tmp_path, clock):
        state_file = tmp_path / "rate.json"
        limiter = InvocationRateLimiter(RateLimitConfig(calls_per_hour=5), state_file=state_file, clock=clock)
        limiter.guard_file.write_text("")
        asyncio.get_running_loop().call_later(0.2, limiter.guard_file.unlink)

        started = time.monotonic()
        await limiter.acquire()

        assert time.monotonic() - started >= 0.15
        assert limiter.remaining() == 4

    @pytest.mark.asyncio
    async def test_abandoned_guard_is_removed(self, tmp_path, clock):
        state_file = tmp_path / "rate.json"
        limiter = InvocationRateLimiter(RateLimitConfig(calls_per_hour=5), state_file=state_file, clock=clock)
        limiter.guard_file.write_text("")
        old = time.time() - 60
        os.utime(limiter.guard_file, (old, old))

        await limiter.acquire()

        assert limiter.remaining() == 4
        assert not limiter.guard_file.exists()
