"""Resilience primitives for calls to external payment providers.

Circuit breaker, retry with exponential backoff, bulkhead admission,
deadlines and health aggregation. Every state is a frozen dataclass and
every transition returns a new snapshot; callers keep the latest one.
Rejections are reported as values, never raised.
"""

import random
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")


def _now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(UTC)


def _elapsed_ms(start: datetime, now: datetime) -> int:
    return int((now - start) / timedelta(milliseconds=1))


# ── Circuit breaker ─────────────────────────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 3
    reset_timeout_ms: int = 30000
    name: str | None = None


@dataclass(frozen=True)
class CircuitBreakerState:
    state: CircuitState
    failures: int
    successes: int
    last_failure_time: datetime | None
    last_state_change: datetime
    # Lifetime counters, never reset
    total_requests: int = 0
    total_failures: int = 0
    total_successes: int = 0


@dataclass(frozen=True)
class CircuitStats:
    state: CircuitState
    failure_rate: float  # percent
    request_count: int
    uptime_ms: int


def create_circuit_breaker_state(now: datetime | None = None) -> CircuitBreakerState:
    return CircuitBreakerState(
        state=CircuitState.CLOSED,
        failures=0,
        successes=0,
        last_failure_time=None,
        last_state_change=_now(now),
    )


def circuit_allows_request(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig,
    now: datetime | None = None,
) -> bool:
    """Check whether the circuit lets a request through.

    An open circuit allows a request again once ``reset_timeout_ms`` has
    elapsed since the last failure; the caller should then move it to
    half-open with ``circuit_to_half_open``.
    """
    if state.state == CircuitState.CLOSED:
        return True
    if state.state == CircuitState.HALF_OPEN:
        return True
    if state.last_failure_time is None:
        return False
    return _elapsed_ms(state.last_failure_time, _now(now)) >= config.reset_timeout_ms


def circuit_record_success(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig,
    now: datetime | None = None,
) -> CircuitBreakerState:
    updated = replace(
        state,
        total_requests=state.total_requests + 1,
        total_successes=state.total_successes + 1,
    )

    if state.state == CircuitState.CLOSED:
        return replace(updated, failures=0, successes=state.successes + 1)

    if state.state == CircuitState.HALF_OPEN:
        successes = state.successes + 1
        if successes >= config.success_threshold:
            return replace(
                updated,
                state=CircuitState.CLOSED,
                failures=0,
                successes=0,
                last_state_change=_now(now),
            )
        return replace(updated, successes=successes)

    return updated


def circuit_record_failure(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig,
    now: datetime | None = None,
) -> CircuitBreakerState:
    current = _now(now)
    updated = replace(
        state,
        total_requests=state.total_requests + 1,
        total_failures=state.total_failures + 1,
        last_failure_time=current,
    )

    if state.state == CircuitState.CLOSED:
        failures = state.failures + 1
        if failures >= config.failure_threshold:
            return replace(
                updated,
                state=CircuitState.OPEN,
                failures=failures,
                successes=0,
                last_state_change=current,
            )
        return replace(updated, failures=failures)

    if state.state == CircuitState.HALF_OPEN:
        # A failed probe reopens the circuit
        return replace(
            updated,
            state=CircuitState.OPEN,
            failures=1,
            successes=0,
            last_state_change=current,
        )

    return replace(updated, failures=state.failures + 1)


def circuit_to_half_open(
    state: CircuitBreakerState, now: datetime | None = None
) -> CircuitBreakerState:
    if state.state != CircuitState.OPEN:
        return state
    return replace(
        state,
        state=CircuitState.HALF_OPEN,
        failures=0,
        successes=0,
        last_state_change=_now(now),
    )


def get_circuit_stats(state: CircuitBreakerState, now: datetime | None = None) -> CircuitStats:
    failure_rate = 0.0
    if state.total_requests > 0:
        failure_rate = state.total_failures / state.total_requests * 100
    return CircuitStats(
        state=state.state,
        failure_rate=round(failure_rate, 2),
        request_count=state.total_requests,
        uptime_ms=_elapsed_ms(state.last_state_change, _now(now)),
    )


# ── Retry with backoff ──────────────────────────────────────────────


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    # Substrings of retryable error codes; empty retries everything
    retryable_errors: tuple[str, ...] = ("TIMEOUT", "CONNECTION_ERROR", "SERVICE_UNAVAILABLE")


@dataclass(frozen=True)
class RetryState:
    attempt: int
    max_attempts: int
    next_retry_delay_ms: int
    last_error: str | None
    start_time: datetime
    exhausted: bool


def create_retry_state(config: RetryConfig, now: datetime | None = None) -> RetryState:
    return RetryState(
        attempt=0,
        max_attempts=config.max_retries + 1,
        next_retry_delay_ms=config.initial_delay_ms,
        last_error=None,
        start_time=_now(now),
        exhausted=False,
    )


def calculate_next_delay(attempt: int, config: RetryConfig) -> int:
    """Exponential backoff capped at ``max_delay_ms``, with multiplicative jitter.

    Args:
        attempt: Zero-based attempt number.
        config: Retry configuration.

    Returns:
        Delay in milliseconds.
    """
    delay = min(config.initial_delay_ms * config.backoff_multiplier**attempt, config.max_delay_ms)
    jitter = delay * config.jitter_factor * random.uniform(-1, 1)
    return round(delay + jitter)


def advance_retry_state(state: RetryState, config: RetryConfig, error: str) -> RetryState:
    """Record a failed attempt and compute the delay before the next one."""
    attempt = state.attempt + 1
    exhausted = attempt >= state.max_attempts
    return replace(
        state,
        attempt=attempt,
        next_retry_delay_ms=0 if exhausted else calculate_next_delay(attempt, config),
        last_error=error,
        exhausted=exhausted,
    )


def is_retryable_error(error: str, config: RetryConfig) -> bool:
    if not config.retryable_errors:
        return True
    return any(code in error for code in config.retryable_errors)


def should_retry(state: RetryState, error: str, config: RetryConfig) -> bool:
    if state.exhausted:
        return False
    return is_retryable_error(error, config)


def get_next_retry_time(state: RetryState, now: datetime | None = None) -> datetime:
    return _now(now) + timedelta(milliseconds=state.next_retry_delay_ms)


# ── Bulkhead ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BulkheadConfig:
    max_concurrent: int = 10
    max_queue_size: int = 100
    queue_timeout_ms: int = 10000


@dataclass(frozen=True)
class BulkheadState:
    executing: int = 0
    queued: int = 0
    rejected: int = 0
    completed: int = 0


@dataclass(frozen=True)
class BulkheadDecision:
    can_accept: bool
    will_queue: bool
    reason: str | None = None


def create_bulkhead_state() -> BulkheadState:
    return BulkheadState()


def bulkhead_can_accept(state: BulkheadState, config: BulkheadConfig) -> BulkheadDecision:
    if state.executing < config.max_concurrent:
        return BulkheadDecision(can_accept=True, will_queue=False)
    if state.queued < config.max_queue_size:
        return BulkheadDecision(can_accept=True, will_queue=True)
    return BulkheadDecision(can_accept=False, will_queue=False, reason="Bulkhead at capacity")


def bulkhead_start_execution(state: BulkheadState, from_queue: bool = False) -> BulkheadState:
    return replace(
        state,
        executing=state.executing + 1,
        queued=state.queued - 1 if from_queue else state.queued,
    )


def bulkhead_complete_execution(state: BulkheadState) -> BulkheadState:
    return replace(state, executing=max(0, state.executing - 1), completed=state.completed + 1)


def bulkhead_add_to_queue(state: BulkheadState) -> BulkheadState:
    return replace(state, queued=state.queued + 1)


def bulkhead_reject(state: BulkheadState) -> BulkheadState:
    return replace(state, rejected=state.rejected + 1)


# ── Timeouts and deadlines ──────────────────────────────────────────


@dataclass(frozen=True)
class TimeoutConfig:
    timeout_ms: int = 30000
    message: str = "Operation timed out"


def deadline_passed(start: datetime, timeout_ms: int, now: datetime | None = None) -> bool:
    return _elapsed_ms(start, _now(now)) >= timeout_ms


def get_remaining_time(start: datetime, timeout_ms: int, now: datetime | None = None) -> int:
    """Milliseconds left before the deadline, never negative."""
    return max(0, timeout_ms - _elapsed_ms(start, _now(now)))


def create_deadline(timeout_ms: int, start: datetime | None = None) -> datetime:
    return _now(start) + timedelta(milliseconds=timeout_ms)


# ── Health checks ───────────────────────────────────────────────────


class HealthStatus(str, Enum):
    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass(frozen=True)
class HealthCheckResult:
    name: str
    healthy: bool
    status: HealthStatus
    response_time_ms: int
    last_checked: datetime
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def create_health_check_result(
    name: str,
    healthy: bool,
    response_time_ms: int,
    status: HealthStatus | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> HealthCheckResult:
    return HealthCheckResult(
        name=name,
        healthy=healthy,
        status=status or (HealthStatus.UP if healthy else HealthStatus.DOWN),
        response_time_ms=response_time_ms,
        last_checked=_now(now),
        message=message,
        details=details or {},
    )


def aggregate_health_checks(
    results: list[HealthCheckResult], now: datetime | None = None
) -> HealthCheckResult:
    """Combine component health checks into one result.

    Up when every component is healthy, degraded when only some are, down
    when none are. Unhealthy component names are listed in the message.
    """
    unhealthy = [r.name for r in results if not r.healthy]
    healthy_count = len(results) - len(unhealthy)

    if not unhealthy:
        status = HealthStatus.UP
    elif healthy_count > 0:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.DOWN

    avg_response = sum(r.response_time_ms for r in results) / len(results) if results else 0

    return HealthCheckResult(
        name="aggregate",
        healthy=not unhealthy,
        status=status,
        response_time_ms=round(avg_response),
        last_checked=_now(now),
        message="All services healthy" if not unhealthy else f"Unhealthy: {', '.join(unhealthy)}",
        details={
            "total": len(results),
            "healthy": healthy_count,
            "unhealthy": len(unhealthy),
            "services": [{"name": r.name, "status": r.status.value} for r in results],
        },
    )


# ── Fallback ────────────────────────────────────────────────────────


def with_fallback(
    success: bool,
    value: T | None = None,
    fallback_value: T | None = None,
    fallback_fn: Callable[[], T] | None = None,
) -> T | None:
    """Return ``value`` on success, otherwise the fallback.

    ``fallback_fn`` wins over ``fallback_value`` when both are given.
    """
    if success and value is not None:
        return value
    if fallback_fn is not None:
        return fallback_fn()
    return fallback_value


# ── Presets ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ResiliencePreset:
    circuit_breaker: CircuitBreakerConfig
    retry: RetryConfig
    timeout: TimeoutConfig


RESILIENCE_PRESETS: dict[str, ResiliencePreset] = {
    "payment": ResiliencePreset(
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=3, success_threshold=2, reset_timeout_ms=60000
        ),
        retry=RetryConfig(max_retries=3, initial_delay_ms=2000, max_delay_ms=30000),
        timeout=TimeoutConfig(timeout_ms=30000),
    ),
    "webhook": ResiliencePreset(
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=10, success_threshold=5, reset_timeout_ms=30000
        ),
        retry=RetryConfig(max_retries=5, initial_delay_ms=1000, max_delay_ms=60000),
        timeout=TimeoutConfig(timeout_ms=10000),
    ),
    "database": ResiliencePreset(
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=5, success_threshold=3, reset_timeout_ms=10000
        ),
        retry=RetryConfig(max_retries=2, initial_delay_ms=100, max_delay_ms=1000),
        timeout=TimeoutConfig(timeout_ms=5000),
    ),
}
