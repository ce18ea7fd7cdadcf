"""Payment processing collaborator guarded by the resilience primitives.

The lifecycle service treats ``process_payment`` as an already bounded
call. ``ResilientPaymentProcessor`` is how a deployment bounds it: circuit
breaker per provider, bulkhead on concurrent charges, an overall deadline
and backoff retries of transport errors.
"""

import importlib
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, replace
from datetime import UTC, datetime
from typing import Any

import httpx

from billing_core.core.config import Settings
from billing_core.schemas.subscription_lifecycle import ProcessPaymentInput, ProcessPaymentResult
from billing_core.services.resilience import (
    BulkheadConfig,
    CircuitBreakerConfig,
    CircuitState,
    HealthCheckResult,
    HealthStatus,
    RESILIENCE_PRESETS,
    RetryConfig,
    TimeoutConfig,
    advance_retry_state,
    bulkhead_add_to_queue,
    bulkhead_can_accept,
    bulkhead_complete_execution,
    bulkhead_reject,
    bulkhead_start_execution,
    circuit_allows_request,
    circuit_record_failure,
    circuit_record_success,
    circuit_to_half_open,
    create_bulkhead_state,
    create_circuit_breaker_state,
    create_health_check_result,
    create_retry_state,
    get_circuit_stats,
    get_remaining_time,
    should_retry,
)

logger = logging.getLogger(__name__)

ProcessPayment = Callable[[ProcessPaymentInput], Any]


class PaymentProcessorUnavailable(Exception):
    """No charge was attempted: the circuit is open or the bulkhead is full."""


class PaymentTimeout(Exception):
    """The charge did not finish in time. It may still have gone through."""


def classify_payment_error(exc: BaseException) -> str:
    """Prefix an exception message with the retry error code it maps to."""
    if isinstance(exc, (PaymentTimeout, httpx.TimeoutException, TimeoutError)):
        return f"TIMEOUT: {exc}"
    if isinstance(exc, (httpx.NetworkError, ConnectionError)):
        return f"CONNECTION_ERROR: {exc}"
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code in (502, 503, 504):
        return f"SERVICE_UNAVAILABLE: {exc}"
    return f"{type(exc).__name__}: {exc}"


def import_payment_processor(path: str) -> ProcessPayment:
    """Load a ``module:attribute`` (or ``module.attribute``) callable."""
    if not path:
        raise ValueError("PAYMENT_PROCESSOR is not configured")
    module_name, sep, attribute = path.partition(":")
    if not sep:
        module_name, _, attribute = path.rpartition(".")
    if not module_name or not attribute:
        raise ValueError(f"Invalid payment processor path: {path}")
    module = importlib.import_module(module_name)
    processor = getattr(module, attribute)
    if not callable(processor):
        raise ValueError(f"Payment processor {path} is not callable")
    return processor  # type: ignore[no-any-return]


class ResilientPaymentProcessor:
    """Callable drop-in for ``LifecycleConfig.process_payment``.

    Declines (``success=False``) pass straight through and count as a
    healthy provider response. Raised errors count against the circuit and
    are retried with backoff while the retry policy and the deadline allow.
    """

    def __init__(
        self,
        process_payment: ProcessPayment,
        name: str = "payment",
        circuit_config: CircuitBreakerConfig | None = None,
        retry_config: RetryConfig | None = None,
        timeout_config: TimeoutConfig | None = None,
        bulkhead_config: BulkheadConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.process_payment = process_payment
        self.name = name
        preset = RESILIENCE_PRESETS["payment"]
        self.circuit_config = circuit_config or replace(preset.circuit_breaker, name=name)
        self.retry_config = retry_config or preset.retry
        self.timeout_config = timeout_config or preset.timeout
        self.bulkhead_config = bulkhead_config or BulkheadConfig()
        self.circuit_state = create_circuit_breaker_state()
        self.bulkhead_state = create_bulkhead_state()
        self.last_response_time_ms = 0
        self._sleep = sleep
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=self.bulkhead_config.max_concurrent,
            thread_name_prefix=f"{name}-charge",
        )

    @classmethod
    def from_settings(
        cls, process_payment: ProcessPayment, settings: Settings, name: str = "payment"
    ) -> "ResilientPaymentProcessor":
        return cls(
            process_payment,
            name=name,
            circuit_config=CircuitBreakerConfig(
                failure_threshold=settings.PAYMENT_CIRCUIT_FAILURE_THRESHOLD,
                success_threshold=settings.PAYMENT_CIRCUIT_SUCCESS_THRESHOLD,
                reset_timeout_ms=settings.PAYMENT_CIRCUIT_RESET_TIMEOUT_MS,
                name=name,
            ),
            retry_config=RetryConfig(
                max_retries=settings.PAYMENT_MAX_RETRIES,
                initial_delay_ms=settings.PAYMENT_RETRY_INITIAL_DELAY_MS,
                max_delay_ms=settings.PAYMENT_RETRY_MAX_DELAY_MS,
            ),
            timeout_config=TimeoutConfig(timeout_ms=settings.PAYMENT_TIMEOUT_MS),
            bulkhead_config=BulkheadConfig(
                max_concurrent=settings.PAYMENT_MAX_CONCURRENT,
                max_queue_size=settings.PAYMENT_MAX_QUEUE_SIZE,
            ),
        )

    def __call__(self, payment_input: ProcessPaymentInput) -> ProcessPaymentResult:
        started = datetime.now(UTC)
        timeout_ms = self.timeout_config.timeout_ms
        retry_state = create_retry_state(self.retry_config, started)
        last_error: Exception | None = None

        while True:
            remaining_ms = get_remaining_time(started, timeout_ms)
            if remaining_ms <= 0:
                raise PaymentTimeout(f"{self.timeout_config.message} after {timeout_ms} ms")
            try:
                return self._attempt(payment_input, remaining_ms)
            except PaymentProcessorUnavailable:
                # An earlier attempt may have reached the provider
                if last_error is not None:
                    raise last_error from None
                raise
            except Exception as exc:
                last_error = exc
                error = classify_payment_error(exc)
                retry_state = advance_retry_state(retry_state, self.retry_config, error)
                if not should_retry(retry_state, error, self.retry_config):
                    raise
                delay_ms = retry_state.next_retry_delay_ms
                if delay_ms >= get_remaining_time(started, timeout_ms):
                    raise
                logger.warning(
                    "Charge attempt %d for subscription %s failed (%s), retrying in %d ms",
                    retry_state.attempt,
                    payment_input.metadata.subscription_id,
                    error,
                    delay_ms,
                )
                self._sleep(delay_ms / 1000)

    def health_check(self) -> HealthCheckResult:
        with self._lock:
            circuit_state = self.circuit_state
            bulkhead_state = self.bulkhead_state
        stats = get_circuit_stats(circuit_state)
        status = {
            CircuitState.CLOSED: HealthStatus.UP,
            CircuitState.HALF_OPEN: HealthStatus.DEGRADED,
            CircuitState.OPEN: HealthStatus.DOWN,
        }[stats.state]
        return create_health_check_result(
            self.name,
            healthy=stats.state == CircuitState.CLOSED,
            response_time_ms=self.last_response_time_ms,
            status=status,
            message=f"Circuit {stats.state.value}",
            details={
                "failure_rate": stats.failure_rate,
                "request_count": stats.request_count,
                "bulkhead": asdict(bulkhead_state),
            },
        )

    def close(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _attempt(self, payment_input: ProcessPaymentInput, timeout_ms: int) -> ProcessPaymentResult:
        with self._lock:
            now = datetime.now(UTC)
            if not circuit_allows_request(self.circuit_state, self.circuit_config, now):
                raise PaymentProcessorUnavailable(f"Circuit '{self.name}' is open")
            if self.circuit_state.state == CircuitState.OPEN:
                self.circuit_state = circuit_to_half_open(self.circuit_state, now)
                logger.info("Circuit %s half-open, probing provider", self.name)

            decision = bulkhead_can_accept(self.bulkhead_state, self.bulkhead_config)
            if not decision.can_accept:
                self.bulkhead_state = bulkhead_reject(self.bulkhead_state)
                raise PaymentProcessorUnavailable(decision.reason or "Bulkhead at capacity")
            if decision.will_queue:
                self.bulkhead_state = bulkhead_add_to_queue(self.bulkhead_state)
            else:
                self.bulkhead_state = bulkhead_start_execution(self.bulkhead_state)

        started = time.monotonic()
        running = threading.Event()
        future = self._executor.submit(self._execute, payment_input, decision.will_queue, running)
        queue_timeout_ms = self.bulkhead_config.queue_timeout_ms
        if decision.will_queue and queue_timeout_ms < timeout_ms:
            if not running.wait(queue_timeout_ms / 1000) and self._withdraw(future, queued=True):
                with self._lock:
                    self.bulkhead_state = bulkhead_reject(self.bulkhead_state)
                raise PaymentProcessorUnavailable(
                    f"Charge waited more than {queue_timeout_ms} ms in the bulkhead queue"
                )

        remaining_s = max(0.0, timeout_ms / 1000 - (time.monotonic() - started))
        try:
            raw = future.result(timeout=remaining_s)
        except TimeoutError:
            if self._withdraw(future, queued=decision.will_queue):
                logger.warning(
                    "Charge for subscription %s timed out before leaving the queue",
                    payment_input.metadata.subscription_id,
                )
            self._record_failure(started)
            raise PaymentTimeout(
                f"{self.timeout_config.message} after {timeout_ms} ms"
            ) from None
        except Exception:
            self._record_failure(started)
            raise

        result = ProcessPaymentResult.model_validate(raw)
        with self._lock:
            self.circuit_state = circuit_record_success(self.circuit_state, self.circuit_config)
            self.last_response_time_ms = int((time.monotonic() - started) * 1000)
        return result

    def _withdraw(self, future: Future, queued: bool) -> bool:
        """Cancel a charge that never reached the provider and free its slot."""
        if not future.cancel():
            return False
        with self._lock:
            if queued:
                self.bulkhead_state = replace(
                    self.bulkhead_state, queued=max(0, self.bulkhead_state.queued - 1)
                )
            else:
                self.bulkhead_state = replace(
                    self.bulkhead_state, executing=max(0, self.bulkhead_state.executing - 1)
                )
        return True

    def _execute(
        self, payment_input: ProcessPaymentInput, queued: bool, running: threading.Event
    ) -> Any:
        running.set()
        if queued:
            with self._lock:
                self.bulkhead_state = bulkhead_start_execution(self.bulkhead_state, from_queue=True)
        try:
            return self.process_payment(payment_input)
        finally:
            with self._lock:
                self.bulkhead_state = bulkhead_complete_execution(self.bulkhead_state)

    def _record_failure(self, started: float) -> None:
        with self._lock:
            previous = self.circuit_state.state
            self.circuit_state = circuit_record_failure(self.circuit_state, self.circuit_config)
            self.last_response_time_ms = int((time.monotonic() - started) * 1000)
            if previous != CircuitState.OPEN and self.circuit_state.state == CircuitState.OPEN:
                logger.warning(
                    "Circuit %s opened after %d failures",
                    self.name,
                    self.circuit_state.failures,
                )
