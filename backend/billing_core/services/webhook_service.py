"""Lifecycle event sink delivering events to an HTTP webhook."""

import hashlib
import hmac
import json
import logging
from datetime import UTC, datetime

import httpx

from billing_core.core.config import Settings
from billing_core.schemas.subscription_lifecycle import LifecycleEvent
from billing_core.services.resilience import (
    CircuitBreakerConfig,
    CircuitState,
    HealthCheckResult,
    HealthStatus,
    RESILIENCE_PRESETS,
    circuit_allows_request,
    circuit_record_failure,
    circuit_record_success,
    circuit_to_half_open,
    create_circuit_breaker_state,
    create_health_check_result,
    get_circuit_stats,
)

logger = logging.getLogger(__name__)


def generate_hmac_signature(payload_bytes: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a webhook payload.

    Args:
        payload_bytes: The raw payload bytes to sign.
        secret: The secret key for HMAC generation.

    Returns:
        Hex-encoded HMAC-SHA256 signature.
    """
    return hmac.new(
        secret.encode("utf-8"),
        payload_bytes,
        hashlib.sha256,
    ).hexdigest()


class WebhookEventSink:
    """``on_event`` callback that POSTs each lifecycle event as signed JSON.

    Delivery is best effort: a failed or skipped delivery is logged and
    reported through the return value, never raised, so the lifecycle run
    carries on. A circuit breaker stops hammering an endpoint that is down.
    """

    def __init__(
        self,
        url: str,
        secret: str,
        timeout: float = 10.0,
        circuit_config: CircuitBreakerConfig | None = None,
    ):
        if not url:
            raise ValueError("A webhook URL is required")
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.circuit_config = circuit_config or RESILIENCE_PRESETS["webhook"].circuit_breaker
        self.circuit_state = create_circuit_breaker_state()
        self.last_response_time_ms = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebhookEventSink | None":
        """Build the sink when a lifecycle webhook URL is configured."""
        if not settings.lifecycle_webhook_url:
            return None
        return cls(
            settings.lifecycle_webhook_url,
            settings.webhook_secret,
            timeout=settings.webhook_timeout_seconds,
        )

    def __call__(self, event: LifecycleEvent) -> bool:
        return self.deliver(event)

    def deliver(self, event: LifecycleEvent) -> bool:
        """POST one event to the endpoint.

        Returns:
            True if the endpoint answered 2xx, False otherwise.
        """
        now = datetime.now(UTC)
        if not circuit_allows_request(self.circuit_state, self.circuit_config, now):
            logger.warning(
                "Webhook circuit open, dropping %s for subscription %s",
                event.type.value,
                event.subscription_id,
            )
            return False
        if self.circuit_state.state == CircuitState.OPEN:
            self.circuit_state = circuit_to_half_open(self.circuit_state, now)

        payload_bytes = json.dumps(event.model_dump(mode="json"), default=str).encode("utf-8")
        signature = generate_hmac_signature(payload_bytes, self.secret)
        headers = {
            "Content-Type": "application/json",
            "X-Billing-Signature": signature,
            "X-Billing-Signature-Algorithm": "hmac",
            "X-Billing-Event-Type": event.type.value,
        }

        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.url, content=payload_bytes, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "Webhook delivery failed for %s on subscription %s: %s",
                event.type.value,
                event.subscription_id,
                exc,
            )
            self._record(False, now)
            return False

        if 200 <= resp.status_code < 300:
            self._record(True, now)
            return True

        logger.warning(
            "Webhook endpoint returned %d for %s on subscription %s",
            resp.status_code,
            event.type.value,
            event.subscription_id,
        )
        # Only server-side errors say anything about endpoint health
        self._record(resp.status_code < 500, now)
        return False

    def health_check(self) -> HealthCheckResult:
        stats = get_circuit_stats(self.circuit_state)
        if stats.state == CircuitState.OPEN:
            status = HealthStatus.DOWN
        elif stats.state == CircuitState.HALF_OPEN:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UP
        return create_health_check_result(
            "webhook",
            healthy=stats.state == CircuitState.CLOSED,
            response_time_ms=self.last_response_time_ms,
            status=status,
            message=f"Circuit {stats.state.value}",
            details={"url": self.url, "failure_rate": stats.failure_rate},
        )

    def _record(self, success: bool, started: datetime) -> None:
        elapsed = datetime.now(UTC) - started
        self.last_response_time_ms = int(elapsed.total_seconds() * 1000)
        if success:
            self.circuit_state = circuit_record_success(self.circuit_state, self.circuit_config)
        else:
            self.circuit_state = circuit_record_failure(self.circuit_state, self.circuit_config)
