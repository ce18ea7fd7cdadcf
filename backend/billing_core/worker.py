import asyncio
import logging
import time
from typing import Any

from arq import cron
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from billing_core.core.config import settings
from billing_core.core.database import SessionLocal
from billing_core.repositories.payment_method_repository import PaymentMethodRepository
from billing_core.repositories.subscription_repository import SubscriptionRepository
from billing_core.schemas.subscription_lifecycle import LifecycleConfig
from billing_core.services.payment_provider import (
    ResilientPaymentProcessor,
    import_payment_processor,
)
from billing_core.services.resilience import (
    HealthCheckResult,
    aggregate_health_checks,
    create_health_check_result,
)
from billing_core.services.subscription_lifecycle import SubscriptionLifecycleService
from billing_core.services.webhook_service import WebhookEventSink
from billing_core.tasks import redis_settings

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Build the payment processor and event sink shared by every run.

    The circuit breaker and bulkhead state live on these objects, so they
    must outlive a single job.
    """
    process_payment = import_payment_processor(settings.PAYMENT_PROCESSOR)
    ctx["payment_processor"] = ResilientPaymentProcessor.from_settings(process_payment, settings)
    ctx["event_sink"] = WebhookEventSink.from_settings(settings)
    logger.info(
        "Lifecycle worker started (processor=%s, webhook=%s)",
        settings.PAYMENT_PROCESSOR,
        "on" if ctx["event_sink"] else "off",
    )


async def shutdown(ctx: dict[str, Any]) -> None:
    processor = ctx.get("payment_processor")
    if processor is not None:
        processor.close()


def _run_lifecycle(
    payment_processor: Any, event_sink: Any = None
) -> dict[str, dict[str, int]]:
    """Run one lifecycle batch on its own session and summarise the outcome."""
    db = SessionLocal()
    try:
        payment_method_repo = PaymentMethodRepository(db)
        config = LifecycleConfig(
            grace_period_days=settings.LIFECYCLE_GRACE_PERIOD_DAYS,
            retry_intervals=settings.LIFECYCLE_RETRY_INTERVALS,
            trial_conversion_days=settings.LIFECYCLE_TRIAL_CONVERSION_DAYS,
            unpaid_retention_days=settings.LIFECYCLE_UNPAID_RETENTION_DAYS,
            process_payment=payment_processor,
            get_default_payment_method=payment_method_repo.get_default_payment_method,
            on_event=event_sink,
        )
        service = SubscriptionLifecycleService(SubscriptionRepository(db), config)
        result = service.process_all()

        summary = {
            "renewals": result.renewals,
            "trial_conversions": result.trial_conversions,
            "retries": result.retries,
            "cancellations": result.cancellations,
        }
        return {
            name: {
                "processed": operation.processed,
                "succeeded": operation.succeeded,
                "failed": operation.failed,
            }
            for name, operation in summary.items()
        }
    finally:
        db.close()


async def process_subscription_lifecycle_task(ctx: dict[str, Any]) -> dict[str, dict[str, int]]:
    """Background task: run renewals, trial conversions, retries and cancellations.

    Runs hourly. Charges block on the payment provider, so the batch runs in
    a worker thread and the event loop stays free for the health check.
    Returns processed/succeeded/failed counts per operation.
    """
    return await asyncio.to_thread(
        _run_lifecycle, ctx["payment_processor"], ctx.get("event_sink")
    )


def _check_database() -> HealthCheckResult:
    started = time.monotonic()
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return create_health_check_result(
            "database",
            healthy=False,
            response_time_ms=int((time.monotonic() - started) * 1000),
            message=str(exc),
        )
    finally:
        db.close()
    return create_health_check_result(
        "database",
        healthy=True,
        response_time_ms=int((time.monotonic() - started) * 1000),
    )


async def check_lifecycle_health_task(ctx: dict[str, Any]) -> dict[str, Any]:
    """Background task: aggregate database, payment processor and webhook health.

    Runs every 5 minutes.
    """
    results = [_check_database()]
    processor = ctx.get("payment_processor")
    if processor is not None:
        results.append(processor.health_check())
    sink = ctx.get("event_sink")
    if sink is not None:
        results.append(sink.health_check())

    health = aggregate_health_checks(results)
    if not health.healthy:
        logger.warning("Lifecycle health %s: %s", health.status.value, health.message)
    return {
        "status": health.status.value,
        "healthy": health.healthy,
        "message": health.message,
        "services": health.details["services"],
    }


class WorkerSettings:
    functions = [
        process_subscription_lifecycle_task,
        check_lifecycle_health_task,
    ]
    cron_jobs = [
        cron(process_subscription_lifecycle_task, minute={0}),  # hourly
        cron(
            check_lifecycle_health_task,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
        ),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings
