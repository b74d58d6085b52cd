"""
Celery Tasks for Async Webhook Processing

The ingestion pipeline stores each accepted delivery as a pending
WebhookEvent and enqueues process_webhook_event. Everything after the
acknowledgement (normalisation, filtering, outcome metrics, retries) runs here.
"""
import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.core.config import settings
from app.core.exceptions import EventProcessingError
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop, drop it before the loop closes
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def backoff_for(retry_count: int) -> int:
    """Countdown before retry number `retry_count` (1-based). The last step repeats."""
    schedule = settings.retry_backoff_schedule
    index = min(max(retry_count, 1), len(schedule)) - 1
    return schedule[index]


def enqueue_webhook_event(event_id: int) -> None:
    """Queue a committed event for processing"""
    process_webhook_event.apply_async(
        args=[event_id],
        countdown=settings.WEBHOOK_PROCESSING_DELAY_SECONDS,
        queue=settings.WEBHOOK_QUEUE_NAME,
    )


async def enqueue_webhook_event_async(event_id: int) -> None:
    """enqueue_webhook_event for request handlers, the broker publish runs in a worker thread"""
    await asyncio.to_thread(enqueue_webhook_event, event_id)


@celery_app.task(
    bind=True,
    name="app.workers.tasks.process_webhook_event",
    max_retries=settings.WEBHOOK_MAX_RETRIES,
)
def process_webhook_event(self, event_id: int) -> dict:
    """
    Normalise one stored event and record its outcome.

    A failure leaves the event `failed` and schedules a retry on the staged
    backoff until WEBHOOK_MAX_RETRIES is reached.
    """
    from app.domain.services.webhook_processing_service import WebhookProcessingService

    async def _process():
        async with get_task_session() as db:
            return await WebhookProcessingService(db).process(event_id)

    try:
        result = run_async(_process())
    except EventProcessingError as e:
        if e.retry_count >= settings.WEBHOOK_MAX_RETRIES:
            logger.error(
                "Webhook event retries exhausted",
                extra_data={"event_id": event_id, "retry_count": e.retry_count},
            )
            return {"event_id": event_id, "status": "failed", "retry_count": e.retry_count}

        countdown = backoff_for(e.retry_count)
        logger.info(
            "Scheduling webhook event retry",
            extra_data={"event_id": event_id, "retry_count": e.retry_count, "countdown": countdown},
        )
        raise self.retry(exc=e, countdown=countdown)

    if result is None:
        return {"event_id": event_id, "status": "skipped"}
    return result.to_dict()


@celery_app.task(name="app.workers.tasks.retry_failed_webhook_events")
def retry_failed_webhook_events(limit: int = 100) -> dict:
    """Requeue failed events that still have retries left"""
    from app.domain.services.webhook_event_service import WebhookEventService

    async def _requeue():
        async with get_task_session() as db:
            return await WebhookEventService(db).requeue_failed(limit)

    event_ids = run_async(_requeue())
    for event_id in event_ids:
        enqueue_webhook_event(event_id)
    return {"requeued": len(event_ids)}


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int | None = None) -> dict:
    """Retention cleanup of processed and ignored events"""
    from app.domain.services.webhook_event_service import WebhookEventService

    retention_days = days or settings.WEBHOOK_EVENT_RETENTION_DAYS

    async def _cleanup():
        async with get_task_session() as db:
            return await WebhookEventService(db).cleanup_old_events(retention_days)

    return {"deleted": run_async(_cleanup()), "retention_days": retention_days}


@celery_app.task(name="app.workers.tasks.cleanup_webhook_security_data")
def cleanup_webhook_security_data() -> dict:
    """Put a TTL on security keys that were left without one"""
    from app.core.redis_client import get_redis
    from app.domain.webhooks.security_gate import SecurityGate, SecurityPolicy

    async def _cleanup():
        redis = await get_redis()
        return await SecurityGate(redis, SecurityPolicy.from_settings()).expire_orphaned_keys()

    return {"keys_expired": run_async(_cleanup())}
