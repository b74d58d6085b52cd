"""
Webhook Processing Service - the asynchronous half of ingestion.

Runs inside the Celery worker: claims a stored event, normalizes it, applies
the config's filters and records the outcome metric. A failure marks the
event failed and raises EventProcessingError so the task can retry it.

Each event books exactly one outcome (processed, ignored or failed) in the
delivery metrics. Retried failures only count as retry attempts.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import EventProcessingError
from app.core.logging import get_logger
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.metrics_service import DeliveryMetricsRecorder
from app.domain.services.webhook_config_service import WebhookConfigService
from app.domain.services.webhook_event_service import WebhookEventService
from app.domain.webhooks.extractors import should_ignore
from app.domain.webhooks.normalizers import NormalizedEvent, get_normalizer
from app.state_machine.states import WebhookEventStatus

logger = get_logger(__name__)

CLAIMABLE_STATUSES = (WebhookEventStatus.PENDING, WebhookEventStatus.FAILED)


@dataclass(frozen=True)
class ProcessingResult:
    event_id: int
    status: WebhookEventStatus
    normalized: NormalizedEvent | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "status": self.status.value,
            "event_type": self.normalized.event_type if self.normalized else None,
            "reason": self.reason,
        }


class WebhookProcessingService:
    """Processes one stored webhook event end to end"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = WebhookEventService(db)
        self.configs = WebhookConfigService(db)
        self.metrics = DeliveryMetricsRecorder(db)

    async def process(self, event_id: int) -> ProcessingResult | None:
        """
        Process a pending or failed event.

        Returns None when the event is gone or already claimed elsewhere.

        Raises:
            EventProcessingError: processing failed, the event is now `failed`
        """
        event = await self.events.get_event(event_id, for_update=True)
        if event is None:
            logger.warning("Webhook event not found", extra_data={"event_id": event_id})
            return None

        if WebhookEventStatus(event.status) not in CLAIMABLE_STATUSES:
            logger.info(
                "Webhook event already handled, skipping",
                extra_data={"event_id": event_id, "status": WebhookEventStatus(event.status).value}
            )
            return None

        # Exhausted events booked their failed outcome already
        outcome_booked = event.status == WebhookEventStatus.FAILED and not event.can_retry()
        await self.events.mark_processing(event)
        await self.db.commit()

        started = time.monotonic()
        try:
            result = await self._run(event, started, outcome_booked)
        except Exception as e:
            await self.db.rollback()
            retry_count = await self._fail(event_id, str(e), started, outcome_booked)
            raise EventProcessingError(event_id, str(e), retry_count) from e

        await self.db.commit()
        return result

    async def _run(self, event: WebhookEvent, started: float, outcome_booked: bool) -> ProcessingResult:
        config = await self.configs.get(event.webhook_config_id)
        if config is None:
            raise LookupError(f"webhook config {event.webhook_config_id} no longer exists")

        normalized = get_normalizer(event.platform).normalize(event)
        reason = None if config.is_active else "config inactive"
        reason = reason or should_ignore(config, event.event_type, event.payload)

        if reason:
            await self.events.mark_ignored(event, reason)
            status = WebhookEventStatus.IGNORED
        else:
            await self.events.mark_processed(event)
            status = WebhookEventStatus.PROCESSED

        if not outcome_booked:
            await self.metrics.record_outcome(config, event.event_type, status, (time.monotonic() - started) * 1000)

        logger.info(
            "Webhook event processed",
            extra_data={
                "event_id": event.id,
                "platform": normalized.platform,
                "event_type": normalized.event_type,
                "object_type": normalized.object_type,
                "object_id": normalized.object_id,
                "status": status.value,
                "reason": reason,
            }
        )
        return ProcessingResult(event.id, status, normalized, reason)

    async def _fail(self, event_id: int, error: str, started: float, outcome_booked: bool) -> int:
        """
        Mark the event failed. Returns its retry count.

        Only the attempt that exhausts the retries books the `failed` outcome,
        earlier attempts count as retry_attempts.
        """
        event = await self.events.get_event(event_id, for_update=True)
        await self.events.mark_failed(event, error)

        config = await self.configs.get(event.webhook_config_id)
        if config is not None and (event.can_retry() or outcome_booked):
            await self.metrics.record_retry(config)
        elif config is not None:
            await self.metrics.record_outcome(
                config,
                event.event_type,
                WebhookEventStatus.FAILED,
                (time.monotonic() - started) * 1000,
            )
        await self.db.commit()

        logger.log_at(
            logging.WARNING if event.can_retry() else logging.ERROR,
            "Webhook event processing failed",
            extra_data={
                "event_id": event_id,
                "platform": event.platform.value,
                "retry_count": event.retry_count,
                "retries_exhausted": not event.can_retry(),
                "error": error,
            }
        )
        return event.retry_count
