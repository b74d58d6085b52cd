"""
Webhook Event Service - the event store.

Creates events at ingestion and moves them through the status machine in
app.state_machine.states. Every status change goes through transition(),
which rejects moves the machine does not allow.
"""
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidStateTransitionError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.webhook_config import WebhookConfig
from app.db.models.webhook_event import MAX_EVENT_RETRIES, WebhookEvent
from app.domain.webhooks.extractors import EventEnvelope
from app.state_machine.states import WebhookEventStatus, is_valid_status_transition

logger = get_logger(__name__)

# Failed events untouched for this long are picked up by the requeue beat
REQUEUE_IDLE_MINUTES = 5
# Statuses the retention cleanup may delete
FINISHED_STATUSES = (WebhookEventStatus.PROCESSED, WebhookEventStatus.IGNORED)


class WebhookEventService:
    """Persistence and status transitions for WebhookEvent"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_event(
        self,
        config: WebhookConfig,
        envelope: EventEnvelope,
        payload: Any,
        signature: str | None = None,
    ) -> WebhookEvent:
        """New pending event. Flush only, the ingestion pipeline commits."""
        event = WebhookEvent(
            webhook_config_id=config.id,
            social_account_id=config.social_account_id,
            platform=config.platform,
            event_type=envelope.event_type,
            object_type=envelope.object_type,
            object_id=envelope.object_id,
            event_id=envelope.event_id,
            payload=payload,
            signature=signature,
            status=WebhookEventStatus.PENDING,
            retry_count=0,
            received_at=utcnow(),
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def get_event(self, event_id: int, for_update: bool = False) -> WebhookEvent | None:
        query = select(WebhookEvent).where(WebhookEvent.id == event_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    # ==================== Transitions ====================

    async def transition(
        self,
        event: WebhookEvent,
        status: WebhookEventStatus,
        error_message: str | None = None,
    ) -> WebhookEvent:
        """
        Move an event to `status`. Flush only.

        Raises:
            InvalidStateTransitionError: the status machine forbids the move
        """
        current = WebhookEventStatus(event.status)
        if not is_valid_status_transition(current.value, WebhookEventStatus(status).value):
            raise InvalidStateTransitionError(current.value, WebhookEventStatus(status).value, event.id)

        event.status = status
        if status == WebhookEventStatus.PROCESSED:
            event.processed_at = utcnow()
            event.error_message = None
        elif status == WebhookEventStatus.IGNORED:
            event.processed_at = utcnow()
            event.error_message = error_message
        elif status == WebhookEventStatus.FAILED:
            event.error_message = error_message
            event.retry_count = (event.retry_count or 0) + 1
        await self.db.flush()

        logger.debug(
            "Webhook event transitioned",
            extra_data={"event_id": event.id, "from": current.value, "to": WebhookEventStatus(status).value}
        )
        return event

    async def mark_processing(self, event: WebhookEvent) -> WebhookEvent:
        return await self.transition(event, WebhookEventStatus.PROCESSING)

    async def mark_processed(self, event: WebhookEvent) -> WebhookEvent:
        return await self.transition(event, WebhookEventStatus.PROCESSED)

    async def mark_failed(self, event: WebhookEvent, error_message: str) -> WebhookEvent:
        return await self.transition(event, WebhookEventStatus.FAILED, error_message)

    async def mark_ignored(self, event: WebhookEvent, reason: str) -> WebhookEvent:
        return await self.transition(event, WebhookEventStatus.IGNORED, reason)

    # ==================== Maintenance ====================

    async def requeue_failed(self, limit: int = 100) -> list[int]:
        """
        Failed events with retries left, idle for REQUEUE_IDLE_MINUTES, back to pending.

        Commits. Returns the ids to enqueue.
        """
        cutoff = utcnow() - timedelta(minutes=REQUEUE_IDLE_MINUTES)
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED,
                WebhookEvent.retry_count < MAX_EVENT_RETRIES,
                WebhookEvent.updated_at <= cutoff,
            )
            .order_by(WebhookEvent.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        events = result.scalars().all()

        for event in events:
            await self.transition(event, WebhookEventStatus.PENDING)
        await self.db.commit()

        if events:
            logger.info("Failed webhook events requeued", extra_data={"count": len(events)})
        return [event.id for event in events]

    async def cleanup_old_events(self, days: int) -> int:
        """Delete processed / ignored events received more than `days` ago. Commits."""
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(WebhookEvent).where(
                WebhookEvent.status.in_(FINISHED_STATUSES),
                WebhookEvent.received_at < cutoff,
            )
        )
        await self.db.commit()

        deleted = result.rowcount or 0
        logger.info(
            "Old webhook events cleaned up",
            extra_data={"deleted": deleted, "retention_days": days}
        )
        return deleted

    async def get_processing_stats(self, config_id: int | None = None, hours: int = 24) -> dict[str, Any]:
        """Status counts and failure rate for events received in the last `hours`"""
        since = utcnow() - timedelta(hours=hours)
        query = (
            select(WebhookEvent.status, func.count(WebhookEvent.id))
            .where(WebhookEvent.received_at >= since)
            .group_by(WebhookEvent.status)
        )
        if config_id is not None:
            query = query.where(WebhookEvent.webhook_config_id == config_id)
        result = await self.db.execute(query)

        by_status = {status.value: 0 for status in WebhookEventStatus}
        for status, count in result.all():
            by_status[WebhookEventStatus(status).value] = count

        total = sum(by_status.values())
        failed = by_status[WebhookEventStatus.FAILED.value]
        return {
            "config_id": config_id,
            "hours": hours,
            "total_events": total,
            "by_status": by_status,
            "failure_rate": round(failed / total * 100, 2) if total else 0.0,
        }
