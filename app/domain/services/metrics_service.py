"""
Delivery Metrics Service - per (config, platform, UTC day) delivery counters.

Counters are incremented with single `UPDATE ... SET col = col + 1`
statements so concurrent workers never lose an increment. The event type
breakdown and the running mean processing time need the current row value,
so they are updated under a row lock (SELECT ... FOR UPDATE).

The recorder only flushes. Committing is the caller's job, so a metric
increment commits or rolls back together with the event it describes.
"""
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.webhook_config import WebhookConfig
from app.db.models.webhook_delivery_metric import WebhookDeliveryMetric
from app.state_machine.states import WebhookEventStatus

logger = get_logger(__name__)

# Outcome status -> counter column
OUTCOME_COLUMNS = {
    WebhookEventStatus.PROCESSED: "successfully_processed",
    WebhookEventStatus.FAILED: "failed",
    WebhookEventStatus.IGNORED: "ignored",
}


class DeliveryMetricsRecorder:
    """Records webhook delivery outcomes into WebhookDeliveryMetric rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_or_create_row_id(self, config: WebhookConfig, day: date) -> int:
        """
        Find today's row or create it.

        Uses a savepoint + IntegrityError fallback: two workers creating the
        same day's row at once both end up with the one that won the insert.
        """
        query = select(WebhookDeliveryMetric.id).where(
            WebhookDeliveryMetric.webhook_config_id == config.id,
            WebhookDeliveryMetric.platform == config.platform,
            WebhookDeliveryMetric.date == day,
        )
        result = await self.db.execute(query)
        row_id = result.scalar_one_or_none()
        if row_id is not None:
            return row_id

        try:
            async with self.db.begin_nested():
                metric = WebhookDeliveryMetric(
                    webhook_config_id=config.id,
                    social_account_id=config.social_account_id,
                    platform=config.platform,
                    date=day,
                    total_received=0,
                    successfully_processed=0,
                    failed=0,
                    ignored=0,
                    retry_attempts=0,
                    average_processing_time=0.0,
                    event_type_breakdown={},
                )
                self.db.add(metric)
            return metric.id
        except IntegrityError:
            logger.info(
                "Metric row created concurrently, re-reading",
                extra_data={"config_id": config.id, "date": day.isoformat()}
            )
            result = await self.db.execute(query)
            return result.scalar_one()

    async def _increment(self, row_id: int, **amounts: int) -> None:
        values = {
            column: getattr(WebhookDeliveryMetric, column) + amount
            for column, amount in amounts.items()
        }
        values["updated_at"] = utcnow()
        await self.db.execute(
            update(WebhookDeliveryMetric)
            .where(WebhookDeliveryMetric.id == row_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def _lock_row(self, row_id: int) -> WebhookDeliveryMetric:
        result = await self.db.execute(
            select(WebhookDeliveryMetric)
            .where(WebhookDeliveryMetric.id == row_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    # ==================== Recording ====================

    async def record_received(self, config: WebhookConfig, event_type: str) -> None:
        """An accepted delivery: total_received += 1 and one more `event_type` in the breakdown."""
        row_id = await self._get_or_create_row_id(config, utcnow().date())
        await self._increment(row_id, total_received=1)

        metric = await self._lock_row(row_id)
        breakdown = dict(metric.event_type_breakdown or {})
        breakdown[event_type] = breakdown.get(event_type, 0) + 1
        metric.event_type_breakdown = breakdown
        await self.db.flush()

    async def record_outcome(
        self,
        config: WebhookConfig,
        event_type: str,
        status: WebhookEventStatus | str,
        processing_time_ms: float | None = None,
    ) -> None:
        """
        Count one processing outcome.

        Increments exactly one of processed / failed / ignored (plus
        retry_attempts on failure). A positive processing time updates the
        running mean over total_processed.

        Raises:
            ValueError: status is not an outcome (pending / processing)
        """
        outcome = WebhookEventStatus(status)
        column = OUTCOME_COLUMNS.get(outcome)
        if column is None:
            raise ValueError(f"Not an outcome status: {outcome.value}")

        row_id = await self._get_or_create_row_id(config, utcnow().date())
        amounts = {column: 1}
        if outcome == WebhookEventStatus.FAILED:
            amounts["retry_attempts"] = 1
        await self._increment(row_id, **amounts)

        if processing_time_ms is not None and processing_time_ms > 0:
            metric = await self._lock_row(row_id)
            processed = max(metric.total_processed, 1)
            previous = metric.average_processing_time or 0.0
            metric.average_processing_time = (previous * (processed - 1) + processing_time_ms) / processed
            await self.db.flush()

        logger.debug(
            "Webhook outcome recorded",
            extra_data={
                "config_id": config.id,
                "event_type": event_type,
                "status": outcome.value,
                "processing_time_ms": processing_time_ms,
            }
        )

    async def record_retry(self, config: WebhookConfig) -> None:
        """A failed attempt that will be retried: only retry_attempts moves, the outcome is still open."""
        row_id = await self._get_or_create_row_id(config, utcnow().date())
        await self._increment(row_id, retry_attempts=1)
        await self.db.flush()

    async def record_error(self, config: WebhookConfig) -> None:
        """An ingestion-time failure (500): counts as received and failed."""
        row_id = await self._get_or_create_row_id(config, utcnow().date())
        await self._increment(row_id, total_received=1, failed=1)
        await self.db.flush()

    # ==================== Reporting ====================

    async def get_summary(self, config_id: int, days: int = 7) -> dict[str, Any]:
        """Totals, rates and a per-day series for the last `days` UTC days"""
        since = utcnow().date() - timedelta(days=max(days, 1) - 1)
        result = await self.db.execute(
            select(WebhookDeliveryMetric)
            .where(
                WebhookDeliveryMetric.webhook_config_id == config_id,
                WebhookDeliveryMetric.date >= since,
            )
            .order_by(WebhookDeliveryMetric.date)
            .execution_options(populate_existing=True)
        )
        rows = result.scalars().all()

        totals = {
            "total_received": sum(row.total_received for row in rows),
            "successfully_processed": sum(row.successfully_processed for row in rows),
            "failed": sum(row.failed for row in rows),
            "ignored": sum(row.ignored for row in rows),
            "retry_attempts": sum(row.retry_attempts for row in rows),
        }
        processed = sum(row.total_processed for row in rows)
        weighted_time = sum(row.average_processing_time * row.total_processed for row in rows)

        breakdown: dict[str, int] = {}
        for row in rows:
            for event_type, count in (row.event_type_breakdown or {}).items():
                breakdown[event_type] = breakdown.get(event_type, 0) + count

        received = totals["total_received"]
        return {
            "config_id": config_id,
            "days": days,
            "since": since.isoformat(),
            **totals,
            "success_rate": round(totals["successfully_processed"] / received * 100, 2) if received else 0.0,
            "failure_rate": round(totals["failed"] / received * 100, 2) if received else 0.0,
            "average_processing_time": round(weighted_time / processed, 2) if processed else 0.0,
            "event_type_breakdown": breakdown,
            "daily": [
                {
                    "date": row.date.isoformat(),
                    "total_received": row.total_received,
                    "successfully_processed": row.successfully_processed,
                    "failed": row.failed,
                    "ignored": row.ignored,
                    "success_rate": row.success_rate,
                }
                for row in rows
            ],
        }
