"""
Tests for the asynchronous half of ingestion:
- WebhookProcessingService (claim, normalize, filter, outcome)
- WebhookEventService transitions and maintenance
- The Celery tasks wrapping them
"""
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import Retry
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import EventProcessingError, InvalidStateTransitionError
from app.db.database import utcnow
from app.db.models.webhook_delivery_metric import WebhookDeliveryMetric
from app.db.models.webhook_event import MAX_EVENT_RETRIES, WebhookEvent
from app.domain.services.metrics_service import DeliveryMetricsRecorder
from app.domain.services.webhook_event_service import WebhookEventService
from app.domain.services.webhook_processing_service import ProcessingResult, WebhookProcessingService
from app.domain.webhooks.extractors import EventEnvelope
from app.domain.webhooks.platforms import Platform
from app.state_machine.states import WebhookEventStatus
from app.workers import tasks
from app.workers.tasks import (
    backoff_for,
    cleanup_old_webhook_events,
    cleanup_webhook_security_data,
    enqueue_webhook_event,
    enqueue_webhook_event_async,
    get_event_loop,
    process_webhook_event,
    retry_failed_webhook_events,
    run_async,
)


async def _stored_event(
    db: AsyncSession,
    config,
    payload: dict,
    event_type: str = "post_created",
) -> WebhookEvent:
    event = await WebhookEventService(db).create_event(
        config, EventEnvelope(event_type=event_type, event_id="native-1"), payload
    )
    await db.commit()
    return event


async def _metric(db: AsyncSession, config_id: int) -> WebhookDeliveryMetric:
    result = await db.execute(
        select(WebhookDeliveryMetric)
        .where(WebhookDeliveryMetric.webhook_config_id == config_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _returning(value):
    """run_async stand-in: drop the coroutine and hand back `value`"""
    def _run(coro):
        coro.close()
        if isinstance(value, Exception):
            raise value
        return value
    return _run


# ============================================================================
# WebhookProcessingService
# ============================================================================

class TestProcessEvent:

    @pytest.mark.unit
    async def test_processes_pending_event(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)

        result = await WebhookProcessingService(db_session).process(event.id)

        assert result.status == WebhookEventStatus.PROCESSED
        assert result.reason is None
        assert result.normalized.platform == Platform.FACEBOOK.value
        assert result.normalized.webhook_event_id == event.id
        assert event.status == WebhookEventStatus.PROCESSED
        assert event.processed_at is not None
        metric = await _metric(db_session, config.id)
        assert metric.successfully_processed == 1
        assert metric.failed == 0

    @pytest.mark.unit
    async def test_unsubscribed_event_is_ignored(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory(events=["comment_added"])
        event = await _stored_event(db_session, config, facebook_feed_payload)

        result = await WebhookProcessingService(db_session).process(event.id)

        assert result.status == WebhookEventStatus.IGNORED
        assert result.reason == "not subscribed to post_created"
        assert event.status == WebhookEventStatus.IGNORED
        assert event.error_message == "not subscribed to post_created"
        assert (await _metric(db_session, config.id)).ignored == 1

    @pytest.mark.unit
    async def test_inactive_config_is_ignored(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)
        config.is_active = False
        await db_session.commit()

        result = await WebhookProcessingService(db_session).process(event.id)

        assert result.status == WebhookEventStatus.IGNORED
        assert result.reason == "config inactive"

    @pytest.mark.unit
    async def test_missing_event_is_skipped(self, db_session: AsyncSession):
        assert await WebhookProcessingService(db_session).process(404) is None

    @pytest.mark.unit
    async def test_finished_event_is_not_reprocessed(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)
        service = WebhookProcessingService(db_session)
        await service.process(event.id)

        assert await service.process(event.id) is None
        assert (await _metric(db_session, config.id)).successfully_processed == 1

    @pytest.mark.unit
    async def test_failure_marks_event_failed(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)

        with patch(
            "app.domain.services.webhook_processing_service.get_normalizer",
            side_effect=RuntimeError("normalizer broke"),
        ):
            with pytest.raises(EventProcessingError) as exc_info:
                await WebhookProcessingService(db_session).process(event.id)

        assert exc_info.value.event_id == event.id
        assert exc_info.value.retry_count == 1
        stored = await WebhookEventService(db_session).get_event(event.id)
        assert stored.status == WebhookEventStatus.FAILED
        assert stored.error_message == "normalizer broke"
        assert stored.can_retry()
        metric = await _metric(db_session, config.id)
        assert metric.failed == 0
        assert metric.retry_attempts == 1

    @pytest.mark.unit
    async def test_failed_event_can_be_claimed_again(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)
        service = WebhookProcessingService(db_session)
        with patch(
            "app.domain.services.webhook_processing_service.get_normalizer",
            side_effect=RuntimeError("transient"),
        ):
            with pytest.raises(EventProcessingError):
                await service.process(event.id)

        result = await service.process(event.id)

        assert result.status == WebhookEventStatus.PROCESSED
        stored = await WebhookEventService(db_session).get_event(event.id)
        assert stored.retry_count == 1
        assert stored.error_message is None

    @pytest.mark.unit
    async def test_retry_then_success_books_one_outcome(
        self, db_session: AsyncSession, config_factory, facebook_feed_payload
    ):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)
        await DeliveryMetricsRecorder(db_session).record_received(config, event.event_type)
        await db_session.commit()
        service = WebhookProcessingService(db_session)
        for _ in range(2):
            with patch(
                "app.domain.services.webhook_processing_service.get_normalizer",
                side_effect=RuntimeError("transient"),
            ):
                with pytest.raises(EventProcessingError):
                    await service.process(event.id)

        await service.process(event.id)

        metric = await _metric(db_session, config.id)
        assert metric.total_received == 1
        assert metric.successfully_processed == 1
        assert metric.failed == 0
        assert metric.retry_attempts == 2
        assert metric.successfully_processed + metric.failed + metric.ignored <= metric.total_received

    @pytest.mark.unit
    async def test_exhausting_retries_books_failed(
        self, db_session: AsyncSession, config_factory, facebook_feed_payload
    ):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)
        event.retry_count = MAX_EVENT_RETRIES - 1
        await db_session.commit()

        with patch(
            "app.domain.services.webhook_processing_service.get_normalizer",
            side_effect=RuntimeError("still broken"),
        ):
            with pytest.raises(EventProcessingError) as exc_info:
                await WebhookProcessingService(db_session).process(event.id)

        assert exc_info.value.retry_count == MAX_EVENT_RETRIES
        metric = await _metric(db_session, config.id)
        assert metric.failed == 1
        assert metric.retry_attempts == 1

    @pytest.mark.unit
    async def test_manual_retry_of_exhausted_event_keeps_counts(
        self, db_session: AsyncSession, config_factory, facebook_feed_payload
    ):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)
        event.retry_count = MAX_EVENT_RETRIES - 1
        await db_session.commit()
        service = WebhookProcessingService(db_session)
        with patch(
            "app.domain.services.webhook_processing_service.get_normalizer",
            side_effect=RuntimeError("still broken"),
        ):
            with pytest.raises(EventProcessingError):
                await service.process(event.id)

        result = await service.process(event.id)

        assert result.status == WebhookEventStatus.PROCESSED
        metric = await _metric(db_session, config.id)
        assert metric.failed == 1
        assert metric.successfully_processed == 0

    @pytest.mark.unit
    def test_result_to_dict(self):
        result = ProcessingResult(event_id=3, status=WebhookEventStatus.IGNORED, reason="config inactive")

        assert result.to_dict() == {
            "event_id": 3,
            "status": "ignored",
            "event_type": None,
            "reason": "config inactive",
        }


# ============================================================================
# WebhookEventService
# ============================================================================

class TestEventTransitions:

    @pytest.mark.unit
    async def test_pending_cannot_jump_to_processed(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)

        with pytest.raises(InvalidStateTransitionError):
            await WebhookEventService(db_session).mark_processed(event)

        assert event.status == WebhookEventStatus.PENDING

    @pytest.mark.unit
    async def test_failed_increments_retry_count(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        event = await _stored_event(db_session, config, facebook_feed_payload)
        service = WebhookEventService(db_session)

        await service.mark_processing(event)
        await service.mark_failed(event, "boom")

        assert event.retry_count == 1
        assert event.error_message == "boom"
        assert event.processed_at is None


class TestEventMaintenance:

    async def _failed(self, db: AsyncSession, config, payload, idle_minutes: int, retry_count: int = 1) -> WebhookEvent:
        event = await _stored_event(db, config, payload)
        service = WebhookEventService(db)
        await service.mark_processing(event)
        await service.mark_failed(event, "boom")
        event.retry_count = retry_count
        event.updated_at = utcnow() - timedelta(minutes=idle_minutes)
        await db.commit()
        return event

    @pytest.mark.unit
    async def test_requeue_failed_picks_idle_events_with_retries_left(
        self, db_session: AsyncSession, config_factory, facebook_feed_payload
    ):
        config = await config_factory()
        idle = await self._failed(db_session, config, facebook_feed_payload, idle_minutes=10)
        recent = await self._failed(db_session, config, facebook_feed_payload, idle_minutes=1)
        exhausted = await self._failed(
            db_session, config, facebook_feed_payload, idle_minutes=10, retry_count=settings.WEBHOOK_MAX_RETRIES
        )

        requeued = await WebhookEventService(db_session).requeue_failed()

        assert requeued == [idle.id]
        assert idle.status == WebhookEventStatus.PENDING
        assert recent.status == WebhookEventStatus.FAILED
        assert exhausted.status == WebhookEventStatus.FAILED

    @pytest.mark.unit
    async def test_requeue_respects_limit(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        first = await self._failed(db_session, config, facebook_feed_payload, idle_minutes=10)
        await self._failed(db_session, config, facebook_feed_payload, idle_minutes=10)

        assert await WebhookEventService(db_session).requeue_failed(limit=1) == [first.id]

    @pytest.mark.unit
    async def test_cleanup_deletes_only_old_finished_events(
        self, db_session: AsyncSession, config_factory, facebook_feed_payload
    ):
        config = await config_factory()
        service = WebhookEventService(db_session)
        old_processed = await _stored_event(db_session, config, facebook_feed_payload)
        await service.mark_processing(old_processed)
        await service.mark_processed(old_processed)
        old_pending = await _stored_event(db_session, config, facebook_feed_payload)
        recent_processed = await _stored_event(db_session, config, facebook_feed_payload)
        await service.mark_processing(recent_processed)
        await service.mark_processed(recent_processed)
        old_processed.received_at = utcnow() - timedelta(days=40)
        old_pending.received_at = utcnow() - timedelta(days=40)
        await db_session.commit()
        kept_ids = {old_pending.id, recent_processed.id}

        deleted = await service.cleanup_old_events(days=30)

        assert deleted == 1
        remaining = await db_session.execute(select(WebhookEvent.id))
        assert set(remaining.scalars().all()) == kept_ids

    @pytest.mark.unit
    async def test_processing_stats(self, db_session: AsyncSession, config_factory, facebook_feed_payload):
        config = await config_factory()
        other = await config_factory(Platform.TWITTER)
        await self._failed(db_session, config, facebook_feed_payload, idle_minutes=0)
        await _stored_event(db_session, config, facebook_feed_payload)
        await _stored_event(db_session, config, facebook_feed_payload)
        await _stored_event(db_session, other, {"tweet_create_events": []}, event_type="tweet_created")

        stats = await WebhookEventService(db_session).get_processing_stats(config_id=config.id)

        assert stats["total_events"] == 3
        assert stats["by_status"]["pending"] == 2
        assert stats["by_status"]["failed"] == 1
        assert stats["by_status"]["processed"] == 0
        assert stats["failure_rate"] == pytest.approx(33.33)

        overall = await WebhookEventService(db_session).get_processing_stats()
        assert overall["total_events"] == 4

    @pytest.mark.unit
    async def test_processing_stats_empty(self, db_session: AsyncSession):
        stats = await WebhookEventService(db_session).get_processing_stats(hours=1)

        assert stats["total_events"] == 0
        assert stats["failure_rate"] == 0.0


# ============================================================================
# Celery tasks
# ============================================================================

class TestBackoff:

    @pytest.mark.unit
    @pytest.mark.parametrize("retry_count,expected", [
        (0, 5),
        (1, 5),
        (2, 15),
        (3, 30),
        (4, 60),
        (5, 120),
        (9, 120),
    ])
    def test_schedule(self, retry_count: int, expected: int):
        assert backoff_for(retry_count) == expected


class TestProcessWebhookEventTask:

    @pytest.mark.unit
    def test_returns_result_dict(self):
        result = ProcessingResult(event_id=7, status=WebhookEventStatus.PROCESSED)

        with patch.object(tasks, "run_async", side_effect=_returning(result)):
            assert process_webhook_event.run(7) == result.to_dict()

    @pytest.mark.unit
    def test_skipped_when_nothing_to_claim(self):
        with patch.object(tasks, "run_async", side_effect=_returning(None)):
            assert process_webhook_event.run(7) == {"event_id": 7, "status": "skipped"}

    @pytest.mark.unit
    def test_failure_schedules_retry_on_backoff(self):
        error = EventProcessingError(7, "boom", retry_count=2)

        with patch.object(tasks, "run_async", side_effect=_returning(error)), \
                patch.object(process_webhook_event, "retry", return_value=Retry()) as retry:
            with pytest.raises(Retry):
                process_webhook_event.run(7)

        retry.assert_called_once_with(exc=error, countdown=15)

    @pytest.mark.unit
    def test_exhausted_retries_give_up(self):
        error = EventProcessingError(7, "boom", retry_count=settings.WEBHOOK_MAX_RETRIES)

        with patch.object(tasks, "run_async", side_effect=_returning(error)), \
                patch.object(process_webhook_event, "retry") as retry:
            outcome = process_webhook_event.run(7)

        assert outcome == {"event_id": 7, "status": "failed", "retry_count": settings.WEBHOOK_MAX_RETRIES}
        retry.assert_not_called()

    @pytest.mark.unit
    def test_unexpected_error_propagates(self):
        with patch.object(tasks, "run_async", side_effect=_returning(RuntimeError("db down"))):
            with pytest.raises(RuntimeError):
                process_webhook_event.run(7)

    @pytest.mark.unit
    def test_task_retry_limit_matches_settings(self):
        assert process_webhook_event.max_retries == settings.WEBHOOK_MAX_RETRIES


class TestMaintenanceTasks:

    @pytest.mark.unit
    def test_enqueue_uses_delay_and_queue(self):
        with patch.object(process_webhook_event, "apply_async") as apply_async:
            enqueue_webhook_event(42)

        apply_async.assert_called_once_with(
            args=[42],
            countdown=settings.WEBHOOK_PROCESSING_DELAY_SECONDS,
            queue=settings.WEBHOOK_QUEUE_NAME,
        )

    @pytest.mark.unit
    async def test_async_enqueue_publishes_off_the_loop(self):
        with patch.object(tasks, "enqueue_webhook_event") as enqueue, \
                patch.object(tasks.asyncio, "to_thread", wraps=tasks.asyncio.to_thread) as to_thread:
            await enqueue_webhook_event_async(42)

        to_thread.assert_called_once_with(enqueue, 42)
        enqueue.assert_called_once_with(42)

    @pytest.mark.unit
    def test_retry_failed_enqueues_each_event(self):
        with patch.object(tasks, "run_async", side_effect=_returning([3, 4])), \
                patch.object(tasks, "enqueue_webhook_event") as enqueue:
            outcome = retry_failed_webhook_events.run()

        assert outcome == {"requeued": 2}
        assert [c.args[0] for c in enqueue.call_args_list] == [3, 4]

    @pytest.mark.unit
    def test_cleanup_defaults_to_retention_setting(self):
        with patch.object(tasks, "run_async", side_effect=_returning(6)):
            assert cleanup_old_webhook_events.run() == {
                "deleted": 6,
                "retention_days": settings.WEBHOOK_EVENT_RETENTION_DAYS,
            }

    @pytest.mark.unit
    def test_cleanup_with_explicit_days(self):
        with patch.object(tasks, "run_async", side_effect=_returning(0)):
            assert cleanup_old_webhook_events.run(days=7) == {"deleted": 0, "retention_days": 7}

    @pytest.mark.unit
    def test_security_cleanup(self):
        with patch.object(tasks, "run_async", side_effect=_returning(5)):
            assert cleanup_webhook_security_data.run() == {"keys_expired": 5}


class TestEventLoopManagement:

    @pytest.mark.unit
    def test_get_event_loop_closes_loop(self):
        with get_event_loop() as loop:
            assert loop.is_running() is False
            captured = loop

        assert captured.is_closed()

    @pytest.mark.unit
    def test_run_async_returns_value(self):
        async def _answer():
            return 42

        assert run_async(_answer()) == 42

    @pytest.mark.unit
    def test_run_async_propagates_exceptions(self):
        async def _boom():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            run_async(_boom())

    @pytest.mark.unit
    def test_run_async_closes_redis(self):
        closed = MagicMock()

        async def _close():
            closed()

        with patch("app.core.redis_client.close_redis", _close):
            run_async(_noop())

        closed.assert_called_once()


async def _noop():
    return None
