"""
Tests for DeliveryMetricsRecorder - daily delivery counters.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import utcnow
from app.db.models.webhook_delivery_metric import WebhookDeliveryMetric
from app.domain.services.metrics_service import DeliveryMetricsRecorder
from app.domain.webhooks.platforms import Platform
from app.state_machine.states import WebhookEventStatus


async def _rows(db: AsyncSession, config_id: int) -> list[WebhookDeliveryMetric]:
    result = await db.execute(
        select(WebhookDeliveryMetric)
        .where(WebhookDeliveryMetric.webhook_config_id == config_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _today(db: AsyncSession, config_id: int) -> WebhookDeliveryMetric:
    rows = await _rows(db, config_id)
    assert len(rows) == 1
    return rows[0]


class TestRecordReceived:

    @pytest.mark.unit
    async def test_creates_daily_row(self, db_session: AsyncSession, config_factory):
        config = await config_factory(social_account_id=9)
        recorder = DeliveryMetricsRecorder(db_session)

        await recorder.record_received(config, "post_created")
        await db_session.commit()

        row = await _today(db_session, config.id)
        assert row.date == utcnow().date()
        assert row.platform == Platform.FACEBOOK
        assert row.social_account_id == 9
        assert row.total_received == 1
        assert row.event_type_breakdown == {"post_created": 1}

    @pytest.mark.unit
    async def test_same_day_reuses_row(self, db_session: AsyncSession, config_factory):
        config = await config_factory()
        recorder = DeliveryMetricsRecorder(db_session)

        await recorder.record_received(config, "post_created")
        await recorder.record_received(config, "post_created")
        await recorder.record_received(config, "comment_added")
        await db_session.commit()

        row = await _today(db_session, config.id)
        assert row.total_received == 3
        assert row.event_type_breakdown == {"post_created": 2, "comment_added": 1}

    @pytest.mark.unit
    async def test_rows_are_per_config(self, db_session: AsyncSession, config_factory):
        facebook = await config_factory(Platform.FACEBOOK)
        twitter = await config_factory(Platform.TWITTER)
        recorder = DeliveryMetricsRecorder(db_session)

        await recorder.record_received(facebook, "post_created")
        await recorder.record_received(twitter, "tweet_created")
        await db_session.commit()

        assert (await _today(db_session, facebook.id)).event_type_breakdown == {"post_created": 1}
        assert (await _today(db_session, twitter.id)).platform == Platform.TWITTER

    @pytest.mark.unit
    async def test_rolls_back_with_caller(self, db_session: AsyncSession, config_factory):
        config = await config_factory()
        config_id = config.id
        recorder = DeliveryMetricsRecorder(db_session)

        await recorder.record_received(config, "post_created")
        await db_session.rollback()

        assert await _rows(db_session, config_id) == []


class TestRecordOutcome:

    @pytest.mark.unit
    async def test_processed_updates_running_mean(self, db_session: AsyncSession, config_factory):
        config = await config_factory()
        recorder = DeliveryMetricsRecorder(db_session)

        await recorder.record_outcome(config, "post_created", WebhookEventStatus.PROCESSED, 100.0)
        await recorder.record_outcome(config, "post_created", WebhookEventStatus.PROCESSED, 200.0)
        await db_session.commit()

        row = await _today(db_session, config.id)
        assert row.successfully_processed == 2
        assert row.average_processing_time == pytest.approx(150.0)

    @pytest.mark.unit
    async def test_failed_counts_retry_attempt(self, db_session: AsyncSession, config_factory):
        config = await config_factory()
        recorder = DeliveryMetricsRecorder(db_session)

        await recorder.record_outcome(config, "post_created", "failed")
        await db_session.commit()

        row = await _today(db_session, config.id)
        assert row.failed == 1
        assert row.retry_attempts == 1
        assert row.successfully_processed == 0

    @pytest.mark.unit
    async def test_ignored(self, db_session: AsyncSession, config_factory):
        config = await config_factory()
        recorder = DeliveryMetricsRecorder(db_session)

        await recorder.record_outcome(config, "post_created", WebhookEventStatus.IGNORED, 5.0)
        await db_session.commit()

        row = await _today(db_session, config.id)
        assert row.ignored == 1
        assert row.retry_attempts == 0
        assert row.average_processing_time == pytest.approx(5.0)

    @pytest.mark.unit
    @pytest.mark.parametrize("processing_time", [None, 0.0, -3.0])
    async def test_missing_time_leaves_mean(self, db_session: AsyncSession, config_factory, processing_time):
        config = await config_factory()
        recorder = DeliveryMetricsRecorder(db_session)

        await recorder.record_outcome(config, "post_created", WebhookEventStatus.PROCESSED, processing_time)
        await db_session.commit()

        assert (await _today(db_session, config.id)).average_processing_time == 0.0

    @pytest.mark.unit
    @pytest.mark.parametrize("status", [WebhookEventStatus.PENDING, WebhookEventStatus.PROCESSING])
    async def test_non_outcome_status_rejected(self, db_session: AsyncSession, config_factory, status):
        config = await config_factory()

        with pytest.raises(ValueError):
            await DeliveryMetricsRecorder(db_session).record_outcome(config, "post_created", status)

    @pytest.mark.unit
    async def test_record_retry_leaves_outcomes_open(self, db_session: AsyncSession, config_factory):
        config = await config_factory()

        await DeliveryMetricsRecorder(db_session).record_retry(config)
        await db_session.commit()

        row = await _today(db_session, config.id)
        assert row.retry_attempts == 1
        assert row.failed == 0
        assert row.total_processed == 0

    @pytest.mark.unit
    async def test_record_error_counts_received_and_failed(self, db_session: AsyncSession, config_factory):
        config = await config_factory()

        await DeliveryMetricsRecorder(db_session).record_error(config)
        await db_session.commit()

        row = await _today(db_session, config.id)
        assert row.total_received == 1
        assert row.failed == 1
        assert row.retry_attempts == 0


class TestSummary:

    @pytest.mark.unit
    async def test_totals_and_rates(self, db_session: AsyncSession, config_factory):
        config = await config_factory()
        recorder = DeliveryMetricsRecorder(db_session)
        for event_type in ("post_created", "post_created", "comment_added", "post_liked"):
            await recorder.record_received(config, event_type)
        await recorder.record_outcome(config, "post_created", WebhookEventStatus.PROCESSED, 10.0)
        await recorder.record_outcome(config, "post_created", WebhookEventStatus.PROCESSED, 30.0)
        await recorder.record_outcome(config, "comment_added", WebhookEventStatus.FAILED)
        await recorder.record_outcome(config, "post_liked", WebhookEventStatus.IGNORED)
        await db_session.commit()

        summary = await recorder.get_summary(config.id)

        assert summary["total_received"] == 4
        assert summary["successfully_processed"] == 2
        assert summary["failed"] == 1
        assert summary["ignored"] == 1
        assert summary["success_rate"] == 50.0
        assert summary["failure_rate"] == 25.0
        assert summary["event_type_breakdown"] == {"post_created": 2, "comment_added": 1, "post_liked": 1}
        assert len(summary["daily"]) == 1
        assert summary["daily"][0]["success_rate"] == 50.0

    @pytest.mark.unit
    async def test_window_excludes_older_days(self, db_session: AsyncSession, config_factory):
        config = await config_factory()
        db_session.add(WebhookDeliveryMetric(
            webhook_config_id=config.id,
            social_account_id=config.social_account_id,
            platform=config.platform,
            date=utcnow().date() - timedelta(days=10),
            total_received=50,
            successfully_processed=50,
            event_type_breakdown={"post_created": 50},
        ))
        await db_session.commit()
        recorder = DeliveryMetricsRecorder(db_session)
        await recorder.record_received(config, "post_created")
        await db_session.commit()

        week = await recorder.get_summary(config.id, days=7)
        month = await recorder.get_summary(config.id, days=30)

        assert week["total_received"] == 1
        assert month["total_received"] == 51
        assert [day["date"] for day in month["daily"]] == sorted(day["date"] for day in month["daily"])

    @pytest.mark.unit
    async def test_empty_summary(self, db_session: AsyncSession):
        summary = await DeliveryMetricsRecorder(db_session).get_summary(404)

        assert summary["total_received"] == 0
        assert summary["success_rate"] == 0.0
        assert summary["average_processing_time"] == 0.0
        assert summary["daily"] == []
