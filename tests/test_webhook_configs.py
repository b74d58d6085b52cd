"""
Tests for WebhookConfig, WebhookDeliveryMetric helpers and WebhookConfigService.
"""
import re

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import WebhookNotConfiguredError
from app.db.models.webhook_config import WebhookConfig, generate_webhook_secret
from app.db.models.webhook_delivery_metric import WebhookDeliveryMetric
from app.domain.services.webhook_config_service import WebhookConfigService
from app.domain.webhooks.platforms import Platform


class TestWebhookConfigModel:

    @pytest.mark.unit
    def test_generated_secret_is_64_hex_chars(self):
        secret = generate_webhook_secret()

        assert re.fullmatch(r"[0-9a-f]{64}", secret)
        assert generate_webhook_secret() != secret

    @pytest.mark.unit
    def test_ensure_secret_never_replaces(self):
        config = WebhookConfig(platform=Platform.FACEBOOK, social_account_id=1, secret="existing")

        assert config.ensure_secret() == "existing"
        assert config.secret == "existing"

    @pytest.mark.unit
    def test_ensure_secret_fills_blank(self):
        config = WebhookConfig(platform=Platform.FACEBOOK, social_account_id=1, secret="")

        secret = config.ensure_secret()

        assert len(secret) == 64
        assert config.ensure_secret() == secret

    @pytest.mark.unit
    def test_is_subscribed_to(self):
        config = WebhookConfig(events=["post_created", "comment_added"])

        assert config.is_subscribed_to("post_created")
        assert not config.is_subscribed_to("post_liked")
        assert not WebhookConfig(events=None).is_subscribed_to("post_created")

    @pytest.mark.unit
    def test_settings_never_none(self):
        assert WebhookConfig(metadata_=None).settings == {}
        assert WebhookConfig(metadata_={"user_id": "9"}).settings == {"user_id": "9"}


class TestDeliveryMetricRates:

    @pytest.mark.unit
    def test_rates(self):
        metric = WebhookDeliveryMetric(
            total_received=8, successfully_processed=6, failed=1, ignored=1,
        )

        assert metric.total_processed == 8
        assert metric.success_rate == 75.0
        assert metric.failure_rate == 12.5

    @pytest.mark.unit
    def test_rates_without_deliveries(self):
        metric = WebhookDeliveryMetric(total_received=0)

        assert metric.success_rate == 0.0
        assert metric.failure_rate == 0.0


class TestWebhookConfigService:

    @pytest.mark.unit
    async def test_resolve_picks_lowest_active_id(self, db_session: AsyncSession, config_factory):
        await config_factory(Platform.FACEBOOK, is_active=False)
        first = await config_factory(Platform.FACEBOOK)
        await config_factory(Platform.FACEBOOK)

        resolved = await WebhookConfigService(db_session).resolve(Platform.FACEBOOK)

        assert resolved.id == first.id

    @pytest.mark.unit
    async def test_resolve_explicit_id(self, db_session: AsyncSession, config_factory):
        await config_factory(Platform.TWITTER)
        second = await config_factory(Platform.TWITTER)

        resolved = await WebhookConfigService(db_session).resolve(Platform.TWITTER, second.id)

        assert resolved.id == second.id

    @pytest.mark.unit
    async def test_resolve_rejects_other_platform_id(self, db_session: AsyncSession, config_factory):
        linkedin = await config_factory(Platform.LINKEDIN)

        with pytest.raises(WebhookNotConfiguredError) as exc_info:
            await WebhookConfigService(db_session).resolve(Platform.FACEBOOK, linkedin.id)

        assert exc_info.value.status_code == 404

    @pytest.mark.unit
    async def test_resolve_without_config(self, db_session: AsyncSession):
        with pytest.raises(WebhookNotConfiguredError):
            await WebhookConfigService(db_session).resolve(Platform.INSTAGRAM)

    @pytest.mark.unit
    async def test_create_config_generates_secret(self, db_session: AsyncSession):
        config = await WebhookConfigService(db_session).create_config(
            social_account_id=3,
            platform=Platform.INSTAGRAM,
            events=["comment_added"],
            metadata={"verify_token": "tok"},
        )
        await db_session.commit()

        assert config.id is not None
        assert config.is_active
        assert len(config.secret) == 64
        assert config.settings["verify_token"] == "tok"

    @pytest.mark.unit
    async def test_create_config_keeps_given_secret(self, db_session: AsyncSession):
        config = await WebhookConfigService(db_session).create_config(
            social_account_id=3, platform=Platform.TWITTER, secret="shared-secret",
        )

        assert config.secret == "shared-secret"

    @pytest.mark.unit
    async def test_mark_verified(self, db_session: AsyncSession, config_factory):
        config = await config_factory()
        assert config.last_verified_at is None

        await WebhookConfigService(db_session).mark_verified(config)

        assert config.last_verified_at is not None
