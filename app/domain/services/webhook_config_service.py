"""
Webhook Config Service - config lookup for ingestion plus the small amount of
record keeping ingestion needs (handshake verification timestamps).
"""
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import WebhookNotConfiguredError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.webhook_config import WebhookConfig
from app.domain.webhooks.platforms import Platform

logger = get_logger(__name__)


class WebhookConfigService:
    """Resolves and maintains WebhookConfig rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, platform: Platform, config_id: int | None = None) -> WebhookConfig:
        """
        Active config for a delivery.

        An explicit id must name an active config of the same platform.
        Without one, the platform's active config is used (lowest id first
        when an account has connected several).

        Raises:
            WebhookNotConfiguredError: no matching active config
        """
        platform = Platform(platform)
        query = select(WebhookConfig).where(
            WebhookConfig.platform == platform,
            WebhookConfig.is_active.is_(True),
        )
        if config_id is not None:
            query = query.where(WebhookConfig.id == config_id)
        result = await self.db.execute(query.order_by(WebhookConfig.id).limit(1))
        config = result.scalar_one_or_none()

        if config is None:
            raise WebhookNotConfiguredError(platform.value, config_id)
        return config

    async def get(self, config_id: int) -> WebhookConfig | None:
        result = await self.db.execute(select(WebhookConfig).where(WebhookConfig.id == config_id))
        return result.scalar_one_or_none()

    async def create_config(
        self,
        social_account_id: int,
        platform: Platform,
        webhook_url: str | None = None,
        events: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        secret: str | None = None,
    ) -> WebhookConfig:
        """
        Create an active config. A secret is generated unless one is given.

        Flush only. The caller commits.
        """
        config = WebhookConfig(
            social_account_id=social_account_id,
            platform=Platform(platform),
            webhook_url=webhook_url,
            secret=secret,
            events=list(events or []),
            metadata_=dict(metadata or {}),
            is_active=True,
        )
        config.ensure_secret()
        self.db.add(config)
        await self.db.flush()

        logger.info(
            "Webhook config created",
            extra_data={
                "config_id": config.id,
                "platform": config.platform.value,
                "social_account_id": social_account_id,
            }
        )
        return config

    async def mark_verified(self, config: WebhookConfig) -> None:
        """Stamp a successful handshake and commit"""
        config.last_verified_at = utcnow()
        await self.db.commit()
        logger.info(
            "Webhook handshake verified",
            extra_data={"config_id": config.id, "platform": config.platform.value}
        )

