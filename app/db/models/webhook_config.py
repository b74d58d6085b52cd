"""
Webhook Config Model - one webhook integration per (social account, platform).

The shared secret keys every signature and handshake for the integration, so
it is generated once and never rotated in place. Deactivating a config stops
ingestion without losing its history.
"""
import secrets

from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Enum as SQLEnum, Index

from app.db.database import Base, utcnow
from app.domain.webhooks.platforms import Platform


def generate_webhook_secret() -> str:
    """64 hex chars from 32 random bytes"""
    return secrets.token_hex(32)


class WebhookConfig(Base):
    """Webhook integration settings for a connected social account"""

    __tablename__ = "webhook_configs"

    id = Column(Integer, primary_key=True, index=True)
    social_account_id = Column(Integer, nullable=False, index=True)
    platform = Column(SQLEnum(Platform), nullable=False)

    webhook_url = Column(String(500), nullable=True)
    secret = Column(String(128), nullable=True)
    events = Column(JSON, default=list)  # subscribed event types. Empty means "everything".
    is_active = Column(Boolean, default=True, nullable=False)
    # verify_token for the Meta handshake, platform_id / user_id and per-platform filters
    metadata_ = Column("metadata", JSON, default=dict)

    last_verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_webhook_configs_platform_active", "platform", "is_active"),
    )

    def is_subscribed_to(self, event_type: str) -> bool:
        """Pure membership test over the subscribed event list"""
        return event_type in (self.events or [])

    def ensure_secret(self) -> str:
        """Generate the secret if absent. An existing secret is never replaced."""
        if not self.secret:
            self.secret = generate_webhook_secret()
        return self.secret

    @property
    def settings(self) -> dict:
        """metadata map, never None"""
        return self.metadata_ or {}
