"""
Webhook Event Model - one row per accepted inbound delivery.

Created at status=pending by the ingestion pipeline, moved through
EVENT_STATUS_TRANSITIONS by the async processor and deleted by the retention
cleanup once processed.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum, Index

from app.core.config import settings
from app.db.database import Base, utcnow
from app.domain.webhooks.platforms import Platform
from app.state_machine.states import WebhookEventStatus

MAX_EVENT_RETRIES = settings.WEBHOOK_MAX_RETRIES


class WebhookEvent(Base):
    """Raw webhook delivery plus its processing state"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    webhook_config_id = Column(Integer, ForeignKey("webhook_configs.id", ondelete="CASCADE"), nullable=False, index=True)
    social_account_id = Column(Integer, nullable=False)
    platform = Column(SQLEnum(Platform), nullable=False)

    event_type = Column(String(100), nullable=False, index=True)
    object_type = Column(String(50), nullable=True)
    object_id = Column(String(255), nullable=True)
    event_id = Column(String(255), nullable=True)  # platform-native id

    payload = Column(JSON, nullable=False)
    signature = Column(String(512), nullable=True)

    status = Column(SQLEnum(WebhookEventStatus), default=WebhookEventStatus.PENDING, nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    received_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_updated", "status", "updated_at"),
        Index("ix_webhook_events_platform_type", "platform", "event_type"),
    )

    def can_retry(self) -> bool:
        return self.status == WebhookEventStatus.FAILED and (self.retry_count or 0) < MAX_EVENT_RETRIES
