"""
Webhook Delivery Metric Model - daily delivery counters per config.

Counters only grow within a day. All increments go through
DeliveryMetricsRecorder, which uses storage-level atomic updates.
"""
from sqlalchemy import Column, Integer, Float, Date, DateTime, JSON, ForeignKey, Enum as SQLEnum, UniqueConstraint, Index

from app.db.database import Base, utcnow
from app.domain.webhooks.platforms import Platform


class WebhookDeliveryMetric(Base):
    """Per (config, platform, UTC day) delivery counters"""

    __tablename__ = "webhook_delivery_metrics"

    id = Column(Integer, primary_key=True, index=True)
    webhook_config_id = Column(Integer, ForeignKey("webhook_configs.id", ondelete="CASCADE"), nullable=False)
    social_account_id = Column(Integer, nullable=False)
    platform = Column(SQLEnum(Platform), nullable=False)
    date = Column(Date, nullable=False)

    total_received = Column(Integer, default=0, nullable=False)
    successfully_processed = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)
    ignored = Column(Integer, default=0, nullable=False)
    retry_attempts = Column(Integer, default=0, nullable=False)
    average_processing_time = Column(Float, default=0.0, nullable=False)  # milliseconds
    event_type_breakdown = Column(JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("webhook_config_id", "platform", "date", name="uq_delivery_metric_config_platform_date"),
        Index("ix_delivery_metrics_account_platform_date", "social_account_id", "platform", "date"),
    )

    @property
    def total_processed(self) -> int:
        return (self.successfully_processed or 0) + (self.failed or 0) + (self.ignored or 0)

    @property
    def success_rate(self) -> float:
        """Percentage of received deliveries that were processed successfully"""
        if not self.total_received:
            return 0.0
        return round((self.successfully_processed or 0) / self.total_received * 100, 2)

    @property
    def failure_rate(self) -> float:
        if not self.total_received:
            return 0.0
        return round((self.failed or 0) / self.total_received * 100, 2)
