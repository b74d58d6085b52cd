"""
Database Models
"""
from app.db.models.webhook_config import WebhookConfig
from app.db.models.webhook_event import WebhookEvent
from app.db.models.webhook_delivery_metric import WebhookDeliveryMetric

__all__ = [
    "WebhookConfig",
    "WebhookEvent",
    "WebhookDeliveryMetric",
]
