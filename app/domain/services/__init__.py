"""
Domain Services
"""
from app.domain.services.metrics_service import DeliveryMetricsRecorder
from app.domain.services.webhook_config_service import WebhookConfigService
from app.domain.services.webhook_event_service import WebhookEventService
from app.domain.services.webhook_processing_service import WebhookProcessingService, ProcessingResult

__all__ = [
    "DeliveryMetricsRecorder",
    "WebhookConfigService",
    "WebhookEventService",
    "WebhookProcessingService",
    "ProcessingResult",
]
