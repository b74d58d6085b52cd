"""
State Machine Module for Webhook Ingestion and Event Processing
"""
from app.state_machine.states import (
    IngestionState,
    INGESTION_TRANSITIONS,
    WebhookEventStatus,
    EVENT_STATUS_TRANSITIONS,
    is_valid_ingestion_transition,
    is_valid_status_transition,
)

__all__ = [
    "IngestionState",
    "INGESTION_TRANSITIONS",
    "WebhookEventStatus",
    "EVENT_STATUS_TRANSITIONS",
    "is_valid_ingestion_transition",
    "is_valid_status_transition",
]
