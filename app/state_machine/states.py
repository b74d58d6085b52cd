"""
State Definitions for Webhook Ingestion and Event Processing

Two machines:
- IngestionState: one HTTP delivery, from arrival to the response.
- WebhookEventStatus: a stored event, from pending to its processing outcome.
"""
from enum import Enum


class IngestionState(str, Enum):
    """States of a single inbound webhook request"""

    START = "START"
    CHALLENGE_HANDLED = "CHALLENGE_HANDLED"
    CONFIG_LOOKUP = "CONFIG_LOOKUP"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    SECURITY_CHECK = "SECURITY_CHECK"
    REJECTED = "REJECTED"
    SIGNATURE_CHECK = "SIGNATURE_CHECK"
    UNAUTHORIZED = "UNAUTHORIZED"
    EXTRACT_EVENT = "EXTRACT_EVENT"
    VALIDATE = "VALIDATE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    PERSIST = "PERSIST"
    RECORD_METRIC = "RECORD_METRIC"
    ENQUEUE = "ENQUEUE"
    ACK = "ACK"
    INTERNAL_ERROR = "INTERNAL_ERROR"


INGESTION_TRANSITIONS = {
    IngestionState.START: [IngestionState.CHALLENGE_HANDLED, IngestionState.CONFIG_LOOKUP],
    IngestionState.CONFIG_LOOKUP: [IngestionState.NOT_CONFIGURED, IngestionState.SECURITY_CHECK],
    IngestionState.SECURITY_CHECK: [IngestionState.REJECTED, IngestionState.SIGNATURE_CHECK],
    IngestionState.SIGNATURE_CHECK: [IngestionState.UNAUTHORIZED, IngestionState.EXTRACT_EVENT],
    IngestionState.EXTRACT_EVENT: [IngestionState.VALIDATE],
    IngestionState.VALIDATE: [IngestionState.VALIDATION_FAILED, IngestionState.PERSIST],
    IngestionState.PERSIST: [IngestionState.RECORD_METRIC],
    IngestionState.RECORD_METRIC: [IngestionState.ENQUEUE],
    IngestionState.ENQUEUE: [IngestionState.ACK],
}

# Responses are only produced from these states
INGESTION_TERMINAL_STATES = frozenset({
    IngestionState.CHALLENGE_HANDLED,
    IngestionState.NOT_CONFIGURED,
    IngestionState.REJECTED,
    IngestionState.UNAUTHORIZED,
    IngestionState.VALIDATION_FAILED,
    IngestionState.ACK,
    IngestionState.INTERNAL_ERROR,
})


class WebhookEventStatus(str, Enum):
    """Processing status of a stored webhook event"""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


# failed -> pending is the requeue path, failed -> processing a direct task retry
EVENT_STATUS_TRANSITIONS = {
    WebhookEventStatus.PENDING: [WebhookEventStatus.PROCESSING],
    WebhookEventStatus.PROCESSING: [
        WebhookEventStatus.PROCESSED,
        WebhookEventStatus.FAILED,
        WebhookEventStatus.IGNORED,
    ],
    WebhookEventStatus.FAILED: [WebhookEventStatus.PENDING, WebhookEventStatus.PROCESSING],
    WebhookEventStatus.PROCESSED: [],
    WebhookEventStatus.IGNORED: [],
}


def is_valid_ingestion_transition(current: IngestionState, target: IngestionState) -> bool:
    """Any state may fall into INTERNAL_ERROR, terminal states go nowhere."""
    if current in INGESTION_TERMINAL_STATES:
        return False
    if target == IngestionState.INTERNAL_ERROR:
        return True
    return target in INGESTION_TRANSITIONS.get(current, [])


def is_valid_status_transition(current: str, target: str) -> bool:
    """Check a WebhookEvent status change against EVENT_STATUS_TRANSITIONS"""
    try:
        current_status = WebhookEventStatus(current)
        target_status = WebhookEventStatus(target)
    except ValueError:
        return False
    return target_status in EVENT_STATUS_TRANSITIONS[current_status]
