"""
Webhook Ingestion Pipeline

Synchronous half of webhook handling, modelled as the IngestionState machine
in app.state_machine.states:

    START -> CHALLENGE_HANDLED                        (handshake, answered and done)
    START -> CONFIG_LOOKUP -> NOT_CONFIGURED          (404)
          -> SECURITY_CHECK -> REJECTED               (403 / 422 / 429)
          -> SIGNATURE_CHECK -> UNAUTHORIZED          (401, bad signature or replay)
          -> EXTRACT_EVENT -> VALIDATE -> VALIDATION_FAILED (422)
          -> PERSIST -> RECORD_METRIC -> ENQUEUE -> ACK (200)
    any state -> INTERNAL_ERROR                       (500)

An accepted request produces exactly one event row, one received-metric
increment and one enqueue. A rejected one produces none of them, only a
security violation record. A 422 or 500 after the signature check also
releases the replay claim, so the platform can redeliver the same body.
Processing the event is the worker's job.
"""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import parse_qsl

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InvalidSignatureError,
    InvalidStateTransitionError,
    SecurityViolationError,
    WebhookException,
    WebhookValidationError,
)
from app.core.logging import get_logger, redact_headers
from app.db.models.webhook_config import WebhookConfig
from app.domain.services.metrics_service import DeliveryMetricsRecorder
from app.domain.services.webhook_config_service import WebhookConfigService
from app.domain.services.webhook_event_service import WebhookEventService
from app.domain.webhooks.challenges import answer_challenge, is_challenge
from app.domain.webhooks.extractors import EventEnvelope, extract_envelope
from app.domain.webhooks.platforms import PLATFORM_HEADER, Platform, resolve_platform
from app.domain.webhooks.security_gate import SecurityGate
from app.domain.webhooks.signatures import extract_signature, get_header, get_signature_verifier
from app.state_machine.states import IngestionState, is_valid_ingestion_transition

logger = get_logger(__name__)

CONFIG_ID_PARAM = "webhook_config_id"
CONFIG_ID_HEADER = "X-Webhook-Config-Id"

ACK_BODY = {"status": "success", "message": "Webhook received"}
INTERNAL_ERROR_BODY = {"status": "error", "message": "Internal server error"}

Enqueue = Callable[[int], Awaitable[Any]]


@dataclass(frozen=True)
class WebhookRequest:
    """Transport-independent view of an inbound webhook HTTP request"""

    platform: str | None
    headers: Mapping[str, str]
    query: Mapping[str, str]
    body: bytes
    client_ip: str
    content_type: str | None = None


@dataclass(frozen=True)
class IngestionResult:
    """What to answer, plus the terminal state that produced it"""

    state: IngestionState
    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)
    media_type: str = "application/json"
    event_id: int | None = None


@dataclass
class _Run:
    """Mutable per-request context, internal to the pipeline"""

    request: WebhookRequest
    state: IngestionState = IngestionState.START
    platform: Platform | None = None
    config: WebhookConfig | None = None
    # Signature claimed in the replay cache and not yet backed by a stored event
    claimed_signature: str | None = None
    response_headers: dict[str, str] = field(default_factory=dict)


def parse_body(body: bytes, content_type: str | None) -> Any:
    """
    Decode a delivery body.

    JSON bodies are decoded as is. Form bodies carrying a `payload` field
    holding JSON are unwrapped, other form bodies become a flat dict.
    Returns None when the body cannot be decoded.
    """
    media_type = (content_type or "").split(";")[0].strip().lower()
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        return None

    if media_type == "application/x-www-form-urlencoded":
        fields = dict(parse_qsl(text, keep_blank_values=True))
        if "payload" not in fields:
            return fields
        text = fields["payload"]

    try:
        return json.loads(text)
    except ValueError:
        return None


def _config_id_from(request: WebhookRequest) -> int | None:
    raw = request.query.get(CONFIG_ID_PARAM) or get_header(request.headers, CONFIG_ID_HEADER)
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        # An unparseable id can never name a config
        return -1


class WebhookIngestionPipeline:
    """
    Runs one inbound request through the ingestion state machine.

    Args:
        db: session used for config lookup, event persistence and metrics
        gate: SecurityGate bound to the shared Redis
        enqueue: coroutine function awaited with the new event id once it is committed
    """

    def __init__(self, db: AsyncSession, gate: SecurityGate, enqueue: Enqueue):
        self.db = db
        self.gate = gate
        self.enqueue = enqueue
        self.configs = WebhookConfigService(db)
        self.events = WebhookEventService(db)
        self.metrics = DeliveryMetricsRecorder(db)

    async def handle(self, request: WebhookRequest) -> IngestionResult:
        """Never raises: every outcome, including crashes and timeouts, becomes a result."""
        run = _Run(request=request)
        try:
            return await asyncio.wait_for(
                self._handle(run), timeout=settings.WEBHOOK_REQUEST_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error(
                "Webhook ingestion timed out",
                extra_data={"platform": request.platform, "state": run.state.value}
            )
            return await self._internal_error(run)
        except Exception as e:
            logger.error(
                "Webhook ingestion failed",
                extra_data={
                    "platform": request.platform,
                    "state": run.state.value,
                    "config_id": run.config.id if run.config else None,
                    "client_ip": request.client_ip,
                    "error": str(e),
                },
                exc_info=True
            )
            return await self._internal_error(run)

    # ──────────────────────────────────────────────
    #  State machine
    # ──────────────────────────────────────────────

    def _transition(self, run: _Run, target: IngestionState) -> None:
        if not is_valid_ingestion_transition(run.state, target):
            raise InvalidStateTransitionError(run.state.value, target.value)
        run.state = target

    async def _handle(self, run: _Run) -> IngestionResult:
        request = run.request

        if is_challenge(request.query):
            return await self._handle_challenge(run)

        # CONFIG_LOOKUP
        self._transition(run, IngestionState.CONFIG_LOOKUP)
        try:
            run.platform = resolve_platform(request.platform, get_header(request.headers, PLATFORM_HEADER))
            run.config = await self.configs.resolve(run.platform, _config_id_from(request))
        except WebhookException as e:
            logger.warning(
                "Webhook for unknown platform or config",
                extra_data={"platform": request.platform, "client_ip": request.client_ip, "reason": e.message}
            )
            return self._finish(run, IngestionState.NOT_CONFIGURED, e)

        platform, config = run.platform, run.config

        # SECURITY_CHECK
        self._transition(run, IngestionState.SECURITY_CHECK)
        try:
            rate_status = await self.gate.check_request(
                platform.value, request.client_ip, request.body, request.content_type, config.id
            )
        except SecurityViolationError as e:
            await self._record_violation(run, e)
            return self._finish(run, IngestionState.REJECTED, e)
        run.response_headers.update(rate_status.headers())

        # SIGNATURE_CHECK
        self._transition(run, IngestionState.SIGNATURE_CHECK)
        signature = extract_signature(request.headers)
        try:
            self._verify_signature(run)
            await self.gate.check_replay(platform.value, signature)
            run.claimed_signature = signature
        except WebhookException as e:
            await self._record_violation(run, e)
            return self._finish(run, IngestionState.UNAUTHORIZED, e)

        # EXTRACT_EVENT
        self._transition(run, IngestionState.EXTRACT_EVENT)
        payload = parse_body(request.body, request.content_type)
        envelope = extract_envelope(platform, payload)

        # VALIDATE
        self._transition(run, IngestionState.VALIDATE)
        try:
            self._validate(payload, envelope)
        except WebhookValidationError as e:
            logger.warning(
                "Webhook payload failed validation",
                extra_data={
                    "platform": platform.value,
                    "config_id": config.id,
                    "errors": e.errors,
                    "raw_payload": request.body[:2000].decode("utf-8", errors="replace"),
                }
            )
            await self._record_violation(run, e)
            await self._release_replay(run)
            return self._finish(run, IngestionState.VALIDATION_FAILED, e)

        # PERSIST
        self._transition(run, IngestionState.PERSIST)
        event = await self.events.create_event(config, envelope, payload, signature)

        # RECORD_METRIC
        self._transition(run, IngestionState.RECORD_METRIC)
        await self.metrics.record_received(config, envelope.event_type)
        await self.db.commit()
        run.claimed_signature = None

        # ENQUEUE
        self._transition(run, IngestionState.ENQUEUE)
        await self._enqueue(event.id, platform)

        # ACK
        self._transition(run, IngestionState.ACK)
        logger.info(
            "Webhook received",
            extra_data={
                "platform": platform.value,
                "config_id": config.id,
                "event_id": event.id,
                "event_type": envelope.event_type,
            }
        )
        return IngestionResult(
            state=IngestionState.ACK,
            status_code=200,
            body=ACK_BODY,
            headers=run.response_headers,
            event_id=event.id,
        )

    # ──────────────────────────────────────────────
    #  Steps
    # ──────────────────────────────────────────────

    async def _handle_challenge(self, run: _Run) -> IngestionResult:
        """Handshake: resolve platform and config, answer, stamp last_verified_at."""
        request = run.request
        self._transition(run, IngestionState.CHALLENGE_HANDLED)
        try:
            platform = resolve_platform(request.platform, get_header(request.headers, PLATFORM_HEADER))
            config = await self.configs.resolve(platform, _config_id_from(request))
            response = answer_challenge(platform, request.query, config)
        except WebhookException as e:
            logger.warning(
                "Webhook handshake rejected",
                extra_data={"platform": request.platform, "client_ip": request.client_ip, "reason": e.message}
            )
            return self._finish(run, IngestionState.CHALLENGE_HANDLED, e)

        await self.configs.mark_verified(config)
        return IngestionResult(
            state=IngestionState.CHALLENGE_HANDLED,
            status_code=200,
            body=response.body,
            media_type=response.media_type,
        )

    def _verify_signature(self, run: _Run) -> None:
        request, platform, config = run.request, run.platform, run.config
        verifier = get_signature_verifier(platform)

        valid = verifier.verify(request.body, request.headers, config.secret)
        if valid and not verifier.timestamp_is_fresh(request.headers, settings.WEBHOOK_SIGNATURE_TOLERANCE_SECONDS):
            logger.warning(
                "Webhook timestamp outside tolerance",
                extra_data={"platform": platform.value, "config_id": config.id, "client_ip": request.client_ip}
            )
            valid = False

        if not valid:
            logger.warning(
                "Webhook signature verification failed",
                extra_data={
                    "platform": platform.value,
                    "config_id": config.id,
                    "client_ip": request.client_ip,
                    "headers": redact_headers(request.headers),
                }
            )
            raise InvalidSignatureError(platform.value, config.id)

    @staticmethod
    def _validate(payload: Any, envelope: EventEnvelope) -> None:
        errors: dict[str, str] = {}
        if not isinstance(payload, dict):
            errors["payload"] = "must be a JSON object"
        if not envelope.event_type:
            errors["event_type"] = "is required"
        if errors:
            raise WebhookValidationError(errors)

    async def _enqueue(self, event_id: int, platform: Platform) -> None:
        """
        Hand the committed event to the worker.

        The event is already stored, so a queue outage is logged rather than
        answered with a 5xx that would make the platform redeliver.
        """
        try:
            await self.enqueue(event_id)
        except Exception as e:
            logger.error(
                "Failed to enqueue webhook event",
                extra_data={"event_id": event_id, "platform": platform.value, "error": str(e)},
                exc_info=True
            )

    async def _release_replay(self, run: _Run) -> None:
        if run.claimed_signature is None:
            return
        try:
            await self.gate.release_replay(run.platform.value, run.claimed_signature)
        except Exception as e:
            logger.error(
                "Failed to release replay claim",
                extra_data={"platform": run.platform.value, "error": str(e)},
                exc_info=True
            )
        run.claimed_signature = None

    async def _record_violation(self, run: _Run, error: WebhookException) -> None:
        if error.violation_type is None:
            return
        try:
            await self.gate.record_violation(
                error.violation_type,
                run.request.client_ip,
                platform=run.platform.value if run.platform else None,
                config_id=run.config.id if run.config else None,
                context={"reason": error.message, "status_code": error.status_code},
            )
        except Exception as e:
            # Bookkeeping failure must not change the answer to the sender
            logger.error(
                "Failed to record security violation",
                extra_data={"violation_type": error.violation_type, "error": str(e)},
                exc_info=True
            )

    def _finish(self, run: _Run, terminal: IngestionState, error: WebhookException) -> IngestionResult:
        if run.state != terminal:
            self._transition(run, terminal)
        return IngestionResult(
            state=terminal,
            status_code=error.status_code,
            body=error.to_dict(),
            headers={**run.response_headers, **error.headers},
        )

    async def _internal_error(self, run: _Run) -> IngestionResult:
        """500 answer. Rolls back partial work, frees the replay claim and books the failure on the config."""
        run.state = IngestionState.INTERNAL_ERROR
        await self._release_replay(run)
        try:
            await self.db.rollback()
            if run.config is not None:
                # Rollback expired the config, reload it before reading its columns
                await self.db.refresh(run.config)
                await self.metrics.record_error(run.config)
                await self.db.commit()
        except Exception as e:
            logger.error(
                "Failed to record ingestion error metric",
                extra_data={"error": str(e)},
                exc_info=True
            )
        return IngestionResult(
            state=IngestionState.INTERNAL_ERROR,
            status_code=500,
            body=INTERNAL_ERROR_BODY,
        )
