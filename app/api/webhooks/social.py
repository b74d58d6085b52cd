"""
Social Webhook Endpoints - Facebook, Instagram, Twitter and LinkedIn

    GET  /webhooks/{platform}   subscription handshake
    POST /webhooks/{platform}   event delivery

Both routes are thin: they adapt the HTTP request for the ingestion pipeline
and render its result. Every decision lives in WebhookIngestionPipeline.
"""
from typing import Awaitable, Callable

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhooks import get_event_enqueuer, get_security_gate
from app.core.logging import get_correlation_id, get_logger
from app.db.database import get_db
from app.domain.webhooks.challenges import is_challenge
from app.domain.webhooks.ingestion import IngestionResult, WebhookIngestionPipeline, WebhookRequest
from app.domain.webhooks.security_gate import SecurityGate, client_ip_from

logger = get_logger(__name__)

router = APIRouter()

_HANDSHAKE_RESPONSES = {
    200: {"description": "Challenge echoed (text/plain for Meta, JSON for Twitter / LinkedIn)"},
    400: {"description": "GET without challenge parameters"},
    403: {"description": "Verify token mismatch or missing challenge"},
    404: {"description": "Unsupported platform or no active config"},
}

_DELIVERY_RESPONSES = {
    200: {
        "description": "Event accepted and queued",
        "content": {"application/json": {"example": {"status": "success", "message": "Webhook received"}}},
    },
    401: {"description": "Invalid signature or replayed delivery"},
    403: {"description": "Source IP blocked or outside the platform ranges"},
    404: {"description": "Unsupported platform or no active config"},
    422: {"description": "Payload too large, unsupported content type or missing event type"},
    429: {"description": "Rate limit exceeded, see Retry-After"},
    500: {"description": "Internal server error"},
}


async def _to_webhook_request(request: Request, platform: str) -> WebhookRequest:
    headers = dict(request.headers)
    peer = request.client.host if request.client else None
    return WebhookRequest(
        platform=platform,
        headers=headers,
        query=dict(request.query_params),
        body=await request.body(),
        client_ip=client_ip_from(headers, peer),
        content_type=request.headers.get("content-type"),
    )


def _render(result: IngestionResult) -> Response:
    headers = {**result.headers, "X-Correlation-ID": get_correlation_id()}
    if result.media_type == "application/json":
        return JSONResponse(content=result.body, status_code=result.status_code, headers=headers)
    return Response(
        content=str(result.body),
        status_code=result.status_code,
        media_type=result.media_type,
        headers=headers,
    )


@router.get(
    "/{platform}",
    summary="Subscription handshake",
    description=(
        "Answers the platform's ownership challenge: hub.challenge for Facebook / Instagram, "
        "crc_token for Twitter, challenge_code for LinkedIn."
    ),
    responses=_HANDSHAKE_RESPONSES,
)
async def verify_webhook(
    platform: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: SecurityGate = Depends(get_security_gate),
    enqueue: Callable[[int], Awaitable[None]] = Depends(get_event_enqueuer),
) -> Response:
    if not is_challenge(request.query_params):
        return JSONResponse(
            status_code=400,
            content={"status": "error", "message": "Invalid verification request"},
            headers={"X-Correlation-ID": get_correlation_id()},
        )

    pipeline = WebhookIngestionPipeline(db, gate, enqueue)
    result = await pipeline.handle(await _to_webhook_request(request, platform))
    return _render(result)


@router.post(
    "/{platform}",
    summary="Receive a webhook delivery",
    description=(
        "Verifies, screens and stores one delivery, then acknowledges it. "
        "Normalisation happens asynchronously in the worker."
    ),
    responses=_DELIVERY_RESPONSES,
)
async def receive_webhook(
    platform: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: SecurityGate = Depends(get_security_gate),
    enqueue: Callable[[int], Awaitable[None]] = Depends(get_event_enqueuer),
) -> Response:
    pipeline = WebhookIngestionPipeline(db, gate, enqueue)
    result = await pipeline.handle(await _to_webhook_request(request, platform))
    return _render(result)
