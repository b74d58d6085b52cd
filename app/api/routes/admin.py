"""
Admin Endpoints - security and delivery operations without direct DB / Redis access.

1. Security gate: blocked IPs, violation counters, gate health
2. Webhook events: processing stats and manual retry of failed events
3. Delivery metrics per config
4. Circuit breaker status
"""
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.webhooks import get_event_enqueuer, get_security_gate
from app.core.circuit_breaker import CircuitBreaker, get_security_alert_circuit_breaker
from app.core.exceptions import InvalidStateTransitionError
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.metrics_service import DeliveryMetricsRecorder
from app.domain.services.webhook_config_service import WebhookConfigService
from app.domain.services.webhook_event_service import WebhookEventService
from app.domain.webhooks.security_gate import VIOLATION_TYPES, SecurityGate
from app.state_machine.states import WebhookEventStatus

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class BlockIpRequest(BaseModel):
    ip: str = Field(min_length=1, max_length=64)
    seconds: int | None = Field(default=None, ge=1, description="Defaults to WEBHOOK_AUTO_BLOCK_SECONDS")
    reason: str = "manual"


class BlockedIpResponse(BaseModel):
    ip: str
    reason: str | None
    remaining_seconds: int | None
    expires_at: datetime | None


class ClearViolationsResponse(BaseModel):
    keys_cleared: int


class RetryFailedResponse(BaseModel):
    requeued: int
    event_ids: list[int]


class EventRetryResponse(BaseModel):
    event_id: int
    previous_status: str
    new_status: str
    retry_count: int


class CircuitBreakerStatusResponse(BaseModel):
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    failure_threshold: int
    retry_after_seconds: float


# ─── 1. Security gate ───────────────────────────────────────────────────────

@router.get(
    "/security/health",
    summary="Security gate health",
    description="Redis reachability plus a summary of the active security policy.",
    responses=_AUTH_RESPONSES,
)
async def security_health(
    gate: SecurityGate = Depends(get_security_gate),
) -> dict[str, Any]:
    return await gate.health_check()


@router.get(
    "/security/violations",
    summary="Live violation counters",
    responses=_AUTH_RESPONSES,
)
async def violation_stats(
    gate: SecurityGate = Depends(get_security_gate),
) -> dict[str, Any]:
    return await gate.get_violation_stats()


@router.delete(
    "/security/violations",
    response_model=ClearViolationsResponse,
    summary="Clear violation counters",
    description="Optionally narrowed to one IP and / or one violation type.",
    responses={**_AUTH_RESPONSES, 422: {"description": "Unknown violation type"}},
)
async def clear_violations(
    gate: SecurityGate = Depends(get_security_gate),
    ip: Optional[str] = Query(default=None),
    violation_type: Optional[str] = Query(default=None, description=", ".join(VIOLATION_TYPES)),
) -> ClearViolationsResponse:
    if violation_type is not None and violation_type not in VIOLATION_TYPES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"violation_type must be one of: {', '.join(VIOLATION_TYPES)}",
        )
    cleared = await gate.clear_violations(ip, violation_type)
    return ClearViolationsResponse(keys_cleared=cleared)


@router.get(
    "/security/blocked-ips",
    response_model=list[BlockedIpResponse],
    summary="Blocked IP addresses",
    responses=_AUTH_RESPONSES,
)
async def blocked_ips(
    gate: SecurityGate = Depends(get_security_gate),
) -> list[BlockedIpResponse]:
    return [BlockedIpResponse(**item) for item in await gate.get_blocked_ips()]


@router.post(
    "/security/blocked-ips",
    status_code=status.HTTP_201_CREATED,
    summary="Block an IP address",
    responses=_AUTH_RESPONSES,
)
async def block_ip(
    body: BlockIpRequest,
    gate: SecurityGate = Depends(get_security_gate),
) -> dict[str, Any]:
    await gate.block_ip(body.ip, body.seconds, body.reason)
    return {"ip": body.ip, "blocked": True}


@router.delete(
    "/security/blocked-ips/{ip}",
    summary="Unblock an IP address",
    responses={**_AUTH_RESPONSES, 404: {"description": "IP is not blocked"}},
)
async def unblock_ip(
    ip: str,
    gate: SecurityGate = Depends(get_security_gate),
) -> dict[str, Any]:
    if not await gate.unblock_ip(ip):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"IP {ip} is not blocked",
        )
    return {"ip": ip, "blocked": False}


# ─── 2. Webhook events ──────────────────────────────────────────────────────

@router.get(
    "/webhooks/events/stats",
    summary="Event processing stats",
    description="Status counts and failure rate for events received in the last `hours`.",
    responses=_AUTH_RESPONSES,
)
async def event_stats(
    db: AsyncSession = Depends(get_db),
    config_id: Optional[int] = Query(default=None, description="Limit to one webhook config"),
    hours: int = Query(default=24, ge=1, le=24 * 30),
) -> dict[str, Any]:
    return await WebhookEventService(db).get_processing_stats(config_id, hours)


@router.post(
    "/webhooks/events/retry-failed",
    response_model=RetryFailedResponse,
    summary="Requeue failed events",
    description="Failed events with retries left go back to pending and are enqueued again.",
    responses=_AUTH_RESPONSES,
)
async def retry_failed_events(
    db: AsyncSession = Depends(get_db),
    enqueue: Callable[[int], Awaitable[None]] = Depends(get_event_enqueuer),
    limit: int = Query(default=100, ge=1, le=1000),
) -> RetryFailedResponse:
    event_ids = await WebhookEventService(db).requeue_failed(limit)
    for event_id in event_ids:
        await enqueue(event_id)
    return RetryFailedResponse(requeued=len(event_ids), event_ids=event_ids)


@router.post(
    "/webhooks/events/{event_id}/retry",
    response_model=EventRetryResponse,
    summary="Retry one failed event",
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "Event is not in failed status"},
        404: {"description": "Event not found"},
    },
)
async def retry_event(
    event_id: int,
    db: AsyncSession = Depends(get_db),
    enqueue: Callable[[int], Awaitable[None]] = Depends(get_event_enqueuer),
) -> EventRetryResponse:
    service = WebhookEventService(db)
    event = await service.get_event(event_id, for_update=True)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook event {event_id} not found",
        )

    previous_status = WebhookEventStatus(event.status).value
    if event.status != WebhookEventStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Only failed events can be retried, current status: {previous_status}",
        )

    try:
        await service.transition(event, WebhookEventStatus.PENDING)
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    await db.commit()
    await enqueue(event.id)

    logger.info(
        "Manual retry of webhook event",
        extra_data={"event_id": event_id, "previous_status": previous_status},
    )
    return EventRetryResponse(
        event_id=event.id,
        previous_status=previous_status,
        new_status=WebhookEventStatus.PENDING.value,
        retry_count=event.retry_count,
    )


# ─── 3. Delivery metrics ────────────────────────────────────────────────────

@router.get(
    "/webhooks/configs/{config_id}/metrics",
    summary="Delivery metric summary for a config",
    responses={**_AUTH_RESPONSES, 404: {"description": "Config not found"}},
)
async def config_metrics(
    config_id: int,
    db: AsyncSession = Depends(get_db),
    days: int = Query(default=7, ge=1, le=90),
) -> dict[str, Any]:
    if await WebhookConfigService(db).get(config_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook config {config_id} not found",
        )
    return await DeliveryMetricsRecorder(db).get_summary(config_id, days)


# ─── 4. Circuit breakers ────────────────────────────────────────────────────

@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="Circuit breaker status",
    responses=_AUTH_RESPONSES,
)
async def circuit_breakers() -> list[CircuitBreakerStatusResponse]:
    # Register the known breakers so they are listed before their first call
    get_security_alert_circuit_breaker()
    return [CircuitBreakerStatusResponse(**item) for item in CircuitBreaker.all_statuses()]
