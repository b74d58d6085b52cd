"""
Alert Service - security alerts for webhook abuse.

SecurityGate calls send_security_alert() when a violation counter reaches its
alert threshold. Every alert is logged at critical level. When
WEBHOOK_ALERT_URL is configured, the alert is also POSTed there as JSON,
guarded by the security_alerts circuit breaker.

Alerts for the same (violation type, client IP) are suppressed for
WEBHOOK_ALERT_SUPPRESSION_SECONDS, so a sustained attack produces one alert
per window rather than one per request.
"""
import hashlib
from datetime import datetime, timezone
from typing import Any

import httpx

from app.core.circuit_breaker import get_security_alert_circuit_breaker
from app.core.config import settings
from app.core.exceptions import AlertDeliveryError
from app.core.logging import get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)

ALERT_SUPPRESSION_PREFIX = "security_alert_sent"
ALERT_TIMEOUT_SECONDS = 10.0


def _suppression_key(violation_type: str, ip: str | None) -> str:
    ip_hash = hashlib.md5((ip or "unknown").encode("utf-8")).hexdigest()
    return f"{ALERT_SUPPRESSION_PREFIX}:{violation_type}:{ip_hash}"


def build_alert_payload(violation_type: str, count: int, context: dict[str, Any]) -> dict[str, Any]:
    """JSON body for the alert endpoint. Slack-compatible through the `text` field."""
    severity = context.get("severity", "low")
    client_ip = context.get("client_ip", "unknown")
    return {
        "text": (
            f"[{str(severity).upper()}] {settings.APP_NAME}: {violation_type} "
            f"x{count} from {client_ip}"
        ),
        "violation_type": violation_type,
        "count": count,
        "severity": severity,
        "context": context,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _post_alert(payload: dict[str, Any]) -> None:
    async with httpx.AsyncClient() as client:
        response = await client.post(settings.WEBHOOK_ALERT_URL, json=payload, timeout=ALERT_TIMEOUT_SECONDS)
        if response.status_code >= 300:
            raise AlertDeliveryError.from_response(response)


async def send_security_alert(violation_type: str, count: int, context: dict[str, Any]) -> bool:
    """
    Raise a security alert unless one was already sent in this window.

    Returns True when the alert was raised. Never raises: delivery problems
    are logged and swallowed so that alerting cannot break ingestion.
    """
    try:
        redis = await get_redis()
        first_in_window = await redis.set(
            _suppression_key(violation_type, context.get("client_ip")),
            "1",
            nx=True,
            ex=settings.WEBHOOK_ALERT_SUPPRESSION_SECONDS,
        )
    except Exception as e:
        logger.error(
            "Alert suppression check failed",
            extra_data={"violation_type": violation_type, "error": str(e)},
            exc_info=True
        )
        first_in_window = True

    if not first_in_window:
        logger.debug(
            "Security alert suppressed",
            extra_data={"violation_type": violation_type, "count": count}
        )
        return False

    payload = build_alert_payload(violation_type, count, context)
    logger.critical(
        f"SECURITY ALERT: {violation_type}",
        extra_data={"violation_type": violation_type, "count": count, **context}
    )

    if not settings.WEBHOOK_ALERT_URL:
        return True

    circuit_breaker = get_security_alert_circuit_breaker()
    try:
        await circuit_breaker.execute(_post_alert, payload)
    except Exception as e:
        logger.error(
            "Security alert delivery failed",
            extra_data={"violation_type": violation_type, "error": str(e)},
            exc_info=True
        )
    return True
