"""
Health check service - dependency checks (DB, Redis, Celery broker, alert channel).

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: every dependency the ingestion path needs
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import get_security_alert_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Sanitised error strings, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"
_ERROR_ALERTS = "error: alert_channel_open"


async def _check_db() -> str:
    """Cheap query against the database."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """PING the replay / rate-limit Redis."""
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """PING the Celery broker. Events are only processed if it is reachable."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


def _check_alert_channel() -> str:
    """An open breaker means alerts are currently only logged."""
    if not settings.WEBHOOK_ALERT_URL:
        return _CHECK_OK
    if get_security_alert_circuit_breaker().is_open:
        return _ERROR_ALERTS
    return _CHECK_OK


async def check_readiness() -> dict[str, Any]:
    """
    Readiness check over every dependency.

    Returns:
        {"status": "healthy" | "degraded", "db": ..., "redis": ..., "celery": ..., "alerts": ...}
        where each check is "ok" or "error: ...".
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
        "alerts": _check_alert_channel(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
