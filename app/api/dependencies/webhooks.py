"""
Dependencies for the webhook endpoints.

Both are overridable through app.dependency_overrides, which is how the tests
swap in a FakeRedis-backed gate and a recording enqueuer.
"""
from typing import Awaitable, Callable

from app.core.redis_client import get_redis
from app.domain.services.alert_service import send_security_alert
from app.domain.webhooks.security_gate import SecurityGate, SecurityPolicy


async def get_security_gate() -> SecurityGate:
    """Gate bound to the shared Redis client and the current settings"""
    redis = await get_redis()
    return SecurityGate(redis, SecurityPolicy.from_settings(), alert_sender=send_security_alert)


def get_event_enqueuer() -> Callable[[int], Awaitable[None]]:
    """Coroutine function that hands a committed event id to the Celery worker"""
    from app.workers.tasks import enqueue_webhook_event_async

    return enqueue_webhook_event_async
