"""
Tests for the admin API - security gate operations, event retries, metrics.
"""
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.domain.services.metrics_service import DeliveryMetricsRecorder
from app.domain.services.webhook_event_service import WebhookEventService
from app.domain.webhooks.extractors import EventEnvelope
from app.domain.webhooks.security_gate import (
    VIOLATION_RATE_LIMIT,
    VIOLATION_SIGNATURE,
    SecurityGate,
)
from app.state_machine.states import WebhookEventStatus

ADMIN = "/api/admin"


async def _failed_event(db: AsyncSession, config, payload: dict):
    service = WebhookEventService(db)
    event = await service.create_event(config, EventEnvelope(event_type="post_created"), payload)
    await service.mark_processing(event)
    await service.mark_failed(event, "boom")
    await db.commit()
    return event


# ============================================================================
# Authentication
# ============================================================================


class TestAdminAuth:

    @pytest.mark.unit
    async def test_missing_key_401(self, test_client: httpx.AsyncClient, admin_headers):
        response = await test_client.get(f"{ADMIN}/security/health")

        assert response.status_code == 401

    @pytest.mark.unit
    async def test_wrong_key_403(self, test_client: httpx.AsyncClient, admin_headers):
        response = await test_client.get(
            f"{ADMIN}/security/health", headers={"X-Admin-API-Key": "not-the-key"}
        )

        assert response.status_code == 403

    @pytest.mark.unit
    async def test_closed_without_configured_key(self, test_client: httpx.AsyncClient):
        with patch.object(settings, "ADMIN_API_KEY", ""):
            response = await test_client.get(
                f"{ADMIN}/security/health", headers={"X-Admin-API-Key": "anything"}
            )

        assert response.status_code == 403


# ============================================================================
# Security gate
# ============================================================================


class TestSecurityAdmin:

    @pytest.mark.unit
    async def test_security_health(self, test_client: httpx.AsyncClient, admin_headers):
        response = await test_client.get(f"{ADMIN}/security/health", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["redis"] == "ok"
        assert "policy" in data

    @pytest.mark.unit
    async def test_violation_stats(
        self, test_client: httpx.AsyncClient, admin_headers, security_gate: SecurityGate
    ):
        await security_gate.record_violation(VIOLATION_SIGNATURE, "203.0.113.9", "facebook")
        await security_gate.record_violation(VIOLATION_SIGNATURE, "203.0.113.9", "facebook")
        await security_gate.record_violation(VIOLATION_RATE_LIMIT, "203.0.113.9", "twitter")

        response = await test_client.get(f"{ADMIN}/security/violations", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total_violations"] == 3
        assert data["violations_by_type"][VIOLATION_SIGNATURE] == 2

    @pytest.mark.unit
    async def test_clear_violations_for_ip(
        self, test_client: httpx.AsyncClient, admin_headers, security_gate: SecurityGate
    ):
        await security_gate.record_violation(VIOLATION_SIGNATURE, "203.0.113.9", "facebook")
        await security_gate.record_violation(VIOLATION_SIGNATURE, "198.51.100.1", "facebook")

        response = await test_client.delete(
            f"{ADMIN}/security/violations", params={"ip": "203.0.113.9"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["keys_cleared"] == 2  # counter plus the per-IP total
        stats = await security_gate.get_violation_stats()
        assert stats["total_violations"] == 1

    @pytest.mark.unit
    async def test_clear_unknown_violation_type_422(self, test_client: httpx.AsyncClient, admin_headers):
        response = await test_client.delete(
            f"{ADMIN}/security/violations", params={"violation_type": "nope"}, headers=admin_headers
        )

        assert response.status_code == 422

    @pytest.mark.unit
    async def test_block_list_unblock(
        self, test_client: httpx.AsyncClient, admin_headers, security_gate: SecurityGate
    ):
        response = await test_client.post(
            f"{ADMIN}/security/blocked-ips",
            json={"ip": "203.0.113.9", "seconds": 120, "reason": "abuse"},
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert await security_gate.is_ip_blocked("203.0.113.9")

        listed = await test_client.get(f"{ADMIN}/security/blocked-ips", headers=admin_headers)
        assert listed.status_code == 200
        [entry] = listed.json()
        assert entry["ip"] == "203.0.113.9"
        assert entry["reason"] == "abuse"
        assert entry["remaining_seconds"] == 120

        removed = await test_client.delete(f"{ADMIN}/security/blocked-ips/203.0.113.9", headers=admin_headers)
        assert removed.status_code == 200
        assert removed.json() == {"ip": "203.0.113.9", "blocked": False}
        assert not await security_gate.is_ip_blocked("203.0.113.9")

    @pytest.mark.unit
    async def test_block_defaults_to_auto_block_duration(
        self, test_client: httpx.AsyncClient, admin_headers, fake_redis
    ):
        await test_client.post(f"{ADMIN}/security/blocked-ips", json={"ip": "203.0.113.9"}, headers=admin_headers)

        assert await fake_redis.ttl("blocked_ip:203.0.113.9") == settings.WEBHOOK_AUTO_BLOCK_SECONDS

    @pytest.mark.unit
    async def test_unblock_unknown_ip_404(self, test_client: httpx.AsyncClient, admin_headers):
        response = await test_client.delete(f"{ADMIN}/security/blocked-ips/192.0.2.1", headers=admin_headers)

        assert response.status_code == 404


# ============================================================================
# Webhook events
# ============================================================================


class TestEventAdmin:

    @pytest.mark.unit
    async def test_event_stats(
        self, test_client: httpx.AsyncClient, admin_headers, db_session: AsyncSession,
        config_factory, facebook_feed_payload,
    ):
        config = await config_factory()
        await _failed_event(db_session, config, facebook_feed_payload)

        response = await test_client.get(
            f"{ADMIN}/webhooks/events/stats", params={"config_id": config.id}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total_events"] == 1
        assert data["by_status"]["failed"] == 1
        assert data["failure_rate"] == 100.0

    @pytest.mark.unit
    async def test_retry_one_failed_event(
        self, test_client: httpx.AsyncClient, admin_headers, db_session: AsyncSession,
        config_factory, facebook_feed_payload, enqueued: list[int],
    ):
        config = await config_factory()
        event = await _failed_event(db_session, config, facebook_feed_payload)

        response = await test_client.post(f"{ADMIN}/webhooks/events/{event.id}/retry", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {
            "event_id": event.id,
            "previous_status": "failed",
            "new_status": "pending",
            "retry_count": 1,
        }
        assert enqueued == [event.id]
        assert event.status == WebhookEventStatus.PENDING

    @pytest.mark.unit
    async def test_retry_requires_failed_status(
        self, test_client: httpx.AsyncClient, admin_headers, db_session: AsyncSession,
        config_factory, facebook_feed_payload, enqueued: list[int],
    ):
        config = await config_factory()
        event = await WebhookEventService(db_session).create_event(
            config, EventEnvelope(event_type="post_created"), facebook_feed_payload
        )
        await db_session.commit()

        response = await test_client.post(f"{ADMIN}/webhooks/events/{event.id}/retry", headers=admin_headers)

        assert response.status_code == 400
        assert enqueued == []

    @pytest.mark.unit
    async def test_retry_unknown_event_404(self, test_client: httpx.AsyncClient, admin_headers):
        response = await test_client.post(f"{ADMIN}/webhooks/events/999/retry", headers=admin_headers)

        assert response.status_code == 404

    @pytest.mark.unit
    async def test_retry_failed_batch_skips_recent(
        self, test_client: httpx.AsyncClient, admin_headers, db_session: AsyncSession,
        config_factory, facebook_feed_payload, enqueued: list[int],
    ):
        config = await config_factory()
        await _failed_event(db_session, config, facebook_feed_payload)

        response = await test_client.post(f"{ADMIN}/webhooks/events/retry-failed", headers=admin_headers)

        # Just failed, so still inside the idle window
        assert response.status_code == 200
        assert response.json() == {"requeued": 0, "event_ids": []}
        assert enqueued == []


# ============================================================================
# Metrics and circuit breakers
# ============================================================================


class TestMetricsAdmin:

    @pytest.mark.unit
    async def test_config_metrics(
        self, test_client: httpx.AsyncClient, admin_headers, db_session: AsyncSession, config_factory,
    ):
        config = await config_factory()
        recorder = DeliveryMetricsRecorder(db_session)
        await recorder.record_received(config, "post_created")
        await recorder.record_outcome(config, "post_created", WebhookEventStatus.PROCESSED, 12.0)
        await db_session.commit()

        response = await test_client.get(
            f"{ADMIN}/webhooks/configs/{config.id}/metrics", params={"days": 1}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total_received"] == 1
        assert data["success_rate"] == 100.0

    @pytest.mark.unit
    async def test_metrics_for_unknown_config_404(self, test_client: httpx.AsyncClient, admin_headers):
        response = await test_client.get(f"{ADMIN}/webhooks/configs/999/metrics", headers=admin_headers)

        assert response.status_code == 404

    @pytest.mark.unit
    async def test_circuit_breakers_listed(self, test_client: httpx.AsyncClient, admin_headers):
        response = await test_client.get(f"{ADMIN}/circuit-breakers", headers=admin_headers)

        assert response.status_code == 200
        services = {item["service"]: item for item in response.json()}
        assert services["security_alerts"]["state"] == "closed"
