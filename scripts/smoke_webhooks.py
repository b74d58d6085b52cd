"""
Smoke tests against a running gateway.

Runs lightweight HTTP checks:
- GET /health
- GET /webhooks/{platform} handshake
- POST /webhooks/{platform} with a correctly signed sample delivery

Configure with environment variables:
    BASE_URL / PORT          where the app listens (default http://127.0.0.1:8000)
    SMOKE_PLATFORM           facebook | instagram | twitter | linkedin (default facebook)
    SMOKE_WEBHOOK_SECRET     secret of an active config for that platform
    SMOKE_VERIFY_TOKEN       verify_token of that config (Facebook / Instagram only)
    SMOKE_CONFIG_ID          optional, pins the config when several are active

Without SMOKE_WEBHOOK_SECRET only the health check runs.
"""

from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path

import httpx

# Allow running from any directory (e.g. `python scripts/smoke_webhooks.py`)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.domain.webhooks.challenges import verify_handshake_signature  # noqa: E402
from app.domain.webhooks.platforms import Platform  # noqa: E402
from app.domain.webhooks.signatures import hmac_sha256, sign_payload  # noqa: E402

logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def sample_payload(platform: Platform) -> dict:
    """A minimal delivery each platform would plausibly send"""
    now = int(time.time())
    if platform == Platform.FACEBOOK:
        return {
            "object": "page",
            "entry": [{
                "id": "smoke-page",
                "time": now,
                "changes": [{
                    "field": "feed",
                    "value": {"item": "status", "verb": "add", "post_id": f"smoke_{now}", "message": "smoke"},
                }],
            }],
        }
    if platform == Platform.INSTAGRAM:
        return {
            "object": "instagram",
            "entry": [{
                "id": "smoke-account",
                "time": now,
                "changes": [{"field": "mentions", "value": {"media_id": f"smoke_{now}"}}],
            }],
        }
    if platform == Platform.TWITTER:
        return {
            "for_user_id": "smoke-user",
            "tweet_create_events": [{
                "id_str": f"smoke_{now}",
                "text": "smoke",
                "user": {"id_str": "someone-else", "screen_name": "smoke"},
            }],
        }
    return {
        "commentUpdate": {"commentId": f"smoke_{now}", "updateType": "CREATED", "text": "smoke"},
        "updateKey": f"smoke_{now}",
    }


def handshake_params(platform: Platform, verify_token: str | None) -> dict[str, str]:
    if platform.is_meta:
        return {"hub.mode": "subscribe", "hub.verify_token": verify_token or "", "hub.challenge": "smoke-challenge"}
    if platform == Platform.TWITTER:
        return {"crc_token": "smoke-crc"}
    return {"challenge_code": "smoke-code"}


def check_handshake(platform: Platform, resp: httpx.Response, secret: str) -> None:
    """Raise unless the handshake answer is what the platform would accept"""
    _check_status(resp)
    if platform.is_meta:
        ok = resp.text == "smoke-challenge"
    elif platform == Platform.TWITTER:
        ok = verify_handshake_signature(secret, "smoke-crc", resp.json().get("response_token", ""))
    else:
        ok = resp.json().get("challengeResponse") == hmac_sha256(secret, b"smoke-code").hex()
    if not ok:
        raise RuntimeError(f"Handshake answer rejected: {(resp.text or '')[:500]}")


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="webhook-gateway-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    platform = Platform(os.environ.get("SMOKE_PLATFORM", "facebook").lower())
    secret = os.environ.get("SMOKE_WEBHOOK_SECRET")
    config_id = os.environ.get("SMOKE_CONFIG_ID")

    logger.info(
        "Starting smoke tests",
        extra_data={"base_url": base_url, "timeout_seconds": timeout, "platform": platform.value}
    )

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp)

        if not secret:
            logger.warning("SMOKE_WEBHOOK_SECRET not set, skipping webhook checks")
            return

        webhook_url = f"{base_url}/webhooks/{platform.value}"
        pinned = {"webhook_config_id": config_id} if config_id else {}

        logger.info("Checking handshake", extra_data={"url": webhook_url})
        params = {**handshake_params(platform, os.environ.get("SMOKE_VERIFY_TOKEN")), **pinned}
        check_handshake(platform, client.get(webhook_url, params=params), secret)

        body = json.dumps(sample_payload(platform)).encode("utf-8")
        header, signature = sign_payload(platform, body, secret)
        logger.info("Posting signed delivery", extra_data={"url": webhook_url})
        resp = client.post(
            webhook_url,
            params=pinned,
            content=body,
            headers={"Content-Type": "application/json", header: signature},
        )
        _check_status(resp)

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
