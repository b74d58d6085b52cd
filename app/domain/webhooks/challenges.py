"""
Subscription handshake (verification challenge) handling.

Platforms prove endpoint ownership with a GET before delivering events:

    Facebook / Instagram   hub.mode=subscribe & hub.verify_token & hub.challenge
                           -> echo hub.challenge as text/plain
    Twitter                crc_token -> {"response_token": "sha256=" + base64(HMAC(secret, token))}
    LinkedIn               challenge_code -> {"challengeResponse": hex(HMAC(secret, code))}

Handshakes carry no body signature, so they are answered before the security
gate and the signature check ever run.
"""
import base64
from dataclasses import dataclass
from typing import Any, Mapping

from app.core.exceptions import ChallengeVerificationError
from app.db.models.webhook_config import WebhookConfig
from app.domain.webhooks.platforms import Platform
from app.domain.webhooks.signatures import constant_time_equals, hmac_sha256

# Any of these marks a request as a handshake rather than an event delivery
CHALLENGE_PARAMS = ("hub_challenge", "hub.challenge", "challenge", "crc_token", "challenge_code")

# PHP-style frontends rewrite dots to underscores, so both spellings are accepted
_META_MODE = ("hub.mode", "hub_mode")
_META_TOKEN = ("hub.verify_token", "hub_verify_token")
_META_CHALLENGE = ("hub.challenge", "hub_challenge", "challenge")


@dataclass(frozen=True)
class ChallengeResponse:
    """Body to send back for a successful handshake"""

    media_type: str
    body: Any


def is_challenge(query: Mapping[str, str]) -> bool:
    return any(name in query for name in CHALLENGE_PARAMS)


def _first_param(query: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = query.get(name)
        # Blank counts as absent, so an empty hub.challenge is rejected with 403 rather than echoed
        if value:
            return value
    return None


def _answer_meta(platform: Platform, query: Mapping[str, str], config: WebhookConfig) -> ChallengeResponse:
    mode = _first_param(query, _META_MODE)
    token = _first_param(query, _META_TOKEN)
    challenge = _first_param(query, _META_CHALLENGE)

    expected = (config.metadata_ or {}).get("verify_token")
    if (
        mode != "subscribe"
        or not token
        or challenge is None
        or not isinstance(expected, str)
        or not expected
        or not constant_time_equals(expected, token)
    ):
        raise ChallengeVerificationError(platform.value)

    return ChallengeResponse(media_type="text/plain", body=challenge)


def _answer_twitter(platform: Platform, query: Mapping[str, str], config: WebhookConfig) -> ChallengeResponse:
    crc_token = query.get("crc_token")
    if not crc_token or not config.secret:
        raise ChallengeVerificationError(platform.value)

    digest = hmac_sha256(config.secret, crc_token.encode("utf-8"))
    return ChallengeResponse(
        media_type="application/json",
        body={"response_token": "sha256=" + base64.b64encode(digest).decode("ascii")},
    )


def _answer_linkedin(platform: Platform, query: Mapping[str, str], config: WebhookConfig) -> ChallengeResponse:
    challenge_code = query.get("challenge_code")
    if not challenge_code or not config.secret:
        raise ChallengeVerificationError(platform.value)

    digest = hmac_sha256(config.secret, challenge_code.encode("utf-8"))
    return ChallengeResponse(
        media_type="application/json",
        body={"challengeResponse": digest.hex()},
    )


_HANDLERS = {
    Platform.FACEBOOK: _answer_meta,
    Platform.INSTAGRAM: _answer_meta,
    Platform.TWITTER: _answer_twitter,
    Platform.LINKEDIN: _answer_linkedin,
}


def answer_challenge(
    platform: Platform,
    query: Mapping[str, str],
    config: WebhookConfig,
) -> ChallengeResponse:
    """
    Compute the handshake response for a resolved config.

    Pure with respect to stored state: the caller records last_verified_at.

    Raises:
        ChallengeVerificationError: token mismatch or platform parameters missing
    """
    return _HANDLERS[platform](platform, query, config)


def verify_handshake_signature(secret: str, token: str, provided: str) -> bool:
    """Check a computed Twitter-style response token, used by the smoke script"""
    expected = "sha256=" + base64.b64encode(hmac_sha256(secret, token.encode("utf-8"))).decode("ascii")
    return constant_time_equals(expected, provided)
