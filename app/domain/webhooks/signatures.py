"""
Per-platform webhook signature verification.

Every platform signs the raw request body with HMAC-SHA256 keyed by the
config's shared secret, but each uses its own header and encoding:

    Facebook / Instagram   X-Hub-Signature-256            sha256=<hex>
    Twitter                X-Twitter-Webhooks-Signature   sha256=<base64> (bare hex accepted)
    LinkedIn               X-LI-Signature                 <hex>

Comparisons always go through hmac.compare_digest, and a config without a
secret never verifies.
"""
import base64
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Mapping

from app.domain.webhooks.platforms import Platform

SIGNATURE_HEADERS = (
    "X-Hub-Signature-256",
    "X-Hub-Signature",
    "X-LI-Signature",
    "X-Twitter-Webhooks-Signature",
)

TWITTER_TIMESTAMP_HEADER = "X-Twitter-Webhooks-Timestamp"
GENERIC_TIMESTAMP_HEADER = "X-Webhook-Timestamp"

_SHA256_PREFIX = "sha256="


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup over any mapping"""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def hmac_sha256(secret: str, message: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def constant_time_equals(expected: str, provided: str) -> bool:
    """compare_digest over UTF-8 bytes, header values may hold non-ASCII text"""
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def extract_signature(headers: Mapping[str, str]) -> str | None:
    """First signature header present on the request, stored with the event"""
    for name in SIGNATURE_HEADERS:
        value = get_header(headers, name)
        if value:
            return value
    return None


def _parse_timestamp(raw: str) -> float | None:
    raw = raw.strip()
    try:
        return float(raw)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class SignatureVerifier(ABC):
    """Strategy interface: one implementation per platform"""

    header_name: str
    timestamp_header: str = GENERIC_TIMESTAMP_HEADER

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
        """True only when the signature header matches the body under `secret`"""
        if not secret:
            return False
        provided = get_header(headers, self.header_name)
        if not provided:
            return False
        return self._matches(raw_body, provided.strip(), secret)

    @abstractmethod
    def _matches(self, raw_body: bytes, provided: str, secret: str) -> bool:
        ...

    @abstractmethod
    def sign(self, raw_body: bytes, secret: str) -> str:
        """Header value the platform would send for this body"""

    def timestamp_is_fresh(
        self,
        headers: Mapping[str, str],
        tolerance_seconds: int,
        now: float | None = None,
    ) -> bool:
        """
        Check the optional timestamp header against the tolerance window.

        Platforms that send no timestamp pass. An unparseable one fails.
        """
        raw = get_header(headers, self.timestamp_header)
        if not raw:
            return True
        request_time = _parse_timestamp(raw)
        if request_time is None:
            return False
        current = time.time() if now is None else now
        return abs(current - request_time) <= tolerance_seconds


class MetaSignatureVerifier(SignatureVerifier):
    """Facebook and Instagram: X-Hub-Signature-256: sha256=<hex>"""

    header_name = "X-Hub-Signature-256"

    def _matches(self, raw_body: bytes, provided: str, secret: str) -> bool:
        parts = provided.split("=")
        if len(parts) != 2 or parts[0] != "sha256":
            return False
        expected = hmac_sha256(secret, raw_body).hex()
        return constant_time_equals(expected, parts[1].lower())

    def sign(self, raw_body: bytes, secret: str) -> str:
        return _SHA256_PREFIX + hmac_sha256(secret, raw_body).hex()


class TwitterSignatureVerifier(SignatureVerifier):
    """Twitter: X-Twitter-Webhooks-Signature: sha256=<base64>, or a bare hex digest"""

    header_name = "X-Twitter-Webhooks-Signature"
    timestamp_header = TWITTER_TIMESTAMP_HEADER

    def _matches(self, raw_body: bytes, provided: str, secret: str) -> bool:
        digest = hmac_sha256(secret, raw_body)
        if provided.startswith(_SHA256_PREFIX):
            expected = base64.b64encode(digest).decode("ascii")
            return constant_time_equals(expected, provided[len(_SHA256_PREFIX):])
        return constant_time_equals(digest.hex(), provided.lower())

    def sign(self, raw_body: bytes, secret: str) -> str:
        return _SHA256_PREFIX + base64.b64encode(hmac_sha256(secret, raw_body)).decode("ascii")


class LinkedInSignatureVerifier(SignatureVerifier):
    """LinkedIn: X-LI-Signature: <hex>"""

    header_name = "X-LI-Signature"

    def _matches(self, raw_body: bytes, provided: str, secret: str) -> bool:
        expected = hmac_sha256(secret, raw_body).hex()
        return constant_time_equals(expected, provided.lower())

    def sign(self, raw_body: bytes, secret: str) -> str:
        return hmac_sha256(secret, raw_body).hex()


_VERIFIERS: dict[Platform, SignatureVerifier] = {
    Platform.FACEBOOK: MetaSignatureVerifier(),
    Platform.INSTAGRAM: MetaSignatureVerifier(),
    Platform.TWITTER: TwitterSignatureVerifier(),
    Platform.LINKEDIN: LinkedInSignatureVerifier(),
}


def get_signature_verifier(platform: Platform) -> SignatureVerifier:
    """Verifier for a platform. Instances are stateless and shared."""
    return _VERIFIERS[Platform(platform)]


def sign_payload(platform: Platform, raw_body: bytes, secret: str) -> tuple[str, str]:
    """(header name, header value) a platform would attach to `raw_body`"""
    verifier = get_signature_verifier(platform)
    return verifier.header_name, verifier.sign(raw_body, secret)
