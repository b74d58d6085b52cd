"""
Security Gate - request screening in front of the webhook pipeline.

Checks run in a fixed order and the first failure wins:

    1. IP block list           403
    2. payload size            422
    3. content type            422
    4. IP allow-list           403 in strict mode, logged otherwise
    5. rate limits             429 with Retry-After and X-RateLimit-* headers

Replay detection runs separately, after the signature is known to be valid.
All shared state lives in Redis and is only touched through atomic
primitives (INCR + EXPIRE in one pipeline, SET NX EX), so concurrent
handlers never race on a check-then-act.
"""
import hashlib
import ipaddress
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping

from app.core.config import Settings, settings as app_settings
from app.core.exceptions import (
    IpBlockedError,
    IpNotAllowedError,
    PayloadTooLargeError,
    RateLimitExceededError,
    ReplayDetectedError,
    UnsupportedContentTypeError,
)
from app.core.logging import get_logger, violation_log_level
from app.domain.webhooks.signatures import get_header

logger = get_logger(__name__)

# ──────────────────────────────────────────────
#  Redis keys
# ──────────────────────────────────────────────

BLOCKED_IP_PREFIX = "blocked_ip"
REPLAY_PREFIX = "webhook_replay"
RATE_LIMIT_PREFIX = "webhook_rate_limit"
BURST_PREFIX = "webhook_burst"
GLOBAL_PREFIX = "webhook_global"
VIOLATION_PREFIX = "security_violation"
IP_VIOLATION_TOTAL_PREFIX = "security_violation_total"

# Every key family the gate writes, used by the orphan cleanup task
SECURITY_KEY_PATTERNS = (
    f"{BLOCKED_IP_PREFIX}:*",
    f"{REPLAY_PREFIX}:*",
    f"{RATE_LIMIT_PREFIX}:*",
    f"{BURST_PREFIX}:*",
    f"{GLOBAL_PREFIX}:*",
    f"{VIOLATION_PREFIX}:*",
    f"{IP_VIOLATION_TOTAL_PREFIX}:*",
)

MINUTE_SECONDS = 60
HOUR_SECONDS = 3600

# ──────────────────────────────────────────────
#  Violations
# ──────────────────────────────────────────────

VIOLATION_SIGNATURE = "signature_failure"
VIOLATION_RATE_LIMIT = "rate_limit_violation"
VIOLATION_IP = "ip_violation"
VIOLATION_VALIDATION = "validation_error"
VIOLATION_SUSPICIOUS = "suspicious_activity"

VIOLATION_TYPES = (
    VIOLATION_SIGNATURE,
    VIOLATION_RATE_LIMIT,
    VIOLATION_IP,
    VIOLATION_VALIDATION,
    VIOLATION_SUSPICIOUS,
)

# Counting window per violation type, in seconds
VIOLATION_WINDOWS: dict[str, int] = {
    VIOLATION_SIGNATURE: 60,
    VIOLATION_RATE_LIMIT: 60,
    VIOLATION_IP: 60,
    VIOLATION_VALIDATION: 3600,
    VIOLATION_SUSPICIOUS: 300,
}

# Window of the per-IP total that drives auto-blocking
IP_VIOLATION_TOTAL_WINDOW_SECONDS = 600

AlertSender = Callable[[str, int, dict[str, Any]], Awaitable[Any]]


def alert_severity(count: int) -> str:
    if count >= 20:
        return "critical"
    if count >= 10:
        return "high"
    if count >= 5:
        return "medium"
    return "low"


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def violation_key(violation_type: str, ip: str, platform: str | None = None, config_id: int | None = None) -> str:
    """
    security_violation:{type}:{md5(ip)}:{md5(ip[:platform][:config_id])}

    The leading IP hash lets an operator clear every counter of one address.
    """
    identifier = ip or "unknown"
    if platform:
        identifier += f":{platform}"
    if config_id is not None:
        identifier += f":{config_id}"
    return f"{VIOLATION_PREFIX}:{violation_type}:{_md5(ip or 'unknown')}:{_md5(identifier)}"


def replay_key(platform: str, signature: str) -> str:
    digest = hashlib.sha256(f"{platform}:{signature}".encode("utf-8")).hexdigest()
    return f"{REPLAY_PREFIX}:{digest}"


def client_ip_from(headers: Mapping[str, str], peer: str | None) -> str:
    """Source address: CF-Connecting-IP, first X-Forwarded-For hop, X-Real-IP, then the socket peer"""
    cf_ip = get_header(headers, "CF-Connecting-IP")
    if cf_ip and cf_ip.strip():
        return cf_ip.strip()

    forwarded_for = get_header(headers, "X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = get_header(headers, "X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return peer or "unknown"


# ──────────────────────────────────────────────
#  Policy
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class RateLimit:
    per_minute: int
    per_hour: int
    burst: int


@dataclass(frozen=True)
class SecurityPolicy:
    """Typed, immutable snapshot of the gate settings"""

    max_payload_bytes: int = 1024 * 1024
    allowed_content_types: tuple[str, ...] = ("application/json", "application/x-www-form-urlencoded")
    ip_whitelist_enabled: bool = True
    ip_whitelist_strict: bool = False
    ip_ranges: Mapping[str, tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]] = field(default_factory=dict)
    rate_limits: Mapping[str, RateLimit] = field(default_factory=lambda: {"default": RateLimit(60, 600, 100)})
    burst_window_seconds: int = 10
    replay_protection_enabled: bool = True
    replay_window_seconds: int = 300
    auto_block_enabled: bool = True
    auto_block_threshold: int = 20
    auto_block_seconds: int = 3600
    alerting_enabled: bool = False
    alert_thresholds: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "SecurityPolicy":
        s = source or app_settings
        ip_ranges = {
            platform: tuple(ipaddress.ip_network(cidr, strict=False) for cidr in cidrs)
            for platform, cidrs in s.WEBHOOK_IP_RANGES.items()
        }
        rate_limits = {
            platform: RateLimit(
                per_minute=int(limits["per_minute"]),
                per_hour=int(limits["per_hour"]),
                burst=int(limits["burst"]),
            )
            for platform, limits in s.WEBHOOK_RATE_LIMITS.items()
        }
        return cls(
            max_payload_bytes=s.WEBHOOK_MAX_PAYLOAD_BYTES,
            allowed_content_types=tuple(s.allowed_content_types),
            ip_whitelist_enabled=s.WEBHOOK_IP_WHITELIST_ENABLED,
            ip_whitelist_strict=s.WEBHOOK_IP_WHITELIST_STRICT,
            ip_ranges=ip_ranges,
            rate_limits=rate_limits,
            burst_window_seconds=s.WEBHOOK_BURST_WINDOW_SECONDS,
            replay_protection_enabled=s.WEBHOOK_REPLAY_PROTECTION_ENABLED,
            replay_window_seconds=s.WEBHOOK_REPLAY_WINDOW_SECONDS,
            auto_block_enabled=s.WEBHOOK_AUTO_BLOCK_ENABLED,
            auto_block_threshold=s.WEBHOOK_AUTO_BLOCK_THRESHOLD,
            auto_block_seconds=s.WEBHOOK_AUTO_BLOCK_SECONDS,
            alerting_enabled=s.WEBHOOK_ALERTING_ENABLED,
            alert_thresholds=dict(s.WEBHOOK_ALERT_THRESHOLDS),
        )

    def rate_limit_for(self, platform: str) -> RateLimit:
        return self.rate_limits.get(platform) or self.rate_limits["default"]

    def summary(self) -> dict[str, Any]:
        """Non-secret view of the policy for health and admin output"""
        return {
            "max_payload_bytes": self.max_payload_bytes,
            "allowed_content_types": list(self.allowed_content_types),
            "ip_whitelist_enabled": self.ip_whitelist_enabled,
            "ip_whitelist_strict": self.ip_whitelist_strict,
            "replay_protection_enabled": self.replay_protection_enabled,
            "replay_window_seconds": self.replay_window_seconds,
            "auto_block_enabled": self.auto_block_enabled,
            "auto_block_threshold": self.auto_block_threshold,
            "rate_limits": {
                platform: {"per_minute": rl.per_minute, "per_hour": rl.per_hour, "burst": rl.burst}
                for platform, rl in self.rate_limits.items()
            },
        }


@dataclass(frozen=True)
class RateLimitStatus:
    """Per-minute window state after an accepted request"""

    limit: int
    remaining: int
    reset_at: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


# ──────────────────────────────────────────────
#  Gate
# ──────────────────────────────────────────────


class SecurityGate:
    """
    Screens webhook requests before anything is persisted.

    Takes its Redis client and policy at construction, never reads ambient
    settings while checking a request.
    """

    def __init__(
        self,
        redis: Any,
        policy: SecurityPolicy,
        alert_sender: AlertSender | None = None,
    ):
        self.redis = redis
        self.policy = policy
        self.alert_sender = alert_sender

    async def check_request(
        self,
        platform: str,
        client_ip: str,
        body: bytes,
        content_type: str | None,
        config_id: int | None = None,
    ) -> RateLimitStatus:
        """
        Run the ordered request checks.

        Raises:
            IpBlockedError, PayloadTooLargeError, UnsupportedContentTypeError,
            IpNotAllowedError, RateLimitExceededError
        """
        if await self.is_ip_blocked(client_ip):
            raise IpBlockedError(client_ip)

        if len(body) > self.policy.max_payload_bytes:
            raise PayloadTooLargeError(len(body), self.policy.max_payload_bytes)

        media_type = (content_type or "").split(";")[0].strip().lower()
        if media_type not in self.policy.allowed_content_types:
            raise UnsupportedContentTypeError(content_type)

        self._check_ip_allowed(platform, client_ip, config_id)

        return await self._check_rate_limits(platform, client_ip)

    # ==================== IP allow-list ====================

    def is_ip_allowed(self, platform: str, client_ip: str) -> bool:
        """True when the IP falls inside the platform ranges, or none are configured"""
        networks = self.policy.ip_ranges.get(platform)
        if not networks:
            return True
        try:
            address = ipaddress.ip_address(client_ip)
        except ValueError:
            return False
        return any(address in network for network in networks)

    def _check_ip_allowed(self, platform: str, client_ip: str, config_id: int | None) -> None:
        if not self.policy.ip_whitelist_enabled or self.is_ip_allowed(platform, client_ip):
            return

        if self.policy.ip_whitelist_strict:
            raise IpNotAllowedError(client_ip, platform)

        logger.warning(
            "Webhook request from non-whitelisted IP",
            extra_data={"platform": platform, "client_ip": client_ip, "config_id": config_id}
        )

    # ==================== Rate limiting ====================

    async def _check_rate_limits(self, platform: str, client_ip: str) -> RateLimitStatus:
        limits = self.policy.rate_limit_for(platform)
        global_limit = self.policy.rate_limit_for("default").per_minute
        burst_window = self.policy.burst_window_seconds

        windows = [
            ("minute", f"{RATE_LIMIT_PREFIX}:{platform}:minute:{client_ip}", MINUTE_SECONDS, limits.per_minute),
            ("hour", f"{RATE_LIMIT_PREFIX}:{platform}:hour:{client_ip}", HOUR_SECONDS, limits.per_hour),
            ("burst", f"{BURST_PREFIX}:{platform}:{client_ip}", burst_window, limits.burst),
            ("global", f"{GLOBAL_PREFIX}:{client_ip}", MINUTE_SECONDS, global_limit),
        ]

        # Fixed windows: EXPIRE NX only arms the TTL on the first hit
        pipe = self.redis.pipeline(transaction=True)
        for _, key, ttl, _ in windows:
            pipe.incr(key)
            pipe.expire(key, ttl, nx=True)
            pipe.ttl(key)
        results = await pipe.execute()

        now = int(time.time())
        counts: dict[str, int] = {}
        ttls: dict[str, int] = {}
        for index, (name, _, ttl, _) in enumerate(windows):
            counts[name] = int(results[index * 3])
            remaining_ttl = int(results[index * 3 + 2])
            ttls[name] = remaining_ttl if remaining_ttl > 0 else ttl

        violations = [name for name, _, _, limit in windows if counts[name] > limit]
        if violations:
            retry_after = max(
                HOUR_SECONDS if v == "hour" else burst_window if v == "burst" else MINUTE_SECONDS
                for v in violations
            )
            logger.warning(
                "Webhook rate limit violation",
                extra_data={
                    "platform": platform,
                    "client_ip": client_ip,
                    "violations": violations,
                    "counts": counts,
                }
            )
            raise RateLimitExceededError(
                violations=violations,
                limit=limits.per_minute,
                retry_after=retry_after,
                reset_at=now + retry_after,
            )

        return RateLimitStatus(
            limit=limits.per_minute,
            remaining=max(0, limits.per_minute - counts["minute"]),
            reset_at=now + ttls["minute"],
        )

    # ==================== Replay detection ====================

    async def check_replay(self, platform: str, signature: str | None) -> None:
        """
        Claim a signature for the replay window.

        SET NX EX is the check and the claim in one step, so two concurrent
        deliveries of the same signature can never both pass.

        Raises:
            ReplayDetectedError: the signature was already accepted in the window
        """
        if not self.policy.replay_protection_enabled or not signature:
            return

        claimed = await self.redis.set(
            replay_key(platform, signature), "1", nx=True, ex=self.policy.replay_window_seconds
        )
        if not claimed:
            raise ReplayDetectedError(platform)

    async def release_replay(self, platform: str, signature: str | None) -> bool:
        """
        Give back a claimed signature when its delivery was not stored,
        so the platform's redelivery of the same body is accepted.
        """
        if not signature:
            return False
        return bool(await self.redis.delete(replay_key(platform, signature)))

    # ==================== Violations ====================

    async def record_violation(
        self,
        violation_type: str,
        ip: str,
        platform: str | None = None,
        config_id: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Count a rejection toward alerting and IP auto-blocking.

        Returns the bookkeeping outcome (count, window, alert and block flags).
        """
        window = VIOLATION_WINDOWS.get(violation_type, 60)
        key = violation_key(violation_type, ip, platform, config_id)
        total_key = f"{IP_VIOLATION_TOTAL_PREFIX}:{ip}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, window, nx=True)
        pipe.incr(total_key)
        pipe.expire(total_key, IP_VIOLATION_TOTAL_WINDOW_SECONDS, nx=True)
        results = await pipe.execute()
        count = int(results[0])
        ip_total = int(results[2])

        log_context = {
            "violation_type": violation_type,
            "client_ip": ip,
            "platform": platform,
            "config_id": config_id,
            "violation_count": count,
            **(context or {}),
        }
        logger.log_at(
            violation_log_level(count),
            f"Security violation recorded: {violation_type}",
            extra_data=log_context
        )

        alert_triggered = await self._maybe_alert(violation_type, count, log_context)
        ip_blocked = await self._maybe_auto_block(ip, ip_total)

        return {
            "type": violation_type,
            "count": count,
            "window": window,
            "alert_triggered": alert_triggered,
            "ip_blocked": ip_blocked,
        }

    async def _maybe_alert(self, violation_type: str, count: int, context: dict[str, Any]) -> bool:
        if not self.policy.alerting_enabled or self.alert_sender is None:
            return False
        threshold = self.policy.alert_thresholds.get(violation_type)
        if threshold is None or count < threshold:
            return False

        alert_context = {**context, "severity": alert_severity(count)}
        try:
            return bool(await self.alert_sender(violation_type, count, alert_context))
        except Exception as e:
            # Alerting is best effort. A broken alert channel must not turn a 4xx into a 500.
            logger.error(
                "Security alert dispatch failed",
                extra_data={"violation_type": violation_type, "error": str(e)},
                exc_info=True
            )
            return False

    async def _maybe_auto_block(self, ip: str, ip_total: int) -> bool:
        if not self.policy.auto_block_enabled or ip_total < self.policy.auto_block_threshold:
            return False

        blocked = await self.redis.set(
            f"{BLOCKED_IP_PREFIX}:{ip}",
            "auto: violation threshold reached",
            nx=True,
            ex=self.policy.auto_block_seconds,
        )
        if blocked:
            logger.critical(
                "IP address auto-blocked",
                extra_data={
                    "client_ip": ip,
                    "violations": ip_total,
                    "duration_seconds": self.policy.auto_block_seconds,
                }
            )
        return bool(blocked)

    async def get_violation_stats(self) -> dict[str, Any]:
        """Live violation counters summed per type"""
        by_type: dict[str, int] = {}
        for violation_type in VIOLATION_TYPES:
            total = 0
            async for key in self.redis.scan_iter(match=f"{VIOLATION_PREFIX}:{violation_type}:*"):
                value = await self.redis.get(key)
                total += int(value) if value else 0
            by_type[violation_type] = total
        return {"total_violations": sum(by_type.values()), "violations_by_type": by_type}

    async def clear_violations(self, ip: str | None = None, violation_type: str | None = None) -> int:
        """Delete violation counters, optionally for one IP and/or one type"""
        type_part = violation_type or "*"
        ip_part = _md5(ip) if ip else "*"
        keys = [
            key
            async for key in self.redis.scan_iter(match=f"{VIOLATION_PREFIX}:{type_part}:{ip_part}:*")
        ]
        if ip:
            keys.append(f"{IP_VIOLATION_TOTAL_PREFIX}:{ip}")
        elif violation_type is None:
            keys.extend([key async for key in self.redis.scan_iter(match=f"{IP_VIOLATION_TOTAL_PREFIX}:*")])

        if keys:
            await self.redis.delete(*keys)

        logger.info(
            "Security violations cleared",
            extra_data={"client_ip": ip, "violation_type": violation_type, "keys_cleared": len(keys)}
        )
        return len(keys)

    # ==================== IP blocking ====================

    async def block_ip(self, ip: str, seconds: int | None = None, reason: str = "manual") -> None:
        duration = seconds or self.policy.auto_block_seconds
        await self.redis.setex(f"{BLOCKED_IP_PREFIX}:{ip}", duration, reason)
        logger.warning(
            "IP address blocked",
            extra_data={"client_ip": ip, "duration_seconds": duration, "reason": reason}
        )

    async def unblock_ip(self, ip: str) -> bool:
        removed = await self.redis.delete(f"{BLOCKED_IP_PREFIX}:{ip}")
        # Unblocking also resets the streak that led to the block
        await self.redis.delete(f"{IP_VIOLATION_TOTAL_PREFIX}:{ip}")
        if removed:
            logger.info("IP address unblocked", extra_data={"client_ip": ip})
        return bool(removed)

    async def is_ip_blocked(self, ip: str) -> bool:
        return bool(await self.redis.exists(f"{BLOCKED_IP_PREFIX}:{ip}"))

    async def get_blocked_ips(self) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        blocked = []
        async for key in self.redis.scan_iter(match=f"{BLOCKED_IP_PREFIX}:*"):
            ttl = int(await self.redis.ttl(key))
            if ttl == -2:
                continue  # expired between SCAN and TTL
            reason = await self.redis.get(key)
            blocked.append({
                "ip": key[len(BLOCKED_IP_PREFIX) + 1:],
                "reason": reason,
                "remaining_seconds": ttl if ttl > 0 else None,
                "expires_at": (now + timedelta(seconds=ttl)).isoformat() if ttl > 0 else None,
            })
        return sorted(blocked, key=lambda item: item["ip"])

    # ==================== Maintenance ====================

    async def expire_orphaned_keys(self) -> int:
        """
        Put a TTL on gate keys that lost theirs.

        Every gate key is written with an expiry, but a crash between INCR and
        EXPIRE (or a manual SET) can leave one that would live forever.
        Block keys get the auto-block duration, everything else an hour.
        """
        fixed = 0
        for pattern in SECURITY_KEY_PATTERNS:
            ttl_seconds = self.policy.auto_block_seconds if pattern.startswith(BLOCKED_IP_PREFIX) else HOUR_SECONDS
            async for key in self.redis.scan_iter(match=pattern):
                if int(await self.redis.ttl(key)) == -1:
                    await self.redis.expire(key, ttl_seconds)
                    fixed += 1

        if fixed:
            logger.info("Orphaned security keys expired", extra_data={"keys": fixed})
        return fixed

    # ==================== Health ====================

    async def health_check(self) -> dict[str, Any]:
        health: dict[str, Any] = {"status": "healthy", "checks": {}}
        try:
            await self.redis.ping()
            health["checks"]["redis"] = "ok"
        except Exception as e:
            health["checks"]["redis"] = f"error: {e}"
            health["status"] = "degraded"
        health["policy"] = self.policy.summary()
        return health
