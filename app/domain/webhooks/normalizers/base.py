"""
Base Event Normalizer

Turns a stored webhook event into the canonical NormalizedEvent. Subclasses
classify the payload shape (event type, object type, object id) and add their
platform-specific metric, user and content fields. The base class owns the
envelope assembly, the cross-platform field aliases and null stripping, so no
emitted map ever carries a None value.

Normalization is a pure function of the stored event and never raises on a
malformed payload: absent or oddly typed sub-structures shrink the output.
"""
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol

from app.domain.webhooks.payload import compact, first_id, first_int, first_string, get_path, has_path, pick, to_int

UNKNOWN = "unknown"

# Canonical metric -> aliases, coalesced in priority order
BASE_METRIC_PATHS: dict[str, tuple[str, ...]] = {
    "likes": ("like_count", "likes", "numLikes", "favorite_count"),
    "comments": ("comment_count", "comments", "numComments"),
    "shares": ("share_count", "shares", "numShares", "retweet_count"),
    "reach": ("reach", "impressions_unique"),
    "impressions": ("impressions", "views", "view_count"),
}

BASE_USER_PATHS: dict[str, tuple[str, ...]] = {
    "user_id": ("user.id", "sender.id", "actor.id", "from.id", "user_id"),
    "username": ("user.username", "sender.username", "actor.username", "from.username"),
    "name": ("user.name", "sender.name", "actor.name", "from.name"),
    "profile_picture": ("user.profile_pic", "sender.profile_pic", "actor.profile_pic_url"),
}

BASE_CONTENT_PATHS: dict[str, tuple[str, ...]] = {
    "text": ("message", "text", "content", "caption", "description"),
    "media_type": ("media_type", "type", "attachment.type"),
    "media_url": ("media_url", "url", "link", "permalink_url"),
    "thumbnail_url": ("thumbnail_url", "picture", "full_picture"),
}


class StoredEvent(Protocol):
    """What a normalizer reads from a persisted event (WebhookEvent satisfies it)"""

    id: int | None
    platform: Any
    event_type: str | None
    event_id: str | None
    payload: Any
    received_at: datetime | None
    social_account_id: int | None


@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical, platform-agnostic view of one webhook delivery"""

    webhook_event_id: int | None
    platform: str
    event_type: str
    object_type: str
    object_id: str | None
    platform_event_id: str | None
    user_info: dict[str, Any] = field(default_factory=dict)
    content_info: dict[str, Any] = field(default_factory=dict)
    engagement_metrics: dict[str, int] = field(default_factory=dict)
    raw_payload: Any = None
    received_at: datetime | None = None
    social_account_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Plain dict with the timestamp as ISO text, ready for JSON"""
        data = asdict(self)
        if self.received_at is not None:
            data["received_at"] = self.received_at.isoformat()
        return data


def numeric_metrics(source: Any, fields: Mapping[str, str]) -> dict[str, int]:
    """{metric: path} -> {metric: int}, dropping absent and non-numeric values"""
    metrics = {key: to_int(get_path(source, path)) for key, path in fields.items()}
    return compact(metrics)


class BaseEventNormalizer(ABC):
    """Shared normalization pipeline. One stateless subclass per platform."""

    platform: str
    # Ordered candidate paths for object_id, most specific first
    object_id_paths: tuple[str, ...] = ()

    def normalize(self, event: StoredEvent) -> NormalizedEvent:
        payload = event.payload if isinstance(event.payload, (dict, list)) else {}
        platform = getattr(event.platform, "value", event.platform) or self.platform

        return NormalizedEvent(
            webhook_event_id=event.id,
            platform=str(platform),
            event_type=self.event_type(payload, event.event_type),
            object_type=self.object_type(payload),
            object_id=self.object_id(payload),
            platform_event_id=event.event_id,
            user_info=self.user_info(payload),
            content_info=self.content_info(payload),
            engagement_metrics=self.engagement_metrics(payload),
            raw_payload=event.payload,
            received_at=event.received_at,
            social_account_id=event.social_account_id,
        )

    # ──────────────────────────────────────────────
    #  Classification
    # ──────────────────────────────────────────────

    def event_type(self, payload: Any, stored_event_type: str | None = None) -> str:
        """
        Canonical event type from the payload shape.

        An unrecognised shape falls back to the event type stored at
        ingestion, then to "unknown".
        """
        classified = self.classify_event_type(payload)
        if classified and classified != UNKNOWN:
            return classified
        return stored_event_type or UNKNOWN

    @abstractmethod
    def classify_event_type(self, payload: Any) -> str | None:
        """Shape-driven event type, None when no rule matches"""

    @abstractmethod
    def object_type(self, payload: Any) -> str:
        ...

    def object_id(self, payload: Any) -> str | None:
        """First usable id among the ordered candidate paths, most specific first"""
        return first_id(payload, self.object_id_paths)

    # ──────────────────────────────────────────────
    #  Extraction
    # ──────────────────────────────────────────────

    def engagement_metrics(self, payload: Any) -> dict[str, int]:
        metrics = {key: first_int(payload, paths) for key, paths in BASE_METRIC_PATHS.items()}
        metrics = compact(metrics)
        metrics.update(self.platform_metrics(payload))
        return metrics

    def user_info(self, payload: Any) -> dict[str, Any]:
        info = {key: first_string(payload, paths) for key, paths in BASE_USER_PATHS.items()}
        info = compact(info)
        info.update(compact(self.platform_user_info(payload)))
        return info

    def content_info(self, payload: Any) -> dict[str, Any]:
        info = {key: first_string(payload, paths) for key, paths in BASE_CONTENT_PATHS.items()}
        info = compact(info)
        info.update(compact(self.platform_content_info(payload)))
        return info

    @abstractmethod
    def platform_metrics(self, payload: Any) -> dict[str, int]:
        ...

    @abstractmethod
    def platform_user_info(self, payload: Any) -> dict[str, Any]:
        ...

    @abstractmethod
    def platform_content_info(self, payload: Any) -> dict[str, Any]:
        ...


def section(payload: Any, path: str) -> dict[str, Any] | None:
    """Sub-object at `path` when it is a non-empty JSON object"""
    value = get_path(payload, path)
    return value if isinstance(value, dict) and value else None


def fields_from(source: Any, fields: Mapping[str, str]) -> dict[str, Any]:
    """pick() then compact(): {key: path} -> present values only"""
    return compact(pick(source, fields))


def first_present(payload: Any, table: tuple[tuple[str, str], ...]) -> str | None:
    """Result of the first (key, result) pair whose key exists in the payload"""
    for key, result in table:
        if has_path(payload, key):
            return result
    return None
