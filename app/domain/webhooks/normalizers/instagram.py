"""
Instagram Graph API webhooks. Same envelope as Facebook, different fields.
"""
from typing import Any

from app.domain.webhooks.normalizers.base import UNKNOWN, BaseEventNormalizer, fields_from, numeric_metrics, section
from app.domain.webhooks.payload import as_mapping, get_path

_CHANGE = "entry.0.changes.0"
_VALUE = "entry.0.changes.0.value"
_MESSAGING = "entry.0.messaging.0"

FIELD_EVENT_TYPES = {
    "story_insights": "insights_updated",
    "user_insights": "insights_updated",
    "mentions": "mention",
    "business_account": "account_updated",
    "messaging": "message_received",
    "message_reactions": "message_reaction",
    "message_echoes": "message_sent",
    "message_reads": "message_read",
    "standby": "standby_event",
}

FIELD_OBJECT_TYPES = {
    "media": "post",
    "comments": "comment",
    "story_insights": "story",
    "user_insights": "user",
    "mentions": "mention",
    "business_account": "account",
    "messaging": "message",
    "message_reactions": "message",
    "message_echoes": "message",
    "message_reads": "message",
}

VALUE_KEY_OBJECT_TYPES = (
    ("media_id", "post"),
    ("comment_id", "comment"),
    ("story_id", "story"),
    ("user_id", "user"),
)

_METRICS = {
    "saves": "saved_count",
    "carousel_album_engagement": "carousel_album_engagement",
    "video_views": "video_views",
    "video_thumbnails_played": "video_thumbnails_played",
    "video_avg_time_watched": "video_avg_time_watched",
    "video_quartile_95_percent_watched": "video_quartile_95_percent_watched",
    "video_quartile_100_percent_watched": "video_quartile_100_percent_watched",
    "reach": "reach",
    "impressions": "impressions",
    "organic_impressions": "organic_impressions",
    "paid_impressions": "paid_impressions",
    "discover_impressions": "discover_impressions",
    "home_impressions": "home_impressions",
    "profile_impressions": "profile_impressions",
    "hashtag_impressions": "hashtag_impressions",
    # stories
    "story_exits": "exits",
    "story_impressions": "impressions",
    "story_reach": "reach",
    "story_replies": "replies",
    "story_taps_forward": "taps_forward",
    "story_taps_back": "taps_back",
    "story_interactions": "story_interactions",
    # account
    "followers_count": "followers_count",
    "following_count": "following_count",
    "media_count": "media_count",
    "profile_views": "profile_views",
    "website_clicks": "website_clicks",
    "email_contacts": "email_contacts",
    "phone_call_clicks": "phone_call_clicks",
    "get_directions_clicks": "get_directions_clicks",
    "follower_growth": "follower_growth",
}

_MEDIA_CONTENT = {
    name: name for name in (
        "media_type",
        "media_url",
        "thumbnail_url",
        "permalink",
        "caption",
        "media_product_type",
        "is_comment_enabled",
        "copyright",
        "sharing_friction_info",
        "timestamp",
        "children",
        "biography",
        "website",
        "profile_picture_url",
    )
}

_COMMENT_CONTENT = {
    "comment_id": "comment_id",
    "comment_text": "text",
    "comment_like_count": "like_count",
    "comment_replies": "replies",
    "comment_hidden": "hidden",
    "comment_user_id": "user_id",
    "comment_username": "username",
}

_STORY_CONTENT = {
    "story_id": "story_id",
    "story_type": "story_type",
    "story_url": "story_url",
    "story_expires_at": "expires_at",
}

_MESSAGE_CONTENT = {
    "message_text": "text",
    "message_attachments": "attachments",
    "message_reactions": "reactions",
    "message_share": "share",
    "message_sticker_id": "sticker_id",
}


class InstagramEventNormalizer(BaseEventNormalizer):
    platform = "instagram"
    object_id_paths = (
        f"{_VALUE}.media_id",
        f"{_VALUE}.comment_id",
        f"{_VALUE}.story_id",
        f"{_VALUE}.user_id",
        f"{_MESSAGING}.message.mid",
        f"{_MESSAGING}.sender.id",
        "entry.0.id",
    )

    def classify_event_type(self, payload: Any) -> str | None:
        change = section(payload, _CHANGE)
        if change is None:
            return None

        field_name = change.get("field")
        if not isinstance(field_name, str):
            return None

        value = as_mapping(change.get("value"))
        if field_name == "media":
            return self._media_event_type(value)
        if field_name == "comments":
            return self._comment_event_type(value)
        return FIELD_EVENT_TYPES.get(field_name)

    @staticmethod
    def _media_event_type(value: dict[str, Any]) -> str:
        if value.get("media_id") is None:
            return UNKNOWN
        if value.get("created_time") is not None:
            return "created"
        if value.get("caption") is not None:
            return "updated"
        if value.get("deleted") is not None:
            return "deleted"
        if value.get("like_count") is not None:
            return "engagement"
        return UNKNOWN

    @staticmethod
    def _comment_event_type(value: dict[str, Any]) -> str:
        if value.get("comment_id") is None:
            return UNKNOWN
        if value.get("created_time") is not None:
            return "created"
        if value.get("deleted") is not None:
            return "deleted"
        if value.get("text") is not None:
            return "updated"
        return UNKNOWN

    def object_type(self, payload: Any) -> str:
        change = section(payload, _CHANGE)
        if change is None:
            return UNKNOWN

        field_name = change.get("field")
        object_type = FIELD_OBJECT_TYPES.get(field_name) if isinstance(field_name, str) else None
        if object_type:
            return object_type

        value = as_mapping(change.get("value"))
        for key, candidate in VALUE_KEY_OBJECT_TYPES:
            if value.get(key) is not None:
                return candidate
        return UNKNOWN

    def platform_metrics(self, payload: Any) -> dict[str, int]:
        return numeric_metrics(get_path(payload, _VALUE), _METRICS)

    def platform_user_info(self, payload: Any) -> dict[str, Any]:
        info: dict[str, Any] = {}

        messaging = section(payload, _MESSAGING)
        if messaging:
            info.update(fields_from(messaging, {"user_id": "sender.id", "user_ref": "sender.user_ref"}))

        value = section(payload, _VALUE)
        if value:
            info.update(fields_from(value, {
                "user_id": "user_id",
                "username": "username",
                "account_type": "account_type",
                "is_business": "is_business",
                "is_verified": "is_verified",
            }))
            if value.get("mention_id"):
                info.update(fields_from(value, {"mentioner_id": "user_id", "mentioner_username": "username"}))

        return info

    def platform_content_info(self, payload: Any) -> dict[str, Any]:
        value = section(payload, _VALUE) or {}
        content = fields_from(value, _MEDIA_CONTENT)

        if value.get("comment_id"):
            content.update(fields_from(value, _COMMENT_CONTENT))
        if value.get("story_id"):
            content.update(fields_from(value, _STORY_CONTENT))

        message = section(payload, f"{_MESSAGING}.message")
        if message:
            content.update(fields_from(message, _MESSAGE_CONTENT))

        return content
