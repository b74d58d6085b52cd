"""
Facebook Graph API page webhooks: entry[].changes[] and entry[].messaging[].
"""
from typing import Any

from app.domain.webhooks.normalizers.base import UNKNOWN, BaseEventNormalizer, fields_from, numeric_metrics, section
from app.domain.webhooks.payload import as_mapping, get_path

_CHANGE = "entry.0.changes.0"
_VALUE = "entry.0.changes.0.value"
_MESSAGING = "entry.0.messaging.0"

FIELD_EVENT_TYPES = {
    "conversations": "message_received",
    "leadgen": "lead_generated",
    "messaging_postbacks": "postback_received",
    "messaging_optins": "optin_received",
    "messaging_referrals": "referral_received",
    "messaging_handovers": "handover_received",
    "messaging_policy_enforcement": "policy_enforcement",
    "message_echoes": "message_sent",
    "message_reads": "message_read",
    "standby": "standby_event",
    "user_privacy": "privacy_changed",
    "page_change": "account_updated",
}

_MESSAGE_FIELDS = frozenset({
    "conversations",
    "messaging_postbacks",
    "messaging_optins",
    "messaging_referrals",
    "messaging_handovers",
    "messaging_policy_enforcement",
    "message_echoes",
    "message_reads",
})

FIELD_OBJECT_TYPES = {
    "feed": "post",
    **{name: "message" for name in _MESSAGE_FIELDS},
    "leadgen": "lead",
    "user_privacy": "user",
    "page_change": "account",
    "story_insights": "story",
}

# Fields other than the change field itself, checked in order
VALUE_KEY_OBJECT_TYPES = (
    ("post_id", "post"),
    ("comment_id", "comment"),
    ("leadgen_id", "lead"),
    ("story_id", "story"),
)

_METRIC_FIELDS = (
    "video_views",
    "video_avg_watch_time",
    "video_total_watch_time",
    "page_impressions",
    "page_impressions_unique",
    "page_engaged_users",
    "page_post_engagements",
    "page_fan_adds",
    "page_fan_removes",
    "page_views_total",
    "page_views_login_total",
    "page_views_logout_total",
    "post_clicks",
    "post_negative_feedback",
    "post_negative_feedback_hide",
    "post_negative_feedback_hide_all_clicks",
    "post_negative_feedback_report_spam_clicks",
    "post_negative_feedback_unlike_page_clicks",
    "story_exits",
    "story_impressions",
    "story_replies",
    "story_taps_forward",
    "story_taps_back",
)

_POST_CONTENT_FIELDS = (
    "message",
    "story",
    "link",
    "picture",
    "full_picture",
    "source",
    "name",
    "caption",
    "description",
    "icon",
    "type",
    "status_type",
    "object_id",
    "application",
    "created_time",
    "updated_time",
    "is_published",
    "is_hidden",
    "is_expired",
    "permalink_url",
)

_LEAD_CONTENT = {
    "leadgen_id": "leadgen_id",
    "adgroup_id": "adgroup_id",
    "ad_id": "ad_id",
    "form_id": "form_id",
    "campaign_id": "campaign_id",
    "leadgen_data": "field_data",
}


class FacebookEventNormalizer(BaseEventNormalizer):
    platform = "facebook"
    object_id_paths = (
        f"{_VALUE}.post_id",
        f"{_VALUE}.comment_id",
        f"{_VALUE}.leadgen_id",
        f"{_VALUE}.story_id",
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
        if field_name == "feed":
            return self._feed_event_type(as_mapping(change.get("value")))
        return FIELD_EVENT_TYPES.get(field_name)

    @staticmethod
    def _feed_event_type(value: dict[str, Any]) -> str:
        if value.get("post_id") is None:
            return UNKNOWN
        if value.get("created_time") is not None:
            return "created"
        if value.get("verb") == "edited":
            return "updated"
        if value.get("verb") == "removed":
            return "deleted"
        if value.get("like_count") is not None:
            return "engagement"
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
        return numeric_metrics(get_path(payload, _VALUE), {name: name for name in _METRIC_FIELDS})

    def platform_user_info(self, payload: Any) -> dict[str, Any]:
        info: dict[str, Any] = {}

        messaging = section(payload, _MESSAGING)
        if messaging:
            info.update(fields_from(messaging, {"user_id": "sender.id", "user_ref": "sender.user_ref"}))

        value = section(payload, _VALUE)
        if value:
            info.update(fields_from(value, {
                "actor_id": "actor_id",
                "sender_id": "sender_id",
                "from_id": "from.id",
                "from_name": "from.name",
            }))

        page = section(payload, "entry.0")
        if page:
            info.update(fields_from(page, {"page_id": "id", "page_name": "name"}))

        return info

    def platform_content_info(self, payload: Any) -> dict[str, Any]:
        value = section(payload, _VALUE) or {}
        content = fields_from(value, {name: name for name in _POST_CONTENT_FIELDS})

        message = section(payload, f"{_MESSAGING}.message")
        if message:
            content.update(fields_from(message, {
                "message_text": "text",
                "message_attachments": "attachments",
                "message_quick_reply": "quick_reply",
                "message_seq": "seq",
            }))

        if value.get("leadgen_id"):
            content.update(fields_from(value, _LEAD_CONTENT))

        return content
