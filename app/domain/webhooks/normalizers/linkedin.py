"""
LinkedIn webhooks. The payload carries one top-level *Update / *Event object.
"""
from typing import Any

from app.domain.webhooks.normalizers.base import UNKNOWN, BaseEventNormalizer, fields_from, first_present, numeric_metrics, section
from app.domain.webhooks.payload import as_mapping, get_path, has_path

SHARE_UPDATE_TYPES = {
    "CREATED": "created",
    "UPDATED": "updated",
    "DELETED": "deleted",
}

# Checked in order after shareUpdate
UPDATE_KEY_EVENT_TYPES = (
    ("commentUpdate", "created"),
    ("reactionUpdate", "engagement"),
    ("personUpdate", "updated"),
    ("organizationUpdate", "updated"),
    ("connectionUpdate", "followed"),
    ("messageEvent", "message_received"),
    ("leadGenFormUpdate", "lead_generated"),
    ("organizationInsights", "insights_updated"),
)

UPDATE_KEY_OBJECT_TYPES = (
    ("shareUpdate", "post"),
    ("commentUpdate", "comment"),
    ("reactionUpdate", "reaction"),
    ("personUpdate", "user"),
    ("organizationUpdate", "account"),
    ("connectionUpdate", "user"),
    ("messageEvent", "message"),
    ("leadGenFormUpdate", "lead"),
    ("organizationInsights", "account"),
)

_METRICS = {
    "shareUpdate": {
        "numLikes": "numLikes",
        "numComments": "numComments",
        "numShares": "numShares",
        "numImpressions": "numImpressions",
        "numClicks": "numClicks",
        "engagement": "engagement",
        "reach": "reach",
        "numUniqueImpressions": "numUniqueImpressions",
    },
    "commentUpdate": {"numComments": "numComments"},
    "reactionUpdate": {"numLikes": "numLikes"},
    "personUpdate": {"connectionsCount": "connectionsCount", "followersCount": "followersCount"},
    "organizationUpdate": {"employeeCount": "employeeCount", "followerCount": "followerCount"},
    "connectionUpdate": {"connectionsCount": "connectionsCount"},
    "organizationInsights": {
        name: name for name in (
            "pageViews",
            "uniqueVisitors",
            "clicks",
            "followers",
            "newFollowers",
            "employeeCount",
            "reach",
            "impressions",
            "engagementRate",
            "updateFrequency",
        )
    },
}

_USER_FIELDS = {
    "personUpdate": {
        "person_id": "personId",
        "first_name": "firstName",
        "last_name": "lastName",
        "headline": "headline",
        "summary": "summary",
        "location": "location",
        "industry": "industry",
        "profile_picture_url": "profilePictureUrl",
        "connections_count": "connectionsCount",
        "followers_count": "followersCount",
    },
    "connectionUpdate": {
        "person_id": "personId",
        "connected_person_id": "connectedPersonId",
        "connection_type": "connectionType",
        "connection_state": "connectionState",
    },
    "messageEvent": {
        "sender_id": "senderId",
        "recipient_id": "recipientId",
        "conversation_id": "conversationId",
    },
    "shareUpdate": {
        "author_id": "author",
        "author_name": "authorName",
        "author_profile_url": "authorProfileUrl",
    },
    "commentUpdate": {
        "commenter_id": "commenterId",
        "commenter_name": "commenterName",
        "commenter_profile_url": "commenterProfileUrl",
    },
}

_CONTENT_FIELDS = {
    "shareUpdate": {
        "share_text": "shareText",
        "share_commentary": "shareCommentary",
        "share_media_url": "shareMediaUrl",
        "share_thumbnail_url": "shareThumbnailUrl",
        "share_title": "shareTitle",
        "share_description": "shareDescription",
        "share_url": "shareUrl",
        "share_type": "shareType",
        "share_media_type": "shareMediaType",
        "update_type": "updateType",
        "published_at": "publishedAt",
        "last_modified_at": "lastModifiedAt",
    },
    "commentUpdate": {
        "comment_text": "commentText",
        "comment_type": "commentType",
        "update_type": "updateType",
        "created_at": "createdAt",
        "last_modified_at": "lastModifiedAt",
    },
    "reactionUpdate": {
        "reaction_type": "reactionType",
        "update_type": "updateType",
        "created_at": "createdAt",
    },
    "messageEvent": {
        "message_text": "messageText",
        "message_type": "messageType",
        "message_attachments": "attachments",
        "message_created_at": "createdAt",
        "message_read_at": "readAt",
    },
    "leadGenFormUpdate": {
        "lead_id": "leadId",
        "form_id": "formId",
        "form_name": "formName",
        "lead_data": "leadData",
        "created_at": "createdAt",
        "campaign_id": "campaignId",
        "ad_id": "adId",
    },
    "organizationUpdate": {
        "name": "name",
        "description": "description",
        "website_url": "websiteUrl",
        "industry": "industry",
        "company_size": "companySize",
        "headquarters": "headquarters",
        "founded": "founded",
        "specialties": "specialties",
        "logo_url": "logoUrl",
        "universal_name": "universalName",
        "update_type": "updateType",
    },
}


class LinkedInEventNormalizer(BaseEventNormalizer):
    platform = "linkedin"
    object_id_paths = (
        "shareUpdate.shareId",
        "commentUpdate.commentId",
        "commentUpdate.shareId",
        "reactionUpdate.shareId",
        "personUpdate.personId",
        "organizationUpdate.organizationId",
        "connectionUpdate.personId",
        "messageEvent.messageId",
        "messageEvent.conversationId",
        "leadGenFormUpdate.leadId",
        "leadGenFormUpdate.formId",
    )

    def classify_event_type(self, payload: Any) -> str | None:
        if has_path(payload, "shareUpdate"):
            update = as_mapping(get_path(payload, "shareUpdate"))
            update_type = update.get("updateType")
            if update.get("shareId") is not None and isinstance(update_type, str):
                return SHARE_UPDATE_TYPES.get(update_type, "engagement")
            return "engagement"
        return first_present(payload, UPDATE_KEY_EVENT_TYPES)

    def object_type(self, payload: Any) -> str:
        return first_present(payload, UPDATE_KEY_OBJECT_TYPES) or UNKNOWN

    def platform_metrics(self, payload: Any) -> dict[str, int]:
        metrics: dict[str, int] = {}
        for key, fields in _METRICS.items():
            update = section(payload, key)
            if update:
                metrics.update(numeric_metrics(update, fields))
        return metrics

    def platform_user_info(self, payload: Any) -> dict[str, Any]:
        return self._collect(payload, _USER_FIELDS)

    def platform_content_info(self, payload: Any) -> dict[str, Any]:
        return self._collect(payload, _CONTENT_FIELDS)

    @staticmethod
    def _collect(payload: Any, table: dict[str, dict[str, str]]) -> dict[str, Any]:
        collected: dict[str, Any] = {}
        for key, fields in table.items():
            update = section(payload, key)
            if update:
                collected.update(fields_from(update, fields))
        return collected
