"""
Envelope extraction and delivery filters.

extract_envelope() reads the few fields needed to persist a delivery:
the delivery-level event_type (e.g. "post_created", "tweet_favorited"), the
platform-native event id and the object the event is about. The object
classification is shared with the normalizers so a stored event and its
normalized form always agree.

should_ignore() holds the per-config filters the worker applies before an
event is marked processed.

Neither function raises on a malformed payload.
"""
from dataclasses import dataclass
from typing import Any

from app.db.models.webhook_config import WebhookConfig
from app.domain.webhooks.normalizers import get_normalizer
from app.domain.webhooks.normalizers.base import UNKNOWN, section
from app.domain.webhooks.payload import as_mapping, first_id, get_path, has_path
from app.domain.webhooks.platforms import Platform


@dataclass(frozen=True)
class EventEnvelope:
    """Minimal fields needed to persist and later normalize a delivery"""

    event_type: str
    event_id: str | None = None
    object_type: str | None = None
    object_id: str | None = None


def _label(value: Any) -> str:
    return value if isinstance(value, str) and value else UNKNOWN


# ==================== Facebook ====================

FACEBOOK_MESSAGING_TYPES = (
    ("message", "message_received"),
    ("delivery", "message_delivered"),
    ("read", "message_read"),
    ("postback", "postback_received"),
    ("optin", "optin_received"),
    ("referral", "referral_received"),
    ("account_linking", "account_linking"),
)

FACEBOOK_FEED_TYPES = {
    "add:status": "post_created",
    "add:photo": "photo_added",
    "add:video": "video_added",
    "add:comment": "comment_added",
    "add:like": "post_liked",
    "add:share": "post_shared",
    "edit:status": "post_edited",
    "edit:photo": "photo_edited",
    "edit:video": "video_edited",
    "edit:comment": "comment_edited",
    "remove:status": "post_deleted",
    "remove:photo": "photo_deleted",
    "remove:video": "video_deleted",
    "remove:comment": "comment_deleted",
    "remove:like": "post_unliked",
}

FACEBOOK_FIELD_TYPES = {
    "conversations": "conversation_updated",
    "live_videos": "live_video_updated",
    "ratings": "rating_updated",
    "mentioned_comment": "comment_mention",
    "mentioned_post": "post_mention",
    "message_reactions": "message_reaction_updated",
    "messaging_postbacks": "postback_received",
    "messaging_optins": "optin_received",
    "messaging_referrals": "referral_received",
    "leadgen": "lead_generated",
}

FACEBOOK_STANDBY_TYPES = {
    "feed": "standby_feed_update",
    "conversations": "standby_conversation_update",
    "message_reactions": "standby_message_reaction",
}


def _messaging_event_type(messaging: dict[str, Any], table: tuple[tuple[str, str], ...]) -> str:
    for key, event_type in table:
        if key in messaging:
            return event_type
    return "messaging_unknown"


def _facebook_event(payload: Any) -> tuple[str, str | None]:
    entry = section(payload, "entry.0")
    if entry is None:
        return UNKNOWN, None

    messaging = section(entry, "messaging.0")
    if messaging:
        event_id = first_id(messaging, ("message.mid", "sender.id"))
        return _messaging_event_type(messaging, FACEBOOK_MESSAGING_TYPES), event_id

    change = section(entry, "changes.0")
    if change:
        field_name = _label(change.get("field"))
        value = as_mapping(change.get("value"))
        event_id = first_id(value, ("post_id", "comment_id", "leadgen_id", "id"))
        if field_name == "feed":
            verb, item = _label(value.get("verb")), _label(value.get("item"))
            return FACEBOOK_FEED_TYPES.get(f"{verb}:{item}", f"feed_{verb}_{item}"), event_id
        return FACEBOOK_FIELD_TYPES.get(field_name, field_name), event_id

    standby = section(entry, "standby.0")
    if standby:
        field_name = _label(standby.get("field"))
        event_id = first_id(standby, ("value.post_id", "value.id"))
        return FACEBOOK_STANDBY_TYPES.get(field_name, f"standby_{field_name}"), event_id

    return UNKNOWN, None


# ==================== Instagram ====================

INSTAGRAM_FIELD_TYPES = {
    "mentions": "user_mentioned",
    "story_insights": "story_insights_updated",
    "user_insights": "user_insights_updated",
    "mentions_comment": "comment_mention",
    "mentions_media_comment": "media_comment_mention",
    "mentions_user_bio": "bio_mention",
    "business_account": "business_account_updated",
    "messaging_handover": "messaging_handover",
    "messaging_referrals": "messaging_referral",
    "messaging_postbacks": "messaging_postback",
    "messaging_optins": "messaging_optin",
}

INSTAGRAM_STANDBY_TYPES = {
    "media": "standby_media_update",
    "comments": "standby_comment_update",
    "mentions": "standby_mention",
    "story_insights": "standby_story_insights",
    "user_insights": "standby_user_insights",
}

# story_reply is checked before message: a story reply also carries a message
INSTAGRAM_MESSAGING_TYPES = (
    ("story_reply", "story_reply_received"),
    ("message", "message_received"),
    ("delivery", "message_delivered"),
    ("read", "message_read"),
    ("postback", "postback_received"),
    ("optin", "optin_received"),
    ("referral", "referral_received"),
)

_INSTAGRAM_ID_KEYS = ("media_id", "comment_id", "media_comment_id", "story_id", "user_id", "id")


def _instagram_change_type(field_name: str, value: dict[str, Any]) -> str:
    verb = _label(value.get("verb"))
    if field_name == "media":
        return f"media_{verb}"
    if field_name == "comments":
        return f"comment_{verb}"
    if field_name == "standby":
        inner = _label(value.get("field"))
        return INSTAGRAM_STANDBY_TYPES.get(inner, f"standby_{inner}")
    return INSTAGRAM_FIELD_TYPES.get(field_name, field_name)


def _instagram_event(payload: Any) -> tuple[str, str | None]:
    entry = section(payload, "entry.0")
    if entry is None:
        return UNKNOWN, None

    change = section(entry, "changes.0")
    if change:
        value = as_mapping(change.get("value"))
        return _instagram_change_type(_label(change.get("field")), value), first_id(value, _INSTAGRAM_ID_KEYS)

    messaging = section(entry, "messaging.0")
    if messaging:
        event_id = first_id(messaging, ("message.mid", "sender.id"))
        return _messaging_event_type(messaging, INSTAGRAM_MESSAGING_TYPES), event_id

    return UNKNOWN, None


# ==================== Twitter ====================

TWITTER_LIST_TYPES = {
    "member_added": "list_member_added",
    "member_removed": "list_member_removed",
    "created": "list_created",
    "updated": "list_updated",
    "destroyed": "list_destroyed",
    "user_subscribed": "list_user_subscribed",
    "user_unsubscribed": "list_user_unsubscribed",
}


def _activity(event: dict[str, Any], default: str) -> str:
    """Action name of a favorite/follow event. Older payloads use "event", newer ones "type"."""
    action = event.get("event", event.get("type"))
    return action if isinstance(action, str) else default


def _tweet_create_type(tweet: dict[str, Any]) -> str:
    if tweet.get("retweeted_status"):
        return "tweet_retweeted"
    if tweet.get("quoted_status"):
        return "tweet_quoted"
    if tweet.get("in_reply_to_status_id_str"):
        return "tweet_replied"
    return "tweet_created"


def _twitter_event(payload: Any) -> tuple[str, str | None]:
    if has_path(payload, "direct_message_events"):
        return "direct_message_received", first_id(payload, ("direct_message_events.0.id",))

    if has_path(payload, "tweet_create_events"):
        tweet = as_mapping(get_path(payload, "tweet_create_events.0"))
        return _tweet_create_type(tweet), first_id(tweet, ("id_str",))

    if has_path(payload, "tweet_delete_events"):
        return "tweet_deleted", first_id(payload, ("tweet_delete_events.0.tweet.id_str", "tweet_delete_events.0.status.id"))

    if has_path(payload, "favorite_events"):
        favorite = as_mapping(get_path(payload, "favorite_events.0"))
        event_type = "tweet_favorited" if _activity(favorite, "favorite") == "favorite" else "tweet_unfavorited"
        return event_type, first_id(favorite, ("created_timestamp", "id"))

    if has_path(payload, "follow_events"):
        follow = as_mapping(get_path(payload, "follow_events.0"))
        event_type = "user_followed" if _activity(follow, "follow") == "follow" else "user_unfollowed"
        return event_type, first_id(follow, ("created_timestamp",))

    if has_path(payload, "tweet_retweet_events"):
        return "tweet_retweeted", first_id(payload, ("tweet_retweet_events.0.created_timestamp", "tweet_retweet_events.0.id_str"))

    if has_path(payload, "quote_tweet_events"):
        return "tweet_quoted", first_id(payload, ("quote_tweet_events.0.created_timestamp", "quote_tweet_events.0.id_str"))

    if has_path(payload, "user_update_events"):
        return "user_updated", first_id(payload, ("user_update_events.0.created_timestamp", "user_update_events.0.id_str"))

    if has_path(payload, "list_events"):
        list_event = as_mapping(get_path(payload, "list_events.0"))
        action = _label(list_event.get("event"))
        return TWITTER_LIST_TYPES.get(action, f"list_{action}"), first_id(list_event, ("created_timestamp",))

    return UNKNOWN, None


# ==================== LinkedIn ====================

LINKEDIN_EVENT_TYPES = {
    "SHARE_CREATED:share": "share_created",
    "SHARE_UPDATED:share": "share_updated",
    "SHARE_DELETED:share": "share_deleted",
    "COMMENT_CREATED:comment": "comment_created",
    "COMMENT_UPDATED:comment": "comment_updated",
    "COMMENT_DELETED:comment": "comment_deleted",
    "REACTION_CREATED:reaction": "reaction_created",
    "REACTION_DELETED:reaction": "reaction_deleted",
    "PERSON_UPDATED:person": "person_updated",
    "ORGANIZATION_UPDATED:organization": "organization_updated",
}

LINKEDIN_PERSON_TYPES = {
    "PROFILE_UPDATED": "person_profile_updated",
    "POSITION_UPDATED": "person_position_updated",
    "EDUCATION_UPDATED": "person_education_updated",
    "SKILLS_UPDATED": "person_skills_updated",
    "PICTURE_UPDATED": "person_picture_updated",
    "CONNECTION_ADDED": "person_connection_added",
    "CONNECTION_REMOVED": "person_connection_removed",
}

LINKEDIN_ORGANIZATION_TYPES = {
    "COMPANY_UPDATED": "organization_updated",
    "EMPLOYEE_ADDED": "organization_employee_added",
    "EMPLOYEE_REMOVED": "organization_employee_removed",
    "ADMIN_ADDED": "organization_admin_added",
    "ADMIN_REMOVED": "organization_admin_removed",
    "FOLLOWER_GAINED": "organization_follower_gained",
    "FOLLOWER_LOST": "organization_follower_lost",
    "PAGE_UPDATED": "organization_page_updated",
}


def _linkedin_event(payload: Any) -> tuple[str, str | None]:
    event = section(payload, "event")
    if event:
        event_type, event_object = _label(event.get("eventType")), _label(event.get("object"))
        default = f"{event_type}_{event_object}".lower()
        return LINKEDIN_EVENT_TYPES.get(f"{event_type}:{event_object}", default), first_id(event, ("id",))

    share = section(payload, "shareUpdate")
    if share:
        update = _label(share.get("updateType")).lower()
        return f"share_{update}", first_id(share, ("updateKey", "shareId"))

    comment = section(payload, "commentUpdate")
    if comment:
        update = _label(comment.get("updateType")).lower()
        return f"comment_{update}", first_id(comment, ("updateKey", "commentId"))

    reaction = section(payload, "reactionUpdate")
    if reaction:
        update = _label(reaction.get("updateType")).lower()
        reaction_type = _label(reaction.get("reactionType")).lower()
        return f"reaction_{update}_{reaction_type}", first_id(reaction, ("updateKey", "reactionId"))

    person = section(payload, "personUpdate")
    if person:
        update = _label(person.get("updateType"))
        event_type = LINKEDIN_PERSON_TYPES.get(update, f"person_{update.lower()}")
        return event_type, first_id(person, ("updateKey", "personId"))

    organization = section(payload, "organizationUpdate")
    if organization:
        update = _label(organization.get("updateType"))
        event_type = LINKEDIN_ORGANIZATION_TYPES.get(update, f"organization_{update.lower()}")
        return event_type, first_id(organization, ("updateKey", "organizationId"))

    return UNKNOWN, None


_EVENT_EXTRACTORS = {
    Platform.FACEBOOK: _facebook_event,
    Platform.INSTAGRAM: _instagram_event,
    Platform.TWITTER: _twitter_event,
    Platform.LINKEDIN: _linkedin_event,
}


def extract_envelope(platform: Platform | str, payload: Any) -> EventEnvelope:
    """
    Envelope for a decoded delivery.

    Unrecognised shapes give event_type="unknown". object_type is None rather
    than "unknown" when the payload names no object.
    """
    platform = Platform(platform)
    event_type, event_id = _EVENT_EXTRACTORS[platform](payload)

    normalizer = get_normalizer(platform)
    object_type = normalizer.object_type(payload)
    return EventEnvelope(
        event_type=event_type,
        event_id=event_id,
        object_type=None if object_type == UNKNOWN else object_type,
        object_id=normalizer.object_id(payload),
    )


# ==================== Filters ====================

def _twitter_ignore_reason(settings: dict[str, Any], payload: Any) -> str | None:
    tweet = section(payload, "tweet_create_events.0")
    if tweet is None:
        return None

    if settings.get("ignore_own_tweets"):
        account_id = first_id(payload, ("for_user_id",)) or first_id(settings, ("user_id",))
        author_id = first_id(tweet, ("user.id_str",))
        if account_id and author_id and account_id == author_id:
            return "own tweet"

    if settings.get("ignore_retweets") and tweet.get("retweeted_status"):
        return "retweet"
    return None


def _linkedin_ignore_reason(settings: dict[str, Any], payload: Any) -> str | None:
    owner_id = first_id(settings, ("platform_id",))

    if settings.get("ignore_own_shares") and owner_id:
        if first_id(payload, ("shareUpdate.owner",)) == owner_id:
            return "own share"

    if settings.get("ignore_comments_on_own_posts") and owner_id:
        if first_id(payload, ("commentUpdate.shareOwner",)) == owner_id:
            return "comment on own post"

    allowed = settings.get("allowed_reaction_types")
    reaction_type = get_path(payload, "reactionUpdate.reactionType")
    if isinstance(allowed, list) and reaction_type is not None and reaction_type not in allowed:
        return f"reaction type {reaction_type} not allowed"
    return None


def should_ignore(config: WebhookConfig, event_type: str, payload: Any) -> str | None:
    """
    Reason to mark a delivery ignored, or None to process it.

    An empty subscription list means every event type is wanted.
    """
    if config.events and not config.is_subscribed_to(event_type):
        return f"not subscribed to {event_type}"

    settings = config.settings
    platform = Platform(config.platform)
    if platform == Platform.TWITTER:
        return _twitter_ignore_reason(settings, payload)
    if platform == Platform.LINKEDIN:
        return _linkedin_ignore_reason(settings, payload)
    return None
