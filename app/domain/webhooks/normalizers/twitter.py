"""
Twitter Account Activity API webhooks.

Each delivery carries one top-level *_events list; the first key present
decides the event and object type.
"""
from typing import Any

from app.domain.webhooks.normalizers.base import UNKNOWN, BaseEventNormalizer, fields_from, first_present, section
from app.domain.webhooks.payload import compact, first_path, get_path, to_int

# Checked in order, first present key wins
EVENT_KEY_TYPES = (
    ("tweet_create_events", "created"),
    ("tweet_delete_events", "deleted"),
    ("favorite_events", "engagement"),
    ("tweet_retweet_events", "engagement"),
    ("quote_tweet_events", "engagement"),
    ("follow_events", "followed"),
    ("unfollow_events", "unfollowed"),
    ("user_update_events", "updated"),
    ("direct_message_events", "message_received"),
    ("tweet_welcome_events", "welcome"),
    ("tweet_welcome_message_events", "welcome_message"),
)

OBJECT_KEY_TYPES = (
    ("tweet_create_events", "post"),
    ("tweet_delete_events", "post"),
    ("favorite_events", "post"),
    ("tweet_retweet_events", "post"),
    ("quote_tweet_events", "post"),
    ("follow_events", "user"),
    ("unfollow_events", "user"),
    ("user_update_events", "user"),
    ("direct_message_events", "message"),
)

_TWEET = "tweet_create_events.0"

_USER_PROFILE = {
    "user_id": "id_str",
    "username": "screen_name",
    "name": "name",
    "location": "location",
    "description": "description",
    "url": "url",
    "protected": "protected",
    "verified": "verified",
    "followers_count": "followers_count",
    "following_count": "friends_count",
    "profile_image_url": "profile_image_url_https",
    "profile_banner_url": "profile_banner_url",
}

_TWEET_CONTENT = {
    "text": "text",
    "created_at": "created_at",
    "lang": "lang",
    "source": "source",
    "in_reply_to_status_id": "in_reply_to_status_id_str",
    "in_reply_to_user_id": "in_reply_to_user_id_str",
    "in_reply_to_screen_name": "in_reply_to_screen_name",
    "quoted_status_id": "quoted_status_id_str",
    "possibly_sensitive": "possibly_sensitive",
    "is_quote_status": "is_quote_status",
    "truncated": "truncated",
    "extended_tweet": "extended_tweet",
    "entities": "entities",
    "extended_entities": "extended_entities",
    "place": "place",
    "coordinates": "coordinates",
    "retweeted_status": "retweeted_status",
    "quoted_status": "quoted_status",
}

_DM_CONTENT = {
    "message_text": "message_create.message_data.text",
    "message_entities": "message_create.message_data.entities",
    "message_attachment": "message_create.message_data.attachment",
    "message_quick_reply": "message_create.message_data.quick_reply",
    "message_created_at": "created_timestamp",
}

_PROFILE_CONTENT = {
    name: name for name in (
        "description",
        "url",
        "location",
        "profile_image_url",
        "profile_banner_url",
        "profile_background_color",
        "profile_link_color",
        "profile_sidebar_border_color",
        "profile_sidebar_fill_color",
        "profile_text_color",
        "profile_use_background_image",
        "profile_background_tile",
    )
}
_PROFILE_CONTENT["profile_background_image_url"] = "profile_background_image_url_https"


class TwitterEventNormalizer(BaseEventNormalizer):
    platform = "twitter"
    object_id_paths = (
        f"{_TWEET}.id_str",
        "tweet_delete_events.0.tweet.id_str",
        "favorite_events.0.favorited_tweet.id_str",
        "tweet_retweet_events.0.retweeted_tweet.id_str",
        "quote_tweet_events.0.quoted_tweet.id_str",
        "follow_events.0.source.id_str",
        "follow_events.0.target.id_str",
        "user_update_events.0.id_str",
        "direct_message_events.0.id",
        "direct_message_events.0.message_create.sender_id",
    )

    def classify_event_type(self, payload: Any) -> str | None:
        return first_present(payload, EVENT_KEY_TYPES)

    def object_type(self, payload: Any) -> str:
        return first_present(payload, OBJECT_KEY_TYPES) or UNKNOWN

    def platform_metrics(self, payload: Any) -> dict[str, int]:
        metrics = {
            "retweet_count": first_path(payload, (f"{_TWEET}.retweet_count", "tweet_retweet_events.0.retweeted_tweet.retweet_count")),
            "favorite_count": first_path(payload, (f"{_TWEET}.favorite_count", "favorite_events.0.favorited_tweet.favorite_count")),
            "reply_count": get_path(payload, f"{_TWEET}.reply_count"),
            "quote_count": first_path(payload, (f"{_TWEET}.quote_count", "quote_tweet_events.0.quoted_tweet.quote_count")),
        }

        user = section(payload, "user_update_events.0")
        if user:
            metrics.update({
                "followers_count": user.get("followers_count"),
                "following_count": user.get("friends_count"),
                "tweets_count": user.get("statuses_count"),
                "listed_count": user.get("listed_count"),
                "favourites_count": user.get("favourites_count"),
            })

        follow = section(payload, "follow_events.0")
        if follow:
            metrics["source_followers_count"] = get_path(follow, "source.followers_count")
            metrics["target_followers_count"] = get_path(follow, "target.followers_count")

        return compact({key: to_int(value) for key, value in metrics.items()})

    def platform_user_info(self, payload: Any) -> dict[str, Any]:
        info: dict[str, Any] = {}

        author = section(payload, f"{_TWEET}.user")
        if author:
            info.update(fields_from(author, _USER_PROFILE))

        follow = section(payload, "follow_events.0")
        if follow:
            info.update(fields_from(follow, {
                "source_user_id": "source.id_str",
                "source_username": "source.screen_name",
                "source_name": "source.name",
                "target_user_id": "target.id_str",
                "target_username": "target.screen_name",
                "target_name": "target.name",
            }))

        updated = section(payload, "user_update_events.0")
        if updated:
            info.update(fields_from(updated, _USER_PROFILE))

        message = section(payload, "direct_message_events.0")
        if message:
            info.update(fields_from(message, {
                "sender_id": "message_create.sender_id",
                "target_id": "message_create.target.recipient_id",
                "sender_screen_name": "message_create.sender_screen_name",
                "target_screen_name": "message_create.target.screen_name",
            }))

        # Engagement events name the acting user
        info.update(fields_from(payload, {
            "favorited_by": "favorite_events.0.user.id_str",
            "retweeted_by": "tweet_retweet_events.0.user.id_str",
            "quoted_by": "quote_tweet_events.0.user.id_str",
        }))
        return info

    def platform_content_info(self, payload: Any) -> dict[str, Any]:
        content: dict[str, Any] = {}

        tweet = section(payload, _TWEET)
        if tweet:
            content.update(fields_from(tweet, _TWEET_CONTENT))

        message = section(payload, "direct_message_events.0")
        if message:
            content.update(fields_from(message, _DM_CONTENT))

        updated = section(payload, "user_update_events.0")
        if updated:
            content.update(fields_from(updated, _PROFILE_CONTENT))

        return content
