"""
Event Normalizers - one per platform, all producing NormalizedEvent.
"""
from app.domain.webhooks.normalizers.base import BaseEventNormalizer, NormalizedEvent, StoredEvent
from app.domain.webhooks.normalizers.facebook import FacebookEventNormalizer
from app.domain.webhooks.normalizers.instagram import InstagramEventNormalizer
from app.domain.webhooks.normalizers.linkedin import LinkedInEventNormalizer
from app.domain.webhooks.normalizers.twitter import TwitterEventNormalizer
from app.domain.webhooks.platforms import Platform

_NORMALIZERS: dict[Platform, BaseEventNormalizer] = {
    Platform.FACEBOOK: FacebookEventNormalizer(),
    Platform.INSTAGRAM: InstagramEventNormalizer(),
    Platform.TWITTER: TwitterEventNormalizer(),
    Platform.LINKEDIN: LinkedInEventNormalizer(),
}


def get_normalizer(platform: Platform | str) -> BaseEventNormalizer:
    """Normalizer for a platform. Instances are stateless and shared."""
    return _NORMALIZERS[Platform(platform)]


__all__ = [
    "BaseEventNormalizer",
    "NormalizedEvent",
    "StoredEvent",
    "FacebookEventNormalizer",
    "InstagramEventNormalizer",
    "LinkedInEventNormalizer",
    "TwitterEventNormalizer",
    "get_normalizer",
]
