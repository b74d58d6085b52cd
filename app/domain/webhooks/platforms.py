"""
Supported webhook platforms and platform resolution.
"""
from enum import Enum

from app.core.exceptions import UnsupportedPlatformError

PLATFORM_HEADER = "X-Webhook-Platform"


class Platform(str, Enum):
    """Closed set of platforms the gateway accepts deliveries from"""

    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    TWITTER = "twitter"
    LINKEDIN = "linkedin"

    @property
    def is_meta(self) -> bool:
        """Facebook and Instagram share the Graph API webhook protocol"""
        return self in (Platform.FACEBOOK, Platform.INSTAGRAM)


def resolve_platform(path_value: str | None, header_value: str | None = None) -> Platform:
    """
    Resolve the platform from the URL path, then from X-Webhook-Platform.

    Raises:
        UnsupportedPlatformError: neither value names a supported platform
    """
    for candidate in (path_value, header_value):
        if not candidate:
            continue
        try:
            return Platform(candidate.strip().lower())
        except ValueError:
            continue
    raise UnsupportedPlatformError(path_value or header_value)
