"""Destination endpoint to provider label."""

# Ordered; first keyword found in the lower-cased endpoint wins.
PLATFORM_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("youtube", "YouTube"),
    ("facebook", "Facebook"),
    ("twitch", "Twitch"),
    ("tiktok", "TikTok"),
    ("instagram", "Instagram"),
    ("shopee", "Shopee Live"),
    ("restream", "Restream.io"),
)

FALLBACK_PLATFORM = "Custom"


def detect_platform(endpoint: str | None) -> str:
    """Return the provider label for an ingest URL."""
    if not endpoint:
        return FALLBACK_PLATFORM

    url = endpoint.lower()
    for keyword, label in PLATFORM_KEYWORDS:
        if keyword in url:
            return label
    return FALLBACK_PLATFORM
