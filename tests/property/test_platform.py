"""Property tests for platform detection from an ingest URL."""

import pytest
from hypothesis import assume, given, settings, strategies as st

from streamflow.services.platform import FALLBACK_PLATFORM, PLATFORM_KEYWORDS, detect_platform

known_keywords = st.sampled_from(PLATFORM_KEYWORDS)
filler = st.text(alphabet="0123456789/:.-_", max_size=20)


class TestDetectPlatform:
    @settings(max_examples=100)
    @given(entry=known_keywords, prefix=filler, suffix=filler)
    def test_keyword_anywhere_in_url_is_detected(self, entry, prefix: str, suffix: str) -> None:
        keyword, label = entry

        assert detect_platform(f"rtmp://{prefix}{keyword.upper()}{suffix}") == label

    @settings(max_examples=100)
    @given(url=st.text(max_size=60))
    def test_unknown_url_falls_back(self, url: str) -> None:
        lowered = url.lower()
        assume(not any(keyword in lowered for keyword, _ in PLATFORM_KEYWORDS))

        assert detect_platform(url) == FALLBACK_PLATFORM

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("rtmp://a.rtmp.youtube.com/live2", "YouTube"),
            ("rtmps://live-api-s.facebook.com:443/rtmp/", "Facebook"),
            ("rtmp://live.twitch.tv/app", "Twitch"),
            ("rtmp://push.tiktokcdn.com/live", "TikTok"),
            ("rtmps://live-upload.instagram.com:443/rtmp/", "Instagram"),
            ("rtmp://live.shopee.co.id/live", "Shopee Live"),
            ("rtmp://live.restream.io/live", "Restream.io"),
            ("rtmp://my-own-server.example/live", "Custom"),
            ("", "Custom"),
            (None, "Custom"),
        ],
    )
    def test_known_endpoints(self, url, expected: str) -> None:
        assert detect_platform(url) == expected

    def test_first_listed_keyword_wins(self) -> None:
        assert detect_platform("rtmp://youtube.restream.io/live") == "YouTube"
