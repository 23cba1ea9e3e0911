"""
Tests for configuration and stream URL derivation.
"""

import pytest

from marketsync.config import StreamConfig, derive_ws_url


# =============================================================================
# URL Derivation
# =============================================================================


class TestDeriveWsUrl:
    """Tests for the scheme rewrite applied to the backend base URL."""

    @pytest.mark.parametrize(
        "base_url,page_scheme,expected",
        [
            # localhost always maps its own scheme
            ("http://localhost:8000", "https", "ws://localhost:8000/ws"),
            ("http://localhost:8000", "http", "ws://localhost:8000/ws"),
            ("https://localhost:8443", "http", "wss://localhost:8443/ws"),
            # other hosts follow the page's security context
            ("https://worker.example.com", "https", "wss://worker.example.com/ws"),
            ("http://worker.example.com", "http", "ws://worker.example.com/ws"),
            ("http://worker.example.com", "https", "http://worker.example.com/ws"),
            ("https://worker.example.com", "http", "https://worker.example.com/ws"),
        ],
    )
    def test_scheme_mapping(self, base_url, page_scheme, expected):
        assert derive_ws_url(base_url, page_scheme) == expected

    def test_trailing_slash_not_doubled(self):
        assert derive_ws_url("https://worker.example.com/", "https") == "wss://worker.example.com/ws"

    def test_base_path_kept(self):
        assert derive_ws_url("https://example.com/api", "https") == "wss://example.com/api/ws"

    def test_custom_path(self):
        assert derive_ws_url("http://localhost:8000", "https", "/stream") == "ws://localhost:8000/stream"

    def test_page_scheme_with_colon(self):
        assert derive_ws_url("https://worker.example.com", "https:") == "wss://worker.example.com/ws"

    def test_unknown_scheme_passes_through(self):
        assert derive_ws_url("wss://worker.example.com", "https") == "wss://worker.example.com/ws"


# =============================================================================
# StreamConfig
# =============================================================================


class TestStreamConfig:
    """Tests for StreamConfig."""

    def test_ws_url_property(self):
        config = StreamConfig(base_url="https://worker.example.com", page_scheme="https")
        assert config.ws_url == "wss://worker.example.com/ws"

    def test_validate_ok(self, stream_config):
        assert stream_config.validate() is True

    def test_validate_rejects_non_positive_heartbeat(self):
        with pytest.raises(ValueError, match="heartbeat_interval"):
            StreamConfig(heartbeat_interval=0).validate()

    def test_validate_rejects_inverted_delays(self):
        with pytest.raises(ValueError, match="reconnect_max_delay"):
            StreamConfig(reconnect_base_delay=10, reconnect_max_delay=5).validate()

    def test_validate_rejects_negative_attempts(self):
        with pytest.raises(ValueError, match="max_reconnect_attempts"):
            StreamConfig(max_reconnect_attempts=-1).validate()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("STREAM_BASE_URL", "https://stream.example.com")
        monkeypatch.setenv("PAGE_SCHEME", "https")
        monkeypatch.setenv("HEARTBEAT_INTERVAL", "15")
        monkeypatch.setenv("MAX_RECONNECT_ATTEMPTS", "3")

        config = StreamConfig.from_env()

        assert config.ws_url == "wss://stream.example.com/ws"
        assert config.heartbeat_interval == 15.0
        assert config.max_reconnect_attempts == 3
