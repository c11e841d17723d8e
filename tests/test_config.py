"""
ReelProxy — Settings Unit Tests
================================

What we test:
    ✅ Upstream base normalised, non-http(s) bases rejected
    ✅ Method allow-list parsing
    ✅ Log level validation
    ✅ Missing token reported by the startup check
"""

import pytest
from pydantic import ValidationError

from reelproxy.config import Settings


class TestSettings:

    def test_api_url_trailing_slash_stripped(self):
        s = Settings(api_url="https://API.Example.test/3/")
        assert s.api_url == "https://API.Example.test/3"
        assert s.upstream_host == "api.example.test"

    @pytest.mark.parametrize("bad", ["ftp://api.example.test/3", "api.example.test/3", "https://"])
    def test_api_url_must_be_absolute_http(self, bad):
        with pytest.raises(ValidationError):
            Settings(api_url=bad)

    def test_allowed_methods_list(self):
        s = Settings(allowed_methods=" get, Post ,,DELETE")
        assert s.allowed_methods_list == ["GET", "POST", "DELETE"]

    def test_empty_allowed_methods_rejected(self):
        with pytest.raises(ValidationError):
            Settings(allowed_methods=" , ")

    def test_log_level_normalised(self):
        assert Settings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Settings(log_level="chatty")

    def test_missing_token_fails_startup_check(self):
        with pytest.raises(ValueError, match="API_ACCESS_TOKEN"):
            Settings(api_access_token="").validate_required_for_production()

    def test_token_present_passes_startup_check(self):
        Settings(api_access_token="abc").validate_required_for_production()
