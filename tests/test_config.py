"""Tests for config.py environment variable parsing helpers."""

import logging
import os
from unittest import mock


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        """Should return default value when environment variable is not set."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_int_env("NONEXISTENT_VAR", 42)
            assert result == 42

    def test_parses_valid_integer(self):
        """Should parse valid integer from environment variable."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "123"}):
            result = get_int_env("TEST_INT", 0)
            assert result == 123

    def test_returns_default_on_invalid_value(self, caplog):
        """Should return default and log warning when value is not a valid integer."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "abc"}):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("TEST_INT", 42)
                assert result == 42
                assert "Invalid TEST_INT='abc'" in caplog.text
                assert "using default 42" in caplog.text

    def test_returns_default_on_float_value(self, caplog):
        """Should return default when value contains a decimal point."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "3.14"}):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("TEST_INT", 42)
                assert result == 42

    def test_min_validation_enforced(self, caplog):
        """Should return default when value is below minimum."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "0"}):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("TEST_INT", 10, min_val=1)
                assert result == 10
                assert "below minimum" in caplog.text

    def test_max_validation_enforced(self, caplog):
        """Should return default when value is above maximum."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "70000"}):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("TEST_INT", 8080, max_val=65535)
                assert result == 8080
                assert "above maximum" in caplog.text

    def test_value_within_range_accepted(self):
        """Should accept value that is within min/max range."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "9000"}):
            result = get_int_env("TEST_INT", 8080, min_val=1, max_val=65535)
            assert result == 9000

    def test_empty_string_is_unset(self, caplog):
        """An empty value falls back to the default without a warning."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "  "}):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("TEST_INT", 42)
                assert result == 42
                assert caplog.text == ""

    def test_no_warning_when_env_not_set_with_validation(self, caplog):
        """Should not log warning when env is not set, even if default would fail validation."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {}, clear=True):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("NONEXISTENT_VAR", 0, min_val=1)
                assert result == 0
                assert caplog.text == ""


class TestGetBoolEnv:
    """Tests for get_bool_env helper function."""

    def test_truthy_values(self):
        from config import get_bool_env

        for value in ("1", "true", "TRUE", "yes", "on", " True "):
            with mock.patch.dict(os.environ, {"TEST_FLAG": value}):
                assert get_bool_env("TEST_FLAG", False) is True

    def test_falsy_values(self):
        from config import get_bool_env

        for value in ("0", "false", "no", "off", "maybe"):
            with mock.patch.dict(os.environ, {"TEST_FLAG": value}):
                assert get_bool_env("TEST_FLAG", True) is False

    def test_default_when_unset_or_blank(self):
        from config import get_bool_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_bool_env("TEST_FLAG", True) is True
        with mock.patch.dict(os.environ, {"TEST_FLAG": ""}):
            assert get_bool_env("TEST_FLAG", False) is False


class TestParseCsvEnv:
    """Tests for parse_csv_env, used for CORS origins and trusted proxies."""

    def test_splits_and_strips(self):
        from config import parse_csv_env

        assert parse_csv_env("http://a.test, https://b.test ,http://c.test") == [
            "http://a.test",
            "https://b.test",
            "http://c.test",
        ]

    def test_drops_blanks(self):
        from config import parse_csv_env

        assert parse_csv_env(" , ,") == []
        assert parse_csv_env("a,,b,") == ["a", "b"]


class TestPortValidation:
    """Tests for port number validation in config."""

    def test_port_validates_range(self, caplog):
        """PORT should reject invalid port numbers."""
        from config import get_int_env

        # Port 0 is below minimum
        with mock.patch.dict(os.environ, {"PORT": "0"}):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("PORT", 8080, min_val=1, max_val=65535)
                assert result == 8080

        caplog.clear()

        # Port above 65535 is invalid
        with mock.patch.dict(os.environ, {"PORT": "70000"}):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("PORT", 8080, min_val=1, max_val=65535)
                assert result == 8080


class TestQualityLadder:
    """The fixed transcoding ladder."""

    def test_ladder_order(self):
        """Rungs run bottom-up, lowest resolution first."""
        from config import QUALITY_LADDER

        assert [q["name"] for q in QUALITY_LADDER] == ["240p", "360p", "480p", "720p", "1080p"]
        heights = [q["height"] for q in QUALITY_LADDER]
        assert heights == sorted(heights)

    def test_resolution_matches_height(self):
        from config import QUALITY_LADDER

        for quality in QUALITY_LADDER:
            assert quality["resolution"].endswith(f"x{quality['height']}")
            assert quality["bitrate"].endswith("k")

    def test_original_is_not_a_rung(self):
        from config import ORIGINAL_QUALITY, QUALITY_NAMES

        assert ORIGINAL_QUALITY not in QUALITY_NAMES


class TestTestModeSettings:
    """Settings taken from the test environment."""

    def test_media_path_from_env(self):
        from config import MEDIA_PATH

        assert str(MEDIA_PATH) == os.environ["MEDIA_PATH"]

    def test_upload_caps(self):
        from config import MAX_IMAGE_UPLOAD_SIZE, MAX_VIDEO_UPLOAD_SIZE

        assert MAX_VIDEO_UPLOAD_SIZE == 500 * 1024 * 1024
        assert MAX_IMAGE_UPLOAD_SIZE == 10 * 1024 * 1024
