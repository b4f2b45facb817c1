"""
Unit tests for homepost.utils module.

Tests utility functions for formatting, validation, and helpers.
"""

from homepost.utils import (
    format_fingerprint,
    format_timestamp,
    format_timestamp_relative,
    short_key,
    truncate_string,
    validate_public_key_hex,
)


class TestPublicKeyValidation:
    """Test public key format validation."""

    def test_valid_keys(self):
        """Test that 64 hex characters are accepted."""
        assert validate_public_key_hex("a" * 64) is True
        assert validate_public_key_hex("0123456789abcdef" * 4) is True
        assert validate_public_key_hex("ABCDEF01" * 8) is True

    def test_invalid_keys(self):
        """Test that malformed keys are rejected."""
        assert validate_public_key_hex("a" * 63) is False  # Too short
        assert validate_public_key_hex("a" * 65) is False  # Too long
        assert validate_public_key_hex("z" * 64) is False  # Invalid character
        assert validate_public_key_hex("") is False
        assert validate_public_key_hex(None) is False


class TestTimestampFormatting:
    """Test timestamp formatting."""

    def test_format_timestamp(self):
        assert format_timestamp(0) == "1970-01-01 00:00:00"
        assert format_timestamp(1000, "%H:%M:%S") == "00:16:40"

    def test_out_of_range_timestamp(self):
        """Test that unrepresentable timestamps fall back to the number."""
        assert format_timestamp(2**63) == str(2**63)

    def test_relative(self):
        now = 1_000_000.0
        assert format_timestamp_relative(int(now) - 10, now) == "just now"
        assert format_timestamp_relative(int(now) - 60, now) == "1 minute ago"
        assert format_timestamp_relative(int(now) - 300, now) == "5 minutes ago"
        assert format_timestamp_relative(int(now) - 7200, now) == "2 hours ago"
        assert format_timestamp_relative(int(now) - 86400, now) == "1 day ago"

    def test_relative_falls_back_to_date(self):
        assert format_timestamp_relative(0, 30 * 86400.0) == "1970-01-01"


class TestStringUtilities:
    """Test string utility functions."""

    def test_truncate_string(self):
        """Test string truncation."""
        assert truncate_string("short", 10) == "short"
        assert truncate_string("this is a long string", 10) == "this is..."
        assert truncate_string("test", 10, "~") == "test"

    def test_format_fingerprint(self):
        """Test fingerprint formatting."""
        fp = "0123456789abcdef"
        result = format_fingerprint(fp)
        assert result == "0123 4567 89ab cdef"

    def test_short_key(self):
        assert short_key("0123456789abcdef" * 4) == "01234567"
