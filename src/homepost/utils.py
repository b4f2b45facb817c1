"""
Homepost - Utility functions.

Provides formatting and validation helpers used by the command line
interface and by callers presenting conversations.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from .constants import KEY_DISPLAY_LENGTH

logger = logging.getLogger(__name__)

_PUBLIC_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def format_timestamp(timestamp: int, format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    Format a record timestamp (seconds since the epoch, UTC).

    Args:
        timestamp: Seconds since the epoch
        format_str: strftime format string

    Returns:
        Formatted timestamp string, or the raw number if out of range
    """
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime(format_str)
    except (OverflowError, OSError, ValueError) as e:
        logger.debug(f"Failed to format timestamp {timestamp}: {e}")
        return str(timestamp)


def format_timestamp_relative(timestamp: int, now: Optional[float] = None) -> str:
    """
    Format a record timestamp as relative time (e.g., '5 minutes ago').

    Args:
        timestamp: Seconds since the epoch
        now: Reference time (defaults to the current time)
    """
    if now is None:
        now = datetime.now(timezone.utc).timestamp()
    seconds = now - timestamp

    if seconds < 60:
        return "just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f'{minutes} minute{"s" if minutes != 1 else ""} ago'
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f'{hours} hour{"s" if hours != 1 else ""} ago'
    elif seconds < 604800:
        days = int(seconds / 86400)
        return f'{days} day{"s" if days != 1 else ""} ago'
    else:
        return format_timestamp(timestamp, "%Y-%m-%d")


def validate_public_key_hex(value: str) -> bool:
    """
    Check the textual form of a public key (64 hex characters).

    Only the format is checked; curve validation happens when the key is
    parsed for use.
    """
    return bool(_PUBLIC_KEY_PATTERN.match(value or ""))


def short_key(public_key_hex: str) -> str:
    """Shortened public key for display."""
    return public_key_hex[:KEY_DISPLAY_LENGTH]


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix


def format_fingerprint(fingerprint: str) -> str:
    """
    Format a fingerprint for display with spaces every 4 characters.

    Args:
        fingerprint: Hex fingerprint string

    Returns:
        Formatted fingerprint
    """
    return " ".join(fingerprint[i : i + 4] for i in range(0, len(fingerprint), 4))
