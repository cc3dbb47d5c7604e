"""
AnonChat - Utility functions.

Formatting helpers for the command line front-end.
"""

import logging
from datetime import datetime

logger = logging.getLogger(__name__)


def format_timestamp(iso_timestamp: str, format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    Format an ISO timestamp to a human-readable string.

    Args:
        iso_timestamp: ISO 8601 timestamp string
        format_str: strftime format string

    Returns:
        Formatted timestamp string, or original if parsing fails
    """
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
        return dt.strftime(format_str)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Failed to parse timestamp '{iso_timestamp}': {e}")
        return iso_timestamp


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, suffix included."""
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
