"""
SecureChat - Utility functions.

Formatting helpers used by the client and the command line interface.
"""

import logging
import re
from datetime import datetime

logger = logging.getLogger(__name__)


def format_timestamp(iso_timestamp: str, format_str: str = "%H:%M:%S") -> str:
    """Render an ISO 8601 timestamp with strftime, or return it unchanged if unparseable."""
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
        return dt.strftime(format_str)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Failed to parse timestamp '{iso_timestamp}': {e}")
        return iso_timestamp


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """Shorten s to at most max_length characters, ending with suffix when cut."""
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix


def format_fingerprint(fingerprint: str) -> str:
    """Split a hex fingerprint into space separated groups of four for reading aloud."""
    return " ".join(fingerprint[i : i + 4] for i in range(0, len(fingerprint), 4))


def validate_peer_id(peer_id: str) -> bool:
    """
    Check that a discovery id is usable.

    Ids are opaque strings assigned by the signaling network; only blank
    ids and ids containing whitespace or control characters are rejected.
    """
    if not peer_id:
        return False
    return re.fullmatch(r"[^\s\x00-\x1f]+", peer_id) is not None
