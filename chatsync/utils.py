"""
Utility functions for text and timestamp normalization.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 100

# A high surrogate not followed by a low one, or a low surrogate not preceded by a high one
_LONE_SURROGATE = re.compile(r"[\ud800-\udbff](?![\udc00-\udfff])|(?<![\ud800-\udbff])[\udc00-\udfff]")

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def sanitize_text(value: Optional[str]) -> str:
    """
    Remove unpaired UTF-16 surrogate code units from text.

    Lone surrogates cannot be encoded for storage; everything else is kept.
    Paired surrogates left over from UTF-16 sources are joined into the
    code point they encode.

    Args:
        value: Raw provider text (None is treated as empty)

    Returns:
        Cleaned text
    """
    if not value:
        return ""

    cleaned = _LONE_SURROGATE.sub("", value)
    if cleaned != value:
        logger.debug(f"Removed {len(value) - len(cleaned)} lone surrogate(s) from text")

    try:
        cleaned.encode("utf-8")
    except UnicodeEncodeError:
        cleaned = cleaned.encode("utf-16", "surrogatepass").decode("utf-16")
    return cleaned


def make_excerpt(value: str, length: int = EXCERPT_LENGTH) -> str:
    """Short prefix of message text for list views."""
    return value[:length]


def epoch_to_iso(seconds: Union[int, float, None]) -> Optional[str]:
    """Convert provider epoch seconds to an ISO-8601 UTC string, None for missing/zero."""
    if not seconds:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime(ISO_FORMAT)


def utc_now_iso() -> str:
    """Server time as ISO-8601 UTC string."""
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)
