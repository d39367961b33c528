"""
Conversation title helpers.
"""
import re
from typing import Optional

DEFAULT_CHAT_TITLE = "New Chat"
DEFAULT_CHAT_TITLE_MAX_LENGTH = 80

_TITLE_PREFIX = re.compile(r"^title\s*[:-]\s*", re.IGNORECASE)
_EDGE_QUOTES = re.compile(r"^[\"'`]+|[\"'`]+$")
_TRAILING_PUNCTUATION = re.compile(r"[.!?,;:]+$")
_WHITESPACE = re.compile(r"\s+")


def sanitize_title(raw_title: Optional[str], max_length: int = DEFAULT_CHAT_TITLE_MAX_LENGTH) -> Optional[str]:
    """Reduce free text to a single-line conversation title.

    Takes the first non-blank line, drops a leading ``Title:`` label and
    surrounding quotes, collapses whitespace and strips trailing
    punctuation. Returns None when nothing usable is left.
    """
    if not raw_title:
        return None

    first_line = next(
        (line.strip() for line in raw_title.splitlines() if line.strip()),
        None,
    )
    if first_line is None:
        return None

    title = _TITLE_PREFIX.sub("", first_line)
    title = _EDGE_QUOTES.sub("", title)
    title = _WHITESPACE.sub(" ", title).strip()
    title = _TRAILING_PUNCTUATION.sub("", title).strip()

    if not title:
        return None

    if len(title) > max_length:
        title = title[:max_length].strip()

    return title or None
