"""Text sanitization for message text and display names.

Strips HTML and script content so stored and displayed text is plain text.
Applied to locally authored text and to everything received from peers.
"""

from __future__ import annotations

import re

# Elements whose content is dropped along with the tags
_BLOCK_PATTERNS = [
    re.compile(r"<script[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<style[^>]*>.*?</style\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<iframe[^>]*>.*?</iframe\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<!--.*?-->", re.DOTALL),
]

# Any remaining tag-like construct: <tag ...>, </tag>, <!doctype>
_TAG_PATTERN = re.compile(r"</?[a-zA-Z!][^<>]*>")

# Unterminated opening tag at the end of input ("<img src=x onerror=...")
_DANGLING_TAG_PATTERN = re.compile(r"<[a-zA-Z!/][^<>]*$")

_SCRIPT_PROTOCOL_PATTERN = re.compile(r"(javascript|vbscript)\s*:", re.IGNORECASE)

# Control characters except tab and newline
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

MAX_DISPLAY_NAME_LENGTH = 64


def sanitize_text(value: str | None) -> str:
    """Return `value` with HTML, script content and control characters removed.

    Plain text (including bare "<" and ">" used as comparisons) is kept.
    """
    if not value:
        return ""

    text = value
    for pattern in _BLOCK_PATTERNS:
        text = pattern.sub("", text)
    text = _TAG_PATTERN.sub("", text)
    text = _DANGLING_TAG_PATTERN.sub("", text)
    text = _SCRIPT_PROTOCOL_PATTERN.sub("", text)
    text = _CONTROL_CHARS.sub("", text)
    return text


def sanitize_display_name(value: str | None) -> str:
    """Sanitize a display name: plain text, one line, trimmed, length-capped."""
    name = sanitize_text(value)
    name = " ".join(name.split())
    return name[:MAX_DISPLAY_NAME_LENGTH].strip()
