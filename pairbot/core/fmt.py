from __future__ import annotations

import re

MARKDOWN_DELIMITERS = ("*", "`", "_")
TELEGRAM_MAX_LENGTH = 4000

_PAIRED_RE = (
    re.compile(r"\*\*(.*?)\*\*", re.DOTALL),
    re.compile(r"\*(.*?)\*", re.DOTALL),
    re.compile(r"`(.*?)`", re.DOTALL),
    re.compile(r"_(.*?)_", re.DOTALL),
)


def sanitize_markdown(text: str) -> str:
    """Drop the last occurrence of every delimiter whose count is odd.

    Each pass removes at most one character per delimiter, so the output has an
    even count of each and a second call is a no-op.
    """
    sanitized = text or ""
    for delimiter in MARKDOWN_DELIMITERS:
        if sanitized.count(delimiter) % 2 == 0:
            continue
        idx = sanitized.rfind(delimiter)
        sanitized = sanitized[:idx] + sanitized[idx + 1 :]
    return sanitized


def strip_markdown(text: str) -> str:
    """Plain-text rendition used when Telegram rejects the Markdown entities."""
    plain = text or ""
    for pattern in _PAIRED_RE:
        plain = pattern.sub(r"\1", plain)
    return plain


def split_message(text: str, limit: int = TELEGRAM_MAX_LENGTH) -> list[str]:
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut <= limit // 2:
            cut = limit
        chunks.append(rest[:cut])
        rest = rest[cut:].lstrip("\n")
    if rest:
        chunks.append(rest)
    return chunks
