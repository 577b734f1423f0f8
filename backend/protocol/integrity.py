"""
Free-text sanitizing and content checksums for peer messages.

sanitize_text() is idempotent: the removal rules run until nothing changes,
and truncation only ever keeps a prefix of an already-clean string.
"""

import hashlib
import json
import re

from config import MAX_TEXT_LENGTH

_REMOVALS = [
    re.compile(r"<\s*script\b[^>]*>.*?<\s*/\s*script\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<\s*iframe\b[^>]*>.*?<\s*/\s*iframe\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<\s*/?\s*(script|iframe)\b[^>]*>", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"vbscript\s*:", re.IGNORECASE),
    re.compile(r"\bon[a-z]+\s*=", re.IGNORECASE),
]

_LINE_BREAKS = re.compile(r"[\r\n\t]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RUNS = re.compile(r" {2,}")


def _clean_once(text: str) -> str:
    text = _LINE_BREAKS.sub(" ", text)
    text = _CONTROL_CHARS.sub("", text)
    for pattern in _REMOVALS:
        text = pattern.sub("", text)
    text = _WHITESPACE_RUNS.sub(" ", text)
    return text.strip()


def sanitize_text(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Strip markup/script vectors and control characters, bound the length."""
    if not text:
        return ""

    previous = None
    while previous != text:
        previous = text
        text = _clean_once(text)

    return text[:max_length].strip()


def compute_checksum(msg_type, text, command, timestamp) -> str:
    """Deterministic SHA-256 over a message's stable fields."""
    if hasattr(msg_type, "value"):
        msg_type = msg_type.value
    canonical = json.dumps(
        {"type": msg_type, "text": text, "command": command, "timestamp": timestamp},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
