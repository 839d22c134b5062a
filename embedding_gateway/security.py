"""Helpers for keeping credentials and oversized payloads out of logs."""

from __future__ import annotations

import re

_SECRET_PATTERNS = [
    (re.compile(r"\bhf_[a-zA-Z0-9]{20,}\b"), "[REDACTED_HF_TOKEN]"),
    (re.compile(r"\bsk-[a-zA-Z0-9]{40,}\b"), "[REDACTED_API_KEY]"),
    (re.compile(r"\bBearer\s+[a-zA-Z0-9._-]+"), "Bearer [REDACTED]"),
]


def sanitize_for_logging(value: str, max_length: int = 200) -> str:
    """
    Sanitize a value for safe logging (truncate, remove credential-like tokens).

    Args:
        value: Value to sanitize
        max_length: Maximum length to log

    Returns:
        Sanitized value safe for logging
    """
    if not value:
        return ""

    if len(value) > max_length:
        value = value[:max_length] + "..."

    for pattern, replacement in _SECRET_PATTERNS:
        value = pattern.sub(replacement, value)

    return value
