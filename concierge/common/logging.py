from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit, urlunsplit

MASK = "***"

URL_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
# tx hashes are 0x-prefixed 32-byte values; only bare 64-hex tokens are treated as keys
TEXT_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"), rf"\1{MASK}"),
    (re.compile(r"(?i)((?:api[-_]?key|access[-_]?token|token|secret)\s*[:=]\s*)[^\s,;\"'&]+"), rf"\1{MASK}"),
    (re.compile(r"(?<![0-9a-fA-Fx])[0-9a-fA-F]{64}\b"), MASK),
)

SENSITIVE_FIELDS = frozenset(
    {
        "private_key",
        "hub_private_key",
        "signature",
        "signature_key",
        "authorization",
        "api_key",
        "access_token",
        "x-api-key",
        "x-square-hmacsha256-signature",
    }
)

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _strip_query(match: re.Match[str]) -> str:
    url = match.group(0)
    tail = ""
    while url and url[-1] in ".,);]}":
        url, tail = url[:-1], url[-1] + tail
    parts = urlsplit(url)
    if parts.netloc:
        url = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    return url + tail


def sanitize_text(value: str) -> str:
    """Drop URL query strings and mask bearer tokens, key assignments and raw private keys."""
    masked = URL_RE.sub(_strip_query, value)
    for pattern, replacement in TEXT_RULES:
        masked = pattern.sub(replacement, masked)
    return masked


def sanitize_value(value: Any, *, field: str | None = None) -> Any:
    if value and field is not None and field.lower() in SENSITIVE_FIELDS:
        return MASK
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {key: sanitize_value(child, field=str(key)) for key, child in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_value(item) for item in value)
    return value


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    """Structured log line; ``level="exception"`` logs at ERROR with the active traceback."""
    extra = {"event": event}
    extra.update({key: sanitize_value(value, field=key) for key, value in fields.items()})
    text = sanitize_text(message)

    if level == "exception":
        logger.exception(text, extra=extra)
        return
    logger.log(LEVELS.get(level, logging.INFO), text, extra=extra)
