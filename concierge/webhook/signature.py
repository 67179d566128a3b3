from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Mapping
from urllib.parse import urlsplit

SIGNATURE_HEADERS = ("x-square-hmacsha256-signature", "x-square-signature")
DEFAULT_PORTS = {"80", "443"}


def canonicalize_notification_url(url: str) -> str:
    parsed = urlsplit((url or "").strip())
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]

    port = ""
    try:
        if parsed.port is not None and str(parsed.port) not in DEFAULT_PORTS:
            port = f":{parsed.port}"
    except ValueError:
        port = ""

    path = parsed.path.lower().rstrip("/")
    return f"https://{host}{port}{path}"


def compute_signature(signature_key: str, notification_url: str, raw_body: bytes | str) -> str:
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    digest = hmac.new(
        signature_key.encode("utf-8"),
        notification_url.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def extract_signature(headers: Mapping[str, str]) -> str | None:
    lowered = {str(key).lower(): value for key, value in headers.items()}
    for header in SIGNATURE_HEADERS:
        value = str(lowered.get(header) or "").strip()
        if value:
            return value
    return None


def candidate_urls(notification_url: str) -> list[str]:
    candidates: list[str] = []
    for url in (canonicalize_notification_url(notification_url), (notification_url or "").strip()):
        if url and url not in candidates:
            candidates.append(url)
    return candidates


def verify_signature(
    *,
    signature_key: str,
    notification_url: str,
    raw_body: bytes | str,
    provided_signature: str | None,
) -> bool:
    if not signature_key or not provided_signature:
        return False
    provided = provided_signature.encode("utf-8")
    for url in candidate_urls(notification_url):
        expected = compute_signature(signature_key, url, raw_body).encode("utf-8")
        if hmac.compare_digest(expected, provided):
            return True
    return False
