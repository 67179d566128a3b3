"""
Tests for webhook signature canonicalization and verification.
"""
import pytest

from concierge.webhook import (
    canonicalize_notification_url,
    compute_signature,
    extract_signature,
    verify_signature,
)

KEY = "sig-key"
BODY = b'{"type":"payment.updated"}'


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://www.Example.com/Webhooks/Square/", "https://example.com/webhooks/square"),
        ("http://example.com:443/hook", "https://example.com/hook"),
        ("https://example.com:8443/hook", "https://example.com:8443/hook"),
        ("  https://EXAMPLE.com/hook?x=1  ", "https://example.com/hook"),
    ],
)
def test_canonicalize_notification_url(url, expected):
    assert canonicalize_notification_url(url) == expected


def test_signature_over_canonical_url_verifies_for_variant_config():
    signature = compute_signature(KEY, "https://example.com/webhooks/square", BODY)

    assert verify_signature(
        signature_key=KEY,
        notification_url="https://www.example.com/Webhooks/Square/",
        raw_body=BODY,
        provided_signature=signature,
    )


def test_signature_over_raw_configured_url_verifies():
    url = "https://www.example.com/Webhooks/Square"
    signature = compute_signature(KEY, url, BODY)

    assert verify_signature(signature_key=KEY, notification_url=url, raw_body=BODY, provided_signature=signature)


def test_tampered_body_fails():
    url = "https://example.com/webhooks/square"
    signature = compute_signature(KEY, url, BODY)

    assert not verify_signature(
        signature_key=KEY,
        notification_url=url,
        raw_body=BODY + b" ",
        provided_signature=signature,
    )


@pytest.mark.parametrize("key,provided", [("", "abc"), (KEY, None), (KEY, "")])
def test_missing_key_or_signature_fails(key, provided):
    assert not verify_signature(
        signature_key=key,
        notification_url="https://example.com/hook",
        raw_body=BODY,
        provided_signature=provided,
    )


def test_extract_signature_prefers_hmac_header_case_insensitively():
    headers = {"X-Square-Signature": "legacy", "X-Square-HmacSha256-Signature": " current "}

    assert extract_signature(headers) == "current"
    assert extract_signature({"x-square-signature": "legacy"}) == "legacy"
    assert extract_signature({}) is None
