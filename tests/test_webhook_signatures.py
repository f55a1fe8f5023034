"""
Tests for cleanbook/utils/webhook_signatures.py - payload hashing and public URLs.
"""
import hashlib
from unittest.mock import MagicMock

from cleanbook.utils.webhook_signatures import (
    compute_payload_hash,
    get_public_base_url,
    get_return_url,
)


def _request(headers=None, scheme="http"):
    request = MagicMock()
    request.headers = headers or {}
    request.url.scheme = scheme
    return request


class TestPayloadHash:
    def test_sha256(self):
        assert compute_payload_hash(b"{}") == hashlib.sha256(b"{}").hexdigest()

    def test_different_payloads_differ(self):
        assert compute_payload_hash(b"a") != compute_payload_hash(b"b")


class TestPublicUrls:
    def test_direct_request(self):
        request = _request({"host": "api.cleanbook.app"}, scheme="https")
        assert get_public_base_url(request) == "https://api.cleanbook.app"

    def test_forwarded_headers_win(self):
        request = _request({
            "host": "api:8000",
            "x-forwarded-proto": "https",
            "x-forwarded-host": "api.cleanbook.app",
        })
        assert get_public_base_url(request) == "https://api.cleanbook.app"

    def test_return_url_prefers_origin(self):
        request = _request({"host": "api.cleanbook.app", "origin": "https://app.cleanbook.app/"})
        assert get_return_url(request) == "https://app.cleanbook.app"

    def test_return_url_falls_back_to_base(self):
        request = _request({"host": "api.cleanbook.app"}, scheme="https")
        assert get_return_url(request) == "https://api.cleanbook.app"
