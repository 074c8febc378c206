# tests/services/test_pixel_response.py
"""
Tests for pixel response classification

Run with: pytest backend/tests/services/test_pixel_response.py -v
"""

import json

import pytest

from identity_sync.services.pixel_response import PayloadKind, classify_pixel_response


HASH = "5d41402abc4b2a76b9719d911017c592"


class TestEmptyResponses:

    @pytest.mark.parametrize("body", [None, b"", b"   ", b"null", b"[]", b"{}"])
    def test_empty_bodies(self, body):
        payload = classify_pixel_response("application/json", body)
        assert payload.kind == PayloadKind.EMPTY
        assert payload.events == []


class TestEventResponses:

    def test_list_is_many(self):
        body = json.dumps([{"hash": HASH}, {"md5": HASH.upper()}]).encode()
        payload = classify_pixel_response("application/json", body)

        assert payload.kind == PayloadKind.MANY
        assert len(payload.events) == 2

    def test_single_object_with_hash(self):
        payload = classify_pixel_response("application/json", json.dumps({"hash": HASH, "url": "/x"}))

        assert payload.kind == PayloadKind.SINGLE
        assert payload.events == [{"hash": HASH, "url": "/x"}]

    def test_non_object_list_entries_dropped(self):
        body = json.dumps([{"hash": HASH}, "junk", 42]).encode()
        payload = classify_pixel_response(None, body)

        assert payload.kind == PayloadKind.MANY
        assert payload.events == [{"hash": HASH}]


class TestMalformedResponses:

    def test_image_content_type(self):
        payload = classify_pixel_response("image/gif", b"GIF89a\x01\x00")
        assert payload.kind == PayloadKind.MALFORMED
        assert payload.events == []

    def test_gif_bytes_without_content_type(self):
        payload = classify_pixel_response(None, b"GIF89a\x01\x00\x01\x00")
        assert payload.is_malformed

    def test_invalid_json(self):
        payload = classify_pixel_response("application/json", b"{not json")
        assert payload.kind == PayloadKind.MALFORMED
        assert payload.reason == "invalid JSON"

    def test_html_error_page(self):
        payload = classify_pixel_response("text/html", b"<html>502 Bad Gateway</html>")
        assert payload.is_malformed

    def test_object_without_hash(self):
        payload = classify_pixel_response("application/json", b'{"status": "ok"}')
        assert payload.kind == PayloadKind.MALFORMED

    def test_scalar_json(self):
        payload = classify_pixel_response("application/json", b"42")
        assert payload.kind == PayloadKind.MALFORMED

    def test_list_of_scalars(self):
        payload = classify_pixel_response("application/json", b'["a", "b"]')
        assert payload.kind == PayloadKind.MALFORMED
