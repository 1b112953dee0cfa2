"""
Tests for upload_bridge/transfer/multipart.py - Incremental multipart parsing.
"""

from __future__ import annotations

import pytest

from upload_bridge.errors import MalformedUpload
from upload_bridge.transfer import MultipartStream, PartEvent, PartHeaders

from tests.conftest import BOUNDARY, MULTIPART_CONTENT_TYPE, multipart_body


def feed_all(stream: MultipartStream, data: bytes, size: int):
    events = []
    for start in range(0, len(data), size):
        events.extend(stream.feed(data[start:start + size]))
    stream.close()
    return events


class TestHeaders:

    def test_rejects_other_content_types(self):
        with pytest.raises(MalformedUpload):
            MultipartStream("application/x-www-form-urlencoded")

    def test_rejects_missing_boundary(self):
        with pytest.raises(MalformedUpload):
            MultipartStream("multipart/form-data")


class TestEvents:

    @pytest.mark.parametrize("size", [1, 7, 4096])
    def test_event_order_is_independent_of_chunking(self, size):
        body = multipart_body([
            ([("Content-Disposition", 'form-data; name="a"; filename="one.txt"'),
              ("Content-Type", "text/plain")], b"first"),
            ([("Content-Disposition", 'form-data; name="note"')], b"plain"),
        ])

        events = feed_all(MultipartStream(MULTIPART_CONTENT_TYPE), body, size)

        kinds = [kind for kind, _ in events if kind is not PartEvent.DATA]
        assert kinds == [PartEvent.BEGIN, PartEvent.END, PartEvent.BEGIN, PartEvent.END]

        begins = [value for kind, value in events if kind is PartEvent.BEGIN]
        assert begins == [
            PartHeaders(name="a", filename="one.txt", content_type="text/plain"),
            PartHeaders(name="note", filename=None, content_type=None),
        ]

        first_end = events.index((PartEvent.END, None))
        data = b"".join(value for kind, value in events[:first_end] if kind is PartEvent.DATA)
        assert data == b"first"

    def test_utf8_filename(self):
        body = multipart_body([
            ([("Content-Disposition", 'form-data; name="a"; filename="résumé.pdf"'),
              ("Content-Type", "application/pdf")], b"%PDF"),
        ])

        events = feed_all(MultipartStream(MULTIPART_CONTENT_TYPE), body, 4096)

        assert events[0][1].filename == "résumé.pdf"

    def test_empty_filename_is_kept_as_empty(self):
        body = multipart_body([
            ([("Content-Disposition", 'form-data; name="a"; filename=""'),
              ("Content-Type", "text/plain")], b""),
        ])

        events = feed_all(MultipartStream(MULTIPART_CONTENT_TYPE), body, 4096)

        assert events[0][1].filename == ""


class TestMalformed:

    def test_garbage_body(self):
        stream = MultipartStream(MULTIPART_CONTENT_TYPE)

        with pytest.raises(MalformedUpload):
            stream.feed(b"this is not multipart at all")

    def test_missing_closing_boundary(self):
        body = multipart_body([
            ([("Content-Disposition", 'form-data; name="a"; filename="one.txt"'),
              ("Content-Type", "text/plain")], b"first"),
        ])
        stream = MultipartStream(MULTIPART_CONTENT_TYPE)
        stream.feed(body[:-len(f"--{BOUNDARY}--\r\n")])

        with pytest.raises(MalformedUpload):
            stream.close()
