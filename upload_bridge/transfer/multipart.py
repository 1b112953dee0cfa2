"""
Streaming multipart/form-data parsing.

Wraps python-multipart's callback parser. Each chunk fed in returns the part
events it completed, in order, so a caller can act on a part (open a file,
write its bytes, close it) before the next chunk of the body is read.
"""

import codecs
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

import python_multipart
from python_multipart.exceptions import FormParserError
from python_multipart.multipart import parse_options_header

from ..errors import MalformedUpload


class PartEvent(Enum):
    BEGIN = 1
    DATA = 2
    END = 3


@dataclass
class PartHeaders:
    """What a part's headers say about it."""
    name: str
    filename: Optional[str]
    content_type: Optional[str]


Event = Tuple[PartEvent, Union[PartHeaders, bytes, None]]


def _decode(value: bytes, charset: str) -> str:
    try:
        return value.decode(charset)
    except (UnicodeDecodeError, LookupError):
        return value.decode('latin-1')


class MultipartStream:
    """
    Incremental parser for one multipart/form-data body.

    Raises MalformedUpload for a missing boundary, a body that does not
    parse, or one that ends before its closing boundary.
    """

    def __init__(self, content_type: str):
        media_type, params = parse_options_header(content_type)
        if media_type != b'multipart/form-data':
            raise MalformedUpload(f"Expected multipart/form-data, got '{content_type}'")

        boundary = params.get(b'boundary')
        if not boundary:
            raise MalformedUpload("Missing boundary in multipart body")

        charset = params.get(b'charset', b'utf-8').decode('latin-1')
        try:
            self._charset = codecs.lookup(charset).name
        except LookupError:
            self._charset = 'latin-1'

        self._events: List[Event] = []
        self._header_name = b''
        self._header_value = b''
        self._headers: List[Tuple[bytes, bytes]] = []
        self._finished = False

        callbacks = {
            'on_part_begin': self._on_part_begin,
            'on_part_data': self._on_part_data,
            'on_part_end': self._on_part_end,
            'on_header_field': self._on_header_field,
            'on_header_value': self._on_header_value,
            'on_header_end': self._on_header_end,
            'on_headers_finished': self._on_headers_finished,
            'on_end': self._on_end,
        }
        try:
            self._parser = python_multipart.MultipartParser(boundary, callbacks)
        except FormParserError as e:
            raise MalformedUpload(f"Invalid multipart boundary: {e}") from e

    # === Parser callbacks ===

    def _on_part_begin(self):
        self._headers = []

    def _on_part_data(self, data: bytes, start: int, end: int):
        self._events.append((PartEvent.DATA, data[start:end]))

    def _on_part_end(self):
        self._events.append((PartEvent.END, None))

    def _on_header_field(self, data: bytes, start: int, end: int):
        self._header_name += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int):
        self._header_value += data[start:end]

    def _on_header_end(self):
        self._headers.append((self._header_name.lower(), self._header_value))
        self._header_name = b''
        self._header_value = b''

    def _on_headers_finished(self):
        headers = dict(self._headers)
        _, options = parse_options_header(headers.get(b'content-disposition'))

        filename = options.get(b'filename')
        content_type = headers.get(b'content-type', b'').strip()

        self._events.append((PartEvent.BEGIN, PartHeaders(
            name=_decode(options.get(b'name', b''), self._charset),
            filename=_decode(filename, self._charset) if filename is not None else None,
            content_type=content_type.decode('latin-1') or None,
        )))

    def _on_end(self):
        self._finished = True

    # === Feeding ===

    def feed(self, chunk: bytes) -> List[Event]:
        """Parse the next chunk of the body and return the events it completed."""
        try:
            self._parser.write(chunk)
        except FormParserError as e:
            raise MalformedUpload(f"Invalid multipart data: {e}") from e

        events, self._events = self._events, []
        return events

    def close(self):
        """
        Signal the end of the body.

        Raises:
            MalformedUpload: the closing boundary never arrived
        """
        self._parser.finalize()
        if not self._finished:
            raise MalformedUpload("Multipart body ended before its closing boundary")
