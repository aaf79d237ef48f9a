"""
Streaming multipart/form-data reader for Bulk Import Orchestrator

Wraps python-multipart's incremental ``MultipartParser`` in a pull-based reader:
chunks of at most ``buffer_size`` bytes are read from a blocking stream, pushed
through the parser, and the resulting header and body events are handed out part
by part. At most one read buffer of parsed but unconsumed input is held at once.
"""

import io
from collections import deque
from dataclasses import dataclass, field
from typing import BinaryIO, Deque, Dict, Iterator, List, Optional, Tuple

from python_multipart import MultipartParser
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import parse_options_header

from ..core.exceptions import MalformedRequestError


MULTIPART_FORM_DATA = "multipart/form-data"

DEFAULT_BUFFER_SIZE = 1024
BOUNDARY_MARGIN = 5
MAX_BOUNDARY_LENGTH = 70
HEADER_PART_SIZE_MAX = 10240

CRLF = b"\r\n"
DASHES = b"--"

# parser events
PART_BEGIN = "part_begin"
HEADERS = "headers"
DATA = "data"
PART_END = "part_end"
END = "end"


def parse_content_type(header: Optional[str]) -> Tuple[str, Dict[str, str]]:
    """
    Parse a Content-Type style header.

    Args:
        header: Raw header value, e.g. ``multipart/form-data; boundary="abc"``

    Returns:
        Lower-cased media type and a dict of lower-cased parameter names to values
    """
    if not header:
        return "", {}

    try:
        media_type, options = parse_options_header(header)
    except UnicodeEncodeError:
        raise MalformedRequestError(f"Header value is not ISO-8859-1 text: {header!r}")

    params = {
        name.decode("latin-1").strip().lower(): value.decode("latin-1")
        for name, value in options.items()
    }
    return media_type.decode("latin-1").strip().lower(), params


def get_boundary(content_type: Optional[str]) -> bytes:
    """
    Extract the multipart boundary from a request Content-Type header.

    Raises:
        MalformedRequestError: If the media type is not multipart/form-data or the
            boundary parameter is missing or invalid
    """
    media_type, params = parse_content_type(content_type)
    if media_type != MULTIPART_FORM_DATA:
        raise MalformedRequestError(
            "Content-Type must be multipart/form-data for $import.",
            parameter="Content-Type"
        )

    boundary = params.get("boundary")
    if not boundary:
        raise MalformedRequestError(
            "Content-Type multipart/form-data requires a boundary parameter",
            parameter="Content-Type"
        )
    if len(boundary) > MAX_BOUNDARY_LENGTH:
        raise MalformedRequestError(
            f"Multipart boundary exceeds {MAX_BOUNDARY_LENGTH} characters",
            parameter="Content-Type"
        )

    try:
        return boundary.encode("ascii")
    except UnicodeEncodeError:
        raise MalformedRequestError("Multipart boundary must be ASCII", parameter="Content-Type")


@dataclass
class MultipartPart:
    """One decoded part: its raw header block, parsed headers and body bytes."""

    index: int
    header_text: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")

    @property
    def charset(self) -> Optional[str]:
        return parse_content_type(self.content_type)[1].get("charset")

    @property
    def name(self) -> Optional[str]:
        return parse_content_type(self.headers.get("content-disposition"))[1].get("name")

    @property
    def filename(self) -> Optional[str]:
        return parse_content_type(self.headers.get("content-disposition"))[1].get("filename")

    def text(self, default_charset: str = "utf-8") -> str:
        """Decode the body using the part's charset, falling back to ``default_charset``."""
        charset = self.charset or default_charset
        try:
            return self.body.decode(charset)
        except LookupError:
            raise MalformedRequestError(f"Part {self.index} declares unknown charset {charset!r}")
        except UnicodeDecodeError:
            raise MalformedRequestError(f"Part {self.index} is not valid {charset} text")


class _NullSink:
    def write(self, data: bytes) -> int:
        return len(data)


class MultipartStream:
    """
    Pull-based reader over a multipart body.

    ``skip_preamble`` finds the first delimiter, then for every part
    ``read_headers`` and ``read_body_data`` are followed by ``read_boundary``,
    which reports whether another part follows. Iterating the stream drives that
    sequence and yields ``MultipartPart`` objects.
    """

    def __init__(self, stream: BinaryIO, boundary: bytes, buffer_size: int = DEFAULT_BUFFER_SIZE,
                 header_encoding: str = "utf-8"):
        """
        Initialize the multipart reader.

        Args:
            stream: Binary stream exposing ``read(n)``
            boundary: Boundary token from the request Content-Type
            buffer_size: Requested read size; raised to fit the boundary if needed
            header_encoding: Encoding used to decode part header blocks
        """
        if not boundary:
            raise MalformedRequestError("Multipart boundary must not be empty", parameter="Content-Type")

        self._stream = stream
        self.boundary = boundary
        self.buffer_size = max(buffer_size, len(boundary) + BOUNDARY_MARGIN)
        self.header_encoding = header_encoding
        self.bytes_read = 0
        self.headers: Dict[str, str] = {}

        self._delimiter = CRLF + DASHES + boundary
        # Bytes seen before the opening delimiter; None once it has been found.
        # The opening delimiter may start the body without its CRLF.
        self._preamble: Optional[bytearray] = bytearray(CRLF)
        self._events: Deque[Tuple[str, object]] = deque()
        self._eof = False

        self._header_lines: List[str] = []
        self._header_map: Dict[str, str] = {}
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._header_size = 0

        self._parser = MultipartParser(boundary, callbacks={
            "on_part_begin": self._on_part_begin,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
            "on_end": self._on_end,
        })

    # PARSER CALLBACKS ----------------------------------------------------------------------------------------
    def _on_part_begin(self):
        self._header_lines = []
        self._header_map = {}
        self._header_size = 0
        self._events.append((PART_BEGIN, None))

    def _count_header_bytes(self, size: int):
        self._header_size += size
        if self._header_size > HEADER_PART_SIZE_MAX:
            raise MalformedRequestError(f"Part header section exceeds {HEADER_PART_SIZE_MAX} bytes")

    def _on_header_field(self, data: bytes, start: int, end: int):
        self._count_header_bytes(end - start)
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int):
        self._count_header_bytes(end - start)
        self._header_value += data[start:end]

    def _on_header_end(self):
        name = self._header_field.decode(self.header_encoding, errors="replace")
        value = self._header_value.decode(self.header_encoding, errors="replace")
        self._header_lines.append(f"{name}: {value}")
        self._header_map[name.strip().lower()] = value.strip()
        self._count_header_bytes(len(CRLF) + 2)
        self._header_field = bytearray()
        self._header_value = bytearray()

    def _on_headers_finished(self):
        self._events.append((HEADERS, ("\r\n".join(self._header_lines), self._header_map)))

    def _on_part_data(self, data: bytes, start: int, end: int):
        self._events.append((DATA, data[start:end]))

    def _on_part_end(self):
        self._events.append((PART_END, None))

    def _on_end(self):
        self._events.append((END, None))

    # FEEDING -------------------------------------------------------------------------------------------------
    def _feed(self, chunk: bytes):
        if self._preamble is not None:
            self._preamble += chunk
            idx = self._preamble.find(self._delimiter)
            if idx < 0:
                # keep a possible partial delimiter at the tail
                keep = len(self._delimiter) - 1
                if len(self._preamble) > keep:
                    del self._preamble[:len(self._preamble) - keep]
                return
            chunk = bytes(self._preamble[idx + len(CRLF):])
            self._preamble = None

        try:
            self._parser.write(chunk)
        except MultipartParseError as e:
            raise MalformedRequestError(f"Malformed multipart body: {e}")

    def _next_event(self, eof_message: str) -> Tuple[str, object]:
        while not self._events:
            if self._eof:
                if self._preamble is not None:
                    eof_message = "Multipart body does not contain the declared boundary"
                raise MalformedRequestError(eof_message)

            chunk = self._stream.read(self.buffer_size)
            if not chunk:
                self._eof = True
                continue
            self.bytes_read += len(chunk)
            self._feed(chunk)

        return self._events.popleft()

    # READING -------------------------------------------------------------------------------------------------
    def skip_preamble(self) -> bool:
        """
        Discard everything before the first delimiter.

        Returns:
            True if a part follows, False if the body closes immediately

        Raises:
            MalformedRequestError: If no delimiter is present at all
        """
        kind, _ = self._next_event("Stream ended unexpectedly after a multipart boundary")
        return kind == PART_BEGIN

    def read_boundary(self) -> bool:
        """
        Consume the delimiter that ends the current part.

        Returns:
            True if another part follows, False on the close delimiter
        """
        kind, _ = self._next_event("Stream ended unexpectedly after a multipart boundary")
        return kind == PART_BEGIN

    def read_headers(self) -> str:
        """Read the current part's header block, returning it without the blank line."""
        kind, value = self._next_event("Stream ended unexpectedly while reading part headers")
        if kind != HEADERS:
            raise MalformedRequestError("Multipart stream is not positioned at a part header block")
        header_text, self.headers = value
        return header_text

    def read_body_data(self, sink) -> int:
        """
        Stream the current part's body into ``sink`` up to the next delimiter.

        Returns:
            Number of body bytes written
        """
        written = 0
        while True:
            kind, data = self._next_event("Stream ended before the closing multipart boundary")
            if kind == PART_END:
                return written
            sink.write(data)
            written += len(data)

    def discard_body_data(self) -> int:
        """Skip the current part's body."""
        return self.read_body_data(_NullSink())

    def __iter__(self) -> Iterator[MultipartPart]:
        index = 0
        has_next = self.skip_preamble()
        while has_next:
            header_text = self.read_headers()
            body = io.BytesIO()
            self.read_body_data(body)

            yield MultipartPart(
                index=index,
                header_text=header_text,
                headers=self.headers,
                body=body.getvalue()
            )

            index += 1
            has_next = self.read_boundary()


def iter_parts(stream: BinaryIO, boundary: bytes, buffer_size: int = DEFAULT_BUFFER_SIZE) -> Iterator[MultipartPart]:
    """Lazily yield the parts of a multipart body."""
    return iter(MultipartStream(stream, boundary, buffer_size))
