import io

import pytest

from bulk_import_orchestrator.core.exceptions import MalformedRequestError
from bulk_import_orchestrator.utils.multipart import (
    BOUNDARY_MARGIN,
    DEFAULT_BUFFER_SIZE,
    MultipartStream,
    get_boundary,
    iter_parts,
    parse_content_type,
)


BOUNDARY = b"XyZ-boundary-1234"


def _parts(raw: bytes, buffer_size: int = DEFAULT_BUFFER_SIZE):
    return list(iter_parts(io.BytesIO(raw), BOUNDARY, buffer_size))


# CONTENT TYPE ------------------------------------------------------------------------------------------------
def test_parse_content_type_lowercases_type_and_unquotes_params():
    media_type, params = parse_content_type('Multipart/Form-Data; Boundary="a;b c"; charset=utf-8')

    assert media_type == "multipart/form-data"
    assert params == {"boundary": "a;b c", "charset": "utf-8"}


def test_get_boundary_returns_bytes():
    assert get_boundary("multipart/form-data; boundary=XyZ-boundary-1234") == BOUNDARY


@pytest.mark.parametrize("content_type", [None, "", "application/json", "multipart/mixed; boundary=abc"])
def test_get_boundary_rejects_other_content_types(content_type):
    with pytest.raises(MalformedRequestError) as exc_info:
        get_boundary(content_type)

    assert exc_info.value.message == "Content-Type must be multipart/form-data for $import."


def test_get_boundary_requires_boundary_parameter():
    with pytest.raises(MalformedRequestError, match="boundary"):
        get_boundary("multipart/form-data")


def test_get_boundary_rejects_overlong_boundary():
    with pytest.raises(MalformedRequestError, match="exceeds 70"):
        get_boundary("multipart/form-data; boundary=" + "b" * 71)


# FRAMING -----------------------------------------------------------------------------------------------------
def test_two_parts_in_order(multipart):
    raw = multipart([
        ('Content-Disposition: form-data; name="a"', "first body"),
        ('Content-Disposition: form-data; name="b"; filename="b.ndjson"', "second body"),
    ])

    parts = _parts(raw)

    assert [p.index for p in parts] == [0, 1]
    assert [p.body for p in parts] == [b"first body", b"second body"]
    assert parts[0].header_text == 'Content-Disposition: form-data; name="a"'
    assert parts[0].name == "a"
    assert parts[1].filename == "b.ndjson"


def test_preamble_and_epilogue_are_ignored(multipart):
    raw = multipart(
        [("Content-Type: text/plain", "payload")],
        preamble=b"This is the preamble.\r\n",
        epilogue=b"\r\nThis is the epilogue.\r\n"
    )

    parts = _parts(raw)

    assert len(parts) == 1
    assert parts[0].body == b"payload"


def test_close_delimiter_only_yields_no_parts():
    assert _parts(b"--" + BOUNDARY + b"--\r\n") == []


def test_empty_header_block_is_allowed():
    raw = b"--" + BOUNDARY + b"\r\n\r\nbare body\r\n--" + BOUNDARY + b"--"

    parts = _parts(raw)

    assert parts[0].header_text == ""
    assert parts[0].headers == {}
    assert parts[0].body == b"bare body"


@pytest.mark.parametrize("raw", [
    b"--" + BOUNDARY + b"  \t\r\nX-Test: 1\r\n\r\nbody\r\n--" + BOUNDARY + b"--",
    b"--" + BOUNDARY + b"\r\nX-Long: first\r\n second\r\n\r\nbody\r\n--" + BOUNDARY + b"--",
], ids=["transport-padding", "folded-header"])
def test_lenient_framing_is_rejected(raw):
    with pytest.raises(MalformedRequestError, match="Malformed multipart body"):
        _parts(raw)


def test_headers_are_keyed_by_lowercase_name(multipart):
    raw = multipart([("Content-Type: text/plain\r\nX-Trace-Id: abc", "body")])

    part = _parts(raw)[0]

    assert part.headers == {"content-type": "text/plain", "x-trace-id": "abc"}
    assert part.header_text == "Content-Type: text/plain\r\nX-Trace-Id: abc"


def test_near_miss_delimiter_stays_in_body_with_tiny_buffer(multipart):
    body = b"line1\r\n--XyZ-bound\r\nline2\r\n-" * 20
    raw = multipart([("Content-Type: text/plain", body)])

    parts = _parts(raw, buffer_size=1)

    assert parts[0].body == body


def test_buffer_size_is_raised_to_fit_boundary():
    stream = MultipartStream(io.BytesIO(b""), BOUNDARY, buffer_size=4)

    assert stream.buffer_size == len(BOUNDARY) + BOUNDARY_MARGIN


def test_large_body_is_read_across_many_buffers(multipart):
    body = ("x" * 1000 + "\n") * 50
    raw = multipart([("Content-Type: application/x-ndjson", body)])

    stream = MultipartStream(io.BytesIO(raw), BOUNDARY, 64)
    parts = list(stream)

    assert parts[0].body.decode() == body


def test_low_level_sequence(multipart):
    raw = multipart([("X-A: 1", "one"), ("X-B: 2", "two")])
    stream = MultipartStream(io.BytesIO(raw), BOUNDARY)
    sink = io.BytesIO()

    assert stream.skip_preamble() is True
    assert stream.read_headers() == "X-A: 1"
    assert stream.read_body_data(sink) == 3
    assert stream.read_boundary() is True
    assert stream.read_headers() == "X-B: 2"
    assert stream.discard_body_data() == 3
    assert stream.read_boundary() is False
    assert sink.getvalue() == b"one"


# DECODING ----------------------------------------------------------------------------------------------------
def test_text_uses_part_charset(multipart):
    raw = multipart([("Content-Type: text/plain; charset=iso-8859-1", "café".encode("iso-8859-1"))])

    assert _parts(raw)[0].text() == "café"


def test_text_rejects_undecodable_body(multipart):
    raw = multipart([("Content-Type: text/plain", b"\xff\xfe\xfa")])

    with pytest.raises(MalformedRequestError, match="not valid utf-8"):
        _parts(raw)[0].text()


def test_text_rejects_unknown_charset(multipart):
    raw = multipart([("Content-Type: text/plain; charset=no-such-charset", "abc")])

    with pytest.raises(MalformedRequestError, match="unknown charset"):
        _parts(raw)[0].text()


# MALFORMED BODIES --------------------------------------------------------------------------------------------
def test_missing_opening_boundary():
    with pytest.raises(MalformedRequestError, match="does not contain the declared boundary"):
        _parts(b"just some text without any delimiter")


def test_stream_ending_inside_body():
    raw = b"--" + BOUNDARY + b"\r\nX-A: 1\r\n\r\ntruncated body"

    with pytest.raises(MalformedRequestError, match="closing multipart boundary"):
        _parts(raw)


def test_stream_ending_inside_headers():
    raw = b"--" + BOUNDARY + b"\r\nX-A: 1\r\nX-B"

    with pytest.raises(MalformedRequestError, match="reading part headers"):
        _parts(raw)


def test_garbage_after_boundary():
    raw = b"--" + BOUNDARY + b"garbage\r\n\r\nbody\r\n--" + BOUNDARY + b"--"

    with pytest.raises(MalformedRequestError, match="Malformed multipart body"):
        _parts(raw)


def test_oversized_header_block():
    raw = b"--" + BOUNDARY + b"\r\nX-Big: " + b"a" * 11000 + b"\r\n\r\nbody\r\n--" + BOUNDARY + b"--"

    with pytest.raises(MalformedRequestError, match="exceeds 10240"):
        _parts(raw)


def test_parts_are_produced_lazily(multipart):
    raw = multipart([("X-A: 1", "one"), ("X-B: 2", "two")])
    truncated = raw[:raw.rindex(b"\r\n--" + BOUNDARY)] + b"broken"

    parts = iter_parts(io.BytesIO(truncated), BOUNDARY)

    assert next(parts).body == b"one"
    with pytest.raises(MalformedRequestError, match="closing multipart boundary"):
        next(parts)
