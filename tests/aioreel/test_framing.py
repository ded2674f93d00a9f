"""Tests the framing module."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from typing import Self
from unittest import IsolatedAsyncioTestCase

from aioreel.errors import FramingError, FrozenHeadersError, HandlerError
from aioreel.framing import Framing, ResponseFramer


class Recorder:
    """A write callable that records everything written to it."""

    __slots__ = {
        "writes": """The (data, drain) pairs written so far.""",
    }

    writes: list[tuple[bytes, bool]]

    def __init__(self: Self) -> None:
        """Construct a new Recorder."""
        self.writes = []

    async def __call__(self: Self, data: bytes, drain: bool) -> None:
        """Record a write."""
        self.writes.append((data, drain))

    @property
    def raw(self: Self) -> bytes:
        """Everything written, concatenated."""
        return b"".join(data for data, _ in self.writes)


def split_response(raw: bytes) -> tuple[bytes, dict[str, str], bytes]:
    """
    Split a raw response into status line, headers and body.

    :param raw: The response bytes.
    :return: The status line, the headers and the body.
    """
    head, _, body = raw.partition(b"\r\n\r\n")
    status_line, *lines = head.decode("ISO-8859-1").split("\r\n")
    headers = {}
    for line in lines:
        name, _, value = line.partition(": ")
        headers[name] = value
    return status_line.encode("ISO-8859-1"), headers, body


class ClosableChunks:
    """A lazy body that records whether it was iterated and closed."""

    __slots__ = {
        "chunks": """The chunks to produce.""",
        "closed": """Whether close has been called.""",
        "iterated": """Whether iteration has started.""",
    }

    chunks: list[bytes]
    closed: bool
    iterated: bool

    def __init__(self: Self, *chunks: bytes) -> None:
        """Construct a new ClosableChunks."""
        self.chunks = list(chunks)
        self.closed = False
        self.iterated = False

    def __iter__(self: Self) -> Iterator[bytes]:
        """Produce the chunks."""
        self.iterated = True
        return iter(self.chunks)

    def close(self: Self) -> None:
        """Record the close."""
        self.closed = True


class TestFramingDecision(IsolatedAsyncioTestCase):
    """Tests the choice between content-length and chunked framing."""

    async def test_finite_body_gets_content_length(self: Self) -> None:
        """Test that a string body with no headers is sent with its byte length."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET")
        await framer.write(200, {}, "hello world")
        self.assertEqual(
            recorder.raw,
            b"HTTP/1.1 200 OK\r\ncontent-length: 11\r\n\r\nhello world",
        )
        self.assertIs(framer.framing, Framing.COMPUTED_LENGTH)
        self.assertTrue(framer.keep_alive)
        self.assertTrue(framer.finished)

    async def test_content_length_counts_bytes(self: Self) -> None:
        """Test that a str body's content-length is its UTF-8 size."""
        recorder = Recorder()
        await ResponseFramer(recorder, "GET").write(200, {}, "héllo")
        _, headers, body = split_response(recorder.raw)
        self.assertEqual(headers["content-length"], "6")
        self.assertEqual(body, "héllo".encode())

    async def test_lazy_body_is_chunked(self: Self) -> None:
        """Test that an iterable body without content-length is chunked."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET")
        await framer.write(
            200, {"content-type": "text/plain"}, [b"hello", b"", b" world!"]
        )
        status, headers, body = split_response(recorder.raw)
        self.assertEqual(status, b"HTTP/1.1 200 OK")
        self.assertEqual(
            headers, {"content-type": "text/plain", "transfer-encoding": "chunked"}
        )
        self.assertNotIn("content-length", headers)
        self.assertEqual(body, b"5\r\nhello\r\n7\r\n world!\r\n0\r\n\r\n")
        self.assertIs(framer.framing, Framing.CHUNKED)

    async def test_async_lazy_body_is_chunked(self: Self) -> None:
        """Test that an asynchronous iterable body is chunked too."""

        async def gen() -> AsyncIterator[bytes | str]:
            yield b"a" * 26
            yield "b"

        recorder = Recorder()
        await ResponseFramer(recorder, "GET").write(200, {}, gen())
        _, headers, body = split_response(recorder.raw)
        self.assertEqual(headers["transfer-encoding"], "chunked")
        self.assertEqual(body, b"1A\r\n" + b"a" * 26 + b"\r\n1\r\nb\r\n0\r\n\r\n")

    async def test_each_chunk_is_one_write(self: Self) -> None:
        """Test that a chunk size line is never written apart from its data."""
        recorder = Recorder()
        await ResponseFramer(recorder, "GET").write(200, {}, [b"abc", b"defg"])
        self.assertEqual(
            recorder.writes[1:],
            [
                (b"3\r\nabc\r\n", True),
                (b"4\r\ndefg\r\n", True),
                (b"0\r\n\r\n", True),
            ],
        )

    async def test_explicit_content_length_wins(self: Self) -> None:
        """Test that a handler-set content-length disables chunking for lazy bodies."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET")
        await framer.write(
            200,
            {"Content-Type": "text/plain", "Content-Length": "5"},
            ClosableChunks(b"pa", b"th1"),
        )
        _, headers, body = split_response(recorder.raw)
        self.assertEqual(headers["content-length"], "5")
        self.assertNotIn("transfer-encoding", headers)
        self.assertEqual(body, b"path1")
        self.assertIs(framer.framing, Framing.EXPLICIT_LENGTH)
        self.assertTrue(framer.keep_alive)

    async def test_wrong_content_length_is_sent_verbatim(self: Self) -> None:
        """Test that a numerically wrong content-length is not corrected."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET")
        with self.assertLogs("aioreel.framing", "WARNING"):
            await framer.write(200, {"content-length": "3"}, b"hello world")
        _, headers, body = split_response(recorder.raw)
        self.assertEqual(headers["content-length"], "3")
        self.assertEqual(body, b"hello world")
        self.assertFalse(framer.keep_alive)

    async def test_handler_transfer_encoding_is_discarded(self: Self) -> None:
        """Test that the handler cannot choose the transfer encoding."""
        recorder = Recorder()
        await ResponseFramer(recorder, "GET").write(
            200, {"transfer-encoding": "chunked"}, b"abc"
        )
        _, headers, body = split_response(recorder.raw)
        self.assertEqual(headers, {"content-length": "3"})
        self.assertEqual(body, b"abc")

    async def test_http10_lazy_body_is_close_delimited(self: Self) -> None:
        """Test that an HTTP/1.0 client is not sent chunked encoding."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET", "1.0")
        await framer.write(200, {}, [b"abc", b"def"])
        _, headers, body = split_response(recorder.raw)
        self.assertEqual(headers, {"connection": "close"})
        self.assertEqual(body, b"abcdef")
        self.assertIs(framer.framing, Framing.CLOSE_DELIMITED)
        self.assertFalse(framer.keep_alive)

    async def test_not_keep_alive_adds_connection_close(self: Self) -> None:
        """Test that a connection about to close says so."""
        recorder = Recorder()
        await ResponseFramer(recorder, "GET", keep_alive=False).write(200, {}, b"x")
        _, headers, _ = split_response(recorder.raw)
        self.assertEqual(headers, {"content-length": "1", "connection": "close"})

    async def test_no_content_status(self: Self) -> None:
        """Test that a 204 response gets neither a framing header nor a body."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET")
        await framer.write(204, {}, b"ignored")
        self.assertEqual(recorder.raw, b"HTTP/1.1 204 No Content\r\n\r\n")
        self.assertIs(framer.framing, Framing.NONE)

    async def test_unknown_status(self: Self) -> None:
        """Test the reason phrase of an unregistered status code."""
        recorder = Recorder()
        await ResponseFramer(recorder, "GET").write(599, {}, b"")
        self.assertTrue(recorder.raw.startswith(b"HTTP/1.1 599 Unknown Status\r\n"))

    async def test_list_header_value(self: Self) -> None:
        """Test that a list-valued header is sent as several lines."""
        recorder = Recorder()
        await ResponseFramer(recorder, "GET").write(
            200, {"set-cookie": ["a=1", "b=2"]}, b""
        )
        self.assertEqual(
            recorder.raw,
            b"HTTP/1.1 200 OK\r\nset-cookie: a=1\r\nset-cookie: b=2\r\n"
            b"content-length: 0\r\n\r\n",
        )


class TestHead(IsolatedAsyncioTestCase):
    """Tests responses to HEAD requests."""

    async def test_head_matches_get_headers(self: Self) -> None:
        """Test that HEAD sends the headers GET would, and no body."""
        get = Recorder()
        head = Recorder()
        await ResponseFramer(get, "GET").write(200, {"x-a": "b"}, b"hello world")
        await ResponseFramer(head, "HEAD").write(200, {"x-a": "b"}, b"hello world")
        get_head, _, get_body = get.raw.partition(b"\r\n\r\n")
        self.assertEqual(get_body, b"hello world")
        self.assertEqual(head.raw, get_head + b"\r\n\r\n")
        self.assertIn(b"content-length: 11", head.raw)

    async def test_head_lazy_body(self: Self) -> None:
        """Test that HEAD does not iterate a lazy body but does close it."""
        recorder = Recorder()
        body = ClosableChunks(b"never")
        framer = ResponseFramer(recorder, "head")
        await framer.write(200, {}, body)
        status, headers, rest = split_response(recorder.raw)
        self.assertEqual(status, b"HTTP/1.1 200 OK")
        self.assertEqual(headers, {"transfer-encoding": "chunked"})
        self.assertEqual(rest, b"")
        self.assertFalse(body.iterated)
        self.assertTrue(body.closed)
        self.assertTrue(framer.finished)

    async def test_head_matches_get_http10_lazy(self: Self) -> None:
        """Test that HEAD and GET agree on headers for an HTTP/1.0 lazy body."""
        get = Recorder()
        head = Recorder()
        get_framer = ResponseFramer(get, "GET", "1.0")
        head_framer = ResponseFramer(head, "HEAD", "1.0")
        await get_framer.write(200, {}, ClosableChunks(b"ab", b"cd"))
        await head_framer.write(200, {}, ClosableChunks(b"ab", b"cd"))
        get_head, _, get_body = get.raw.partition(b"\r\n\r\n")
        self.assertEqual(get_body, b"abcd")
        self.assertEqual(head.raw, get_head + b"\r\n\r\n")
        self.assertIn(b"connection: close\r\n", head.raw)
        self.assertFalse(get_framer.keep_alive)
        self.assertFalse(head_framer.keep_alive)

    async def test_head_explicit_length(self: Self) -> None:
        """Test that HEAD keeps an explicit content-length."""
        recorder = Recorder()
        await ResponseFramer(recorder, "HEAD").write(
            200, {"content-length": "11"}, [b"hello world"]
        )
        _, headers, rest = split_response(recorder.raw)
        self.assertEqual(headers, {"content-length": "11"})
        self.assertEqual(rest, b"")


class TestFramingErrors(IsolatedAsyncioTestCase):
    """Tests misuse of the framer."""

    async def test_headers_twice(self: Self) -> None:
        """Test that headers cannot be written twice."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET")
        await framer.write_head(200, {}, b"abc")
        with self.assertRaises(FrozenHeadersError):
            await framer.write_head(200, {}, b"abc")
        self.assertEqual(len(recorder.writes), 1)

    async def test_headers_after_body(self: Self) -> None:
        """Test that headers cannot be written after the body has started."""
        framer = ResponseFramer(Recorder(), "GET")
        await framer.write(200, {}, b"abc")
        with self.assertRaises(FramingError):
            await framer.write_head(200, {}, b"abc")

    async def test_body_before_headers(self: Self) -> None:
        """Test that the body cannot be written before the headers."""
        framer = ResponseFramer(Recorder(), "GET")
        with self.assertRaises(FramingError):
            await framer.write_body(b"abc")

    async def test_body_after_head_response(self: Self) -> None:
        """Test that a HEAD response is complete once its headers are written."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "HEAD")
        await framer.write_head(200, {}, b"abc")
        with self.assertRaises(FramingError):
            await framer.write_body(b"abc")
        self.assertEqual(len(recorder.writes), 1)

    async def test_body_twice(self: Self) -> None:
        """Test that a body cannot be written after the response is complete."""
        framer = ResponseFramer(Recorder(), "GET")
        await framer.write(200, {}, [b"abc"])
        with self.assertRaises(FramingError):
            await framer.write_body([b"abc"])

    async def test_header_injection(self: Self) -> None:
        """Test that a header value containing a line break is refused."""
        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET")
        with self.assertRaises(FramingError):
            await framer.write(200, {"x-a": "b\r\nx-evil: 1"}, b"")
        self.assertEqual(recorder.writes, [])

    async def test_failing_lazy_body(self: Self) -> None:
        """Test that a failing body leaves the chunk stream unterminated."""

        def gen() -> Iterator[bytes]:
            yield b"abc"
            msg = "boom"
            raise RuntimeError(msg)

        recorder = Recorder()
        framer = ResponseFramer(recorder, "GET")
        with self.assertRaises(HandlerError) as ctx:
            await framer.write(200, {}, gen())
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertEqual(recorder.writes[-1], (b"3\r\nabc\r\n", True))
        self.assertFalse(framer.finished)

    async def test_bad_chunk_type(self: Self) -> None:
        """Test that a body chunk of the wrong type is the handler's fault."""
        framer = ResponseFramer(Recorder(), "GET")
        with self.assertRaises(HandlerError):
            await framer.write(200, {}, [b"abc", 42])
