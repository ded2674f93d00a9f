"""
Framing of responses onto an HTTP/1.1 connection.

The framer decides, for each response, how the end of the body is communicated to
the client, in this order of precedence:

1. A content-length header set by the handler is honoured verbatim and the body is
   written as-is, whatever its type.
2. A finite body (bytes or str) gets a computed content-length.
3. Any other body is an iterable of chunks of unknown total size and is sent with
   chunked transfer encoding, or, to an HTTP/1.0 client that cannot decode that,
   unframed and delimited by closing the connection.

Responses to HEAD requests, and responses whose status forbids a body, carry the
headers the above produces but no body at all.
"""

from __future__ import annotations

import enum
import http
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Mapping
from typing import Self

from .errors import FramingError, FrozenHeadersError, HandlerError
from .types import Body, Headers, HeaderValue

WriteFunction = Callable[[bytes, bool], Awaitable[None]]
"""The type of the write-to-client callable: data, and whether to drain."""

CHUNK_TERMINATOR = b"0\r\n\r\n"
"""The zero-length chunk (with an empty trailer) that ends a chunked body."""


class _State(enum.Enum):
    """How far the response has progressed."""

    INITIAL = enum.auto()
    HEADERS_SENT = enum.auto()
    FINISHED = enum.auto()


class Framing(enum.Enum):
    """The way the end of a response body is communicated."""

    EXPLICIT_LENGTH = enum.auto()
    """The handler set content-length."""

    COMPUTED_LENGTH = enum.auto()
    """The framer set content-length from the size of a finite body."""

    CHUNKED = enum.auto()
    """The body is sent with chunked transfer encoding."""

    CLOSE_DELIMITED = enum.auto()
    """The body is sent unframed and ended by closing the connection."""

    NONE = enum.auto()
    """The status forbids a body, so no framing header is needed."""


def _status_line(status: int) -> str:
    """
    Generate the HTTP status line.

    :param status: The status code.
    :returns: The status line, without the line terminator.
    """
    try:
        phrase = http.HTTPStatus(status).phrase
    except ValueError:
        phrase = "Unknown Status"
    return f"HTTP/1.1 {status} {phrase}"


def _status_forbids_body(status: int) -> bool:
    """
    Check whether responses with a status code never carry a body.

    :param status: The status code.
    """
    return (
        http.HTTPStatus.CONTINUE <= status < http.HTTPStatus.OK
        or status in (http.HTTPStatus.NO_CONTENT, http.HTTPStatus.NOT_MODIFIED)
    )


def _to_bytes(chunk: bytes | bytearray | memoryview | str) -> bytes:
    """
    Convert one piece of body data to bytes.

    :param chunk: The data; str is encoded as UTF-8.
    """
    if isinstance(chunk, str):
        return chunk.encode("UTF-8")
    if isinstance(chunk, bytes | bytearray | memoryview):
        return bytes(chunk)
    msg = f"Body chunk {chunk!r} is not bytes or str"
    raise TypeError(msg)


def finite_length(body: Body) -> int | None:
    """
    Find the size of a body, if it is known without iterating it.

    :param body: The body.
    :return: The size in bytes, or None for a lazy body.
    """
    if isinstance(body, bytes | bytearray):
        return len(body)
    if isinstance(body, memoryview):
        return body.nbytes
    if isinstance(body, str):
        return len(body.encode("UTF-8"))
    return None


async def close_body(body: Body) -> None:
    """
    Release a lazy body that will not be, or has been, fully iterated.

    :param body: The body; it is closed via aclose or close if it has either.
    """
    aclose = getattr(body, "aclose", None)
    if aclose is not None:
        await aclose()
        return
    close = getattr(body, "close", None)
    if close is not None:
        close()


async def _iterate(body: Body) -> AsyncIterator[bytes]:
    """
    Iterate a body as bytes chunks.

    Failures of the body itself are raised as HandlerError.

    :param body: The body, finite or lazy.
    """
    if isinstance(body, bytes | bytearray | memoryview | str):
        yield _to_bytes(body)
        return
    try:
        if isinstance(body, AsyncIterable):
            async for chunk in body:
                yield _to_bytes(chunk)
        else:
            for chunk in body:
                yield _to_bytes(chunk)
    except Exception as exc:
        msg = "Exception while iterating response body"
        raise HandlerError(msg) from exc


def _header_lines(name: str, value: HeaderValue | int) -> list[str]:
    """
    Render one header as wire lines.

    :param name: The header name.
    :param value: The value; a list produces one line per item.
    """
    values = value if isinstance(value, list) else [value]
    lines = []
    for item in values:
        text = str(item)
        if not name or any(c in name for c in ":\r\n") or "\r" in text or "\n" in text:
            msg = f"Header {name!r}: {text!r} cannot be sent"
            raise FramingError(msg)
        lines.append(f"{name}: {text}\r\n")
    return lines


def encode_head(status: int, headers: Headers) -> bytes:
    """
    Encode the status line and headers.

    :param status: The status code.
    :param headers: The headers.
    :return: The encoded head, including the blank line that ends it.
    """
    lines = [_status_line(status), "\r\n"]
    for name, value in headers.items():
        lines.extend(_header_lines(name, value))
    lines.append("\r\n")
    try:
        return "".join(lines).encode("ISO-8859-1")
    except UnicodeEncodeError as exc:
        msg = "Response headers are not representable in ISO-8859-1"
        raise FramingError(msg) from exc


class ResponseFramer:
    """
    Writes one response to a connection.

    An instance handles a single request/response exchange. Headers may be written
    only once; the body may be written only after them and only once.
    """

    __slots__ = {
        "_declared_length": """The explicit content-length as an integer, if any.""",
        "_framing": """How the end of the body is communicated.""",
        "_http_version": """The HTTP version of the request.""",
        "_keep_alive": """Whether the connection can carry another exchange.""",
        "_request_method": """The method of the request being answered.""",
        "_state": """How far the response has progressed.""",
        "_write": """The write-to-client callable.""",
    }

    _declared_length: int | None
    _framing: Framing | None
    _http_version: str
    _keep_alive: bool
    _request_method: str
    _state: _State
    _write: WriteFunction

    def __init__(
        self: Self,
        write: WriteFunction,
        request_method: str,
        http_version: str = "1.1",
        *,
        keep_alive: bool = True,
    ) -> None:
        """
        Construct a new ResponseFramer.

        :param write: A coroutine which accepts a bytes and a bool and sends the bytes
            to the client; the bool is a hint indicating whether it should wait until
            the bytes have been sent before returning.
        :param request_method: The method of the request being answered.
        :param http_version: The HTTP version of the request.
        :param keep_alive: Whether the connection is to be kept open after this
            response, as far as the caller is concerned.
        """
        self._declared_length = None
        self._framing = None
        self._http_version = http_version
        self._keep_alive = keep_alive
        self._request_method = request_method.upper()
        self._state = _State.INITIAL
        self._write = write

    @property
    def framing(self: Self) -> Framing | None:
        """The framing chosen for the body, or None before the headers are written."""
        return self._framing

    @property
    def headers_sent(self: Self) -> bool:
        """Whether the headers have been written."""
        return self._state is not _State.INITIAL

    @property
    def finished(self: Self) -> bool:
        """Whether the response has been written completely."""
        return self._state is _State.FINISHED

    @property
    def keep_alive(self: Self) -> bool:
        """Whether the connection can carry another exchange after this one."""
        return self._keep_alive

    async def write(
        self: Self, status: int, headers: Mapping[str, HeaderValue], body: Body
    ) -> None:
        """
        Write a complete response.

        :param status: The status code.
        :param headers: The response headers.
        :param body: The response body.
        """
        await self.write_head(status, headers, body)
        if self._state is _State.FINISHED:
            # The body is suppressed; it still has to be released.
            await close_body(body)
        else:
            await self.write_body(body)

    async def write_head(
        self: Self, status: int, headers: Mapping[str, HeaderValue], body: Body
    ) -> None:
        """
        Choose the framing for a response and write its status line and headers.

        :param status: The status code.
        :param headers: The response headers; they are not modified.
        :param body: The response body, which is examined but not consumed.
        :raises FrozenHeadersError: if the headers have already been written
        """
        if self._state is not _State.INITIAL:
            msg = "Response headers have already been sent"
            raise FrozenHeadersError(msg)
        headers = Headers(headers)
        # Transfer framing belongs to this class, not to the handler.
        headers.pop("transfer-encoding", None)
        bodiless = self._request_method == "HEAD" or _status_forbids_body(status)
        length = finite_length(body)

        if "content-length" in headers:
            self._framing = Framing.EXPLICIT_LENGTH
            try:
                self._declared_length = int(headers["content-length"])  # type: ignore[arg-type]
            except (TypeError, ValueError):
                logging.getLogger(__name__).warning(
                    "Handler set unparseable content-length %r",
                    headers["content-length"],
                )
                self._keep_alive = False
        elif _status_forbids_body(status):
            self._framing = Framing.NONE
        elif length is not None:
            self._framing = Framing.COMPUTED_LENGTH
            self._declared_length = length
            headers["content-length"] = str(length)
        elif self._http_version == "1.0":
            self._framing = Framing.CLOSE_DELIMITED
            self._keep_alive = False
        else:
            self._framing = Framing.CHUNKED
            headers["transfer-encoding"] = "chunked"

        if not self._keep_alive:
            headers["connection"] = "close"

        raw = encode_head(status, headers)
        self._state = _State.FINISHED if bodiless else _State.HEADERS_SENT
        logging.getLogger(__name__).debug(
            "Sending %d response to %s with %s framing",
            status,
            self._request_method,
            self._framing.name,
        )
        # Don’t drain; allow the I/O layer to combine the headers with the first body
        # chunk if it wishes.
        await self._write(raw, False)

    async def write_body(self: Self, body: Body) -> None:
        """
        Write the body of the response.

        :param body: The response body, finite or lazy.
        :raises FramingError: if the headers have not been written, or the response is
            already complete (as a HEAD response is as soon as its headers are written)
        """
        if self._state is _State.INITIAL:
            msg = "Response body written before headers"
            raise FramingError(msg)
        if self._state is _State.FINISHED:
            msg = "Response body written after response was complete"
            raise FramingError(msg)
        written = 0
        chunks = _iterate(body)
        try:
            async for chunk in chunks:
                written += len(chunk)
                await self._write_data(chunk)
        finally:
            await chunks.aclose()
            await close_body(body)
        if self._framing is Framing.CHUNKED:
            await self._write(CHUNK_TERMINATOR, True)
        elif (
            self._framing is Framing.EXPLICIT_LENGTH
            and self._declared_length is not None
            and written != self._declared_length
        ):
            logging.getLogger(__name__).warning(
                "Handler declared content-length %d but sent %d bytes; "
                "closing connection",
                self._declared_length,
                written,
            )
            self._keep_alive = False
        self._state = _State.FINISHED

    async def _write_data(self: Self, chunk: bytes) -> None:
        """
        Write one chunk of body data with the chosen framing.

        :param chunk: The data.
        """
        if not chunk:
            # A zero-length chunk would end a chunked body early.
            return
        if self._framing is Framing.CHUNKED:
            # One write per chunk, so the size line is never sent without its data.
            await self._write(b"%X\r\n%b\r\n" % (len(chunk), chunk), True)
        else:
            await self._write(chunk, True)
