"""The HTTP protocol."""

from __future__ import annotations

import abc
import collections
import logging
import urllib.parse
from typing import Self

import httptools

from .errors import FramingError
from .framing import ResponseFramer
from .types import Handler, Headers, Request

_BAD_REQUEST_BODY = b"Bad Request"
_SERVER_ERROR_BODY = b"Internal Server Error"


def make_request(  # noqa: PLR0913
    method: bytes,
    url: bytes,
    headers: list[tuple[bytes, bytes]],
    body: bytes | None,
    http_version: str,
    client: tuple[str, int] | None,
) -> Request:
    """
    Convert parsed connection data into a Request.

    :param method: The request method.
    :param url: The request target, as sent on the request line.
    :param headers: The header name/value pairs, in the order received.
    :param body: The request body, or None if the request had none.
    :param http_version: The HTTP version, e.g. "1.1".
    :param client: The client host and port, if known.
    :return: The request.
    :raises ValueError: if the request target cannot be parsed or decoded
    """
    try:
        parsed = httptools.parse_url(url)
    except httptools.HttpParserInvalidURLError as exc:
        msg = f"Unparseable request target {url!r}"
        raise ValueError(msg) from exc
    try:
        path = urllib.parse.unquote_to_bytes(parsed.path or b"/").decode("UTF-8")
    except UnicodeDecodeError as exc:
        msg = f"Request path {parsed.path!r} is not valid UTF-8"
        raise ValueError(msg) from exc

    # Header names are case-insensitive; Headers keeps them in lowercase. Repeated
    # headers are joined.
    request_headers = Headers()
    for name, value in headers:
        request_headers.add(name.decode("ISO-8859-1"), value.decode("ISO-8859-1"))

    return Request(
        method.decode("ISO-8859-1"),
        path,
        request_headers,
        body or b"",
        query_string=parsed.query or b"",
        http_version=http_version,
        client=client,
    )


class _ParsedRequest:
    """The raw parts of one request, as collected from the parser callbacks."""

    __slots__ = {
        "body": """The body chunks received so far.""",
        "headers": """The header name/value pairs received so far.""",
        "http_version": """The HTTP version.""",
        "keep_alive": """Whether the client allows the connection to be reused.""",
        "method": """The request method.""",
        "url": """The request target.""",
    }

    body: list[bytes]
    headers: list[tuple[bytes, bytes]]
    http_version: str
    keep_alive: bool
    method: bytes
    url: bytes

    def __init__(self: Self) -> None:
        """Construct a new, empty _ParsedRequest."""
        self.body = []
        self.headers = []
        self.http_version = "1.1"
        self.keep_alive = True
        self.method = b""
        self.url = b""


class _ParserCallbacks:
    """
    The receiver of httptools parser callbacks.

    Completed requests are queued in order, so that requests pipelined into a single
    read are all kept and then served one at a time.
    """

    __slots__ = {
        "_current": """The request being parsed, if any.""",
        "completed": """The completely parsed requests not yet served.""",
        "parser": """The httptools parser feeding this object.""",
    }

    _current: _ParsedRequest | None
    completed: collections.deque[_ParsedRequest]
    parser: httptools.HttpRequestParser

    def __init__(self: Self) -> None:
        """Construct a new _ParserCallbacks and its parser."""
        self._current = None
        self.completed = collections.deque()
        self.parser = httptools.HttpRequestParser(self)

    @property
    def in_progress(self: Self) -> bool:
        """Whether part of a request has been received."""
        return self._current is not None

    def on_message_begin(self: Self) -> None:  # noqa: D102
        self._current = _ParsedRequest()

    def on_url(self: Self, url: bytes) -> None:  # noqa: D102
        assert self._current is not None
        self._current.url += url

    def on_header(self: Self, name: bytes, value: bytes) -> None:  # noqa: D102
        assert self._current is not None
        self._current.headers.append((name, value))

    def on_headers_complete(self: Self) -> None:  # noqa: D102
        assert self._current is not None
        self._current.method = self.parser.get_method()
        self._current.http_version = self.parser.get_http_version()
        self._current.keep_alive = self.parser.should_keep_alive()

    def on_body(self: Self, body: bytes) -> None:  # noqa: D102
        assert self._current is not None
        self._current.body.append(body)

    def on_message_complete(self: Self) -> None:  # noqa: D102
        assert self._current is not None
        self.completed.append(self._current)
        self._current = None


class Connection(abc.ABC):
    """
    The handler for one accepted connection.

    Each time the I/O adapter accepts a new incoming connection, it must create a new
    instance of an I/O-adapter-specific subclass of this class and then await the
    object’s run method in a dedicated per-connection task.

    Requests on the connection are served strictly one after another: the response to
    one request is written completely before the next request is handed to the
    handler.
    """

    __slots__ = {
        "_client": """The client host and port, if known.""",
        "_close_after_queue": """Whether to close after the queued requests.""",
        "_closing": """Whether the connection should close after this exchange.""",
        "_handler": """The handler that serves requests.""",
        "_idle": """Whether no exchange is in progress.""",
        "_parser": """The HTTP request parser and its queue of parsed requests.""",
    }

    _client: tuple[str, int] | None
    _close_after_queue: bool
    _closing: bool
    _handler: Handler
    _idle: bool
    _parser: _ParserCallbacks

    def __init__(
        self: Self,
        handler: Handler,
        client: tuple[str, int] | None = None,
    ) -> None:
        """
        Construct a new Connection.

        :param handler: The handler that serves requests, typically a Router.
        :param client: The client host and port, if known.
        """
        self._client = client
        self._close_after_queue = False
        self._closing = False
        self._handler = handler
        self._idle = True
        self._parser = _ParserCallbacks()

    @abc.abstractmethod
    async def read_chunk(self: Self) -> bytes:
        """
        Read a chunk of bytes from the underlying connection.

        :return: The bytes, or a zero-length bytes object if the underlying connection
            has reached EOF.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def write_chunk(self: Self, data: bytes, drain: bool) -> None:
        """
        Write a chunk of bytes to the underlying connection.

        :param data: The bytes to write.
        :param drain: True if the function should wait until the data has been accepted
            by the kernel before returning.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def close_transport(self: Self) -> None:
        """
        Close the underlying connection.

        A read in progress must then complete with EOF.
        """
        raise NotImplementedError

    @property
    def idle(self: Self) -> bool:
        """Whether no exchange is in progress; a partly received request is idle."""
        return self._idle

    def request_shutdown(self: Self) -> None:
        """
        Ask the connection to finish.

        An exchange in progress is completed, with the response telling the client that
        the connection will close. A connection with no exchange in progress is closed
        right away, even if part of the next request has arrived.
        """
        self._closing = True
        if self._idle:
            logging.getLogger(__name__).debug("Closing idle connection for shutdown")
            self.close_transport()

    async def run(self: Self) -> None:
        """
        Serve requests until the connection ends.

        The caller is expected to close the connection to the client after this
        function returns.
        """
        while not self._closing:
            self._idle = True
            try:
                parsed = await self._read_request()
            except (httptools.HttpParserError, httptools.HttpParserUpgrade):
                self._idle = False
                logging.getLogger(__name__).warning(
                    "Malformed or unsupported HTTP request", exc_info=True
                )
                await self._send_error(400, _BAD_REQUEST_BODY)
                return
            if parsed is None:
                return
            self._idle = False
            if not await self._exchange(parsed):
                return

    async def _read_request(self: Self) -> _ParsedRequest | None:
        """
        Receive the next complete request.

        :return: The request, or None if the client closed the connection first.
        """
        while not self._parser.completed:
            if self._close_after_queue:
                return None
            chunk = await self._read_chunk_wrapper()
            if not chunk:
                if self._parser.in_progress:
                    logging.getLogger(__name__).debug("Premature EOF on HTTP socket")
                return None
            try:
                self._parser.parser.feed_data(chunk)
            except httptools.HttpParserUpgrade:
                self._parser.completed.clear()
                raise
            except httptools.HttpParserError:
                if not self._parser.completed:
                    raise
                # Requests completed before the bad data are still answered, but the
                # connection ends after the last of them.
                logging.getLogger(__name__).debug(
                    "Discarding unparseable data after request", exc_info=True
                )
                self._close_after_queue = True
        parsed = self._parser.completed.popleft()
        if self._close_after_queue and not self._parser.completed:
            self._closing = True
        return parsed

    async def _exchange(self: Self, parsed: _ParsedRequest) -> bool:
        """
        Serve one request.

        :param parsed: The request as parsed.
        :return: Whether the connection can carry another exchange.
        """
        try:
            request = make_request(
                parsed.method,
                parsed.url,
                parsed.headers,
                b"".join(parsed.body),
                parsed.http_version,
                self._client,
            )
        except ValueError:
            logging.getLogger(__name__).warning("Bad request target", exc_info=True)
            await self._send_error(400, _BAD_REQUEST_BODY)
            return False

        logging.getLogger(__name__).debug("Starting handler with %r", request)
        framer: ResponseFramer | None = None
        try:
            response = await self._handler.handle(request)
            # A shutdown requested while the handler ran must still be announced.
            framer = ResponseFramer(
                self.write_chunk,
                request.method,
                request.http_version,
                keep_alive=parsed.keep_alive and not self._closing,
            )
            await framer.write(response.status, response.headers, response.body)
        except (BrokenPipeError, ConnectionResetError):
            logging.getLogger(__name__).debug("HTTP socket broken on write")
            return False
        except FramingError:
            logging.getLogger(__name__).exception("Cannot frame response to %r", request)
            return False
        except Exception:  # pylint: disable=broad-except
            logging.getLogger(__name__).exception(
                "Uncaught exception in handler for %r", request
            )
            if framer is not None and framer.headers_sent:
                # Part of the response is already out; the only way left to signal
                # the failure is to drop the connection.
                return False
            await self._send_error(500, _SERVER_ERROR_BODY, request.method)
            return False
        return framer is not None and framer.keep_alive and not self._closing

    async def _send_error(
        self: Self, status: int, body: bytes, request_method: str = "GET"
    ) -> None:
        """
        Send an error response and mark the connection for closing.

        :param status: The status code.
        :param body: The plain-text body.
        :param request_method: The method of the request being answered.
        """
        self._closing = True
        framer = ResponseFramer(self.write_chunk, request_method, keep_alive=False)
        try:
            await framer.write(status, {"content-type": "text/plain"}, body)
        except (BrokenPipeError, ConnectionResetError):
            logging.getLogger(__name__).debug("HTTP socket broken on write")

    async def _read_chunk_wrapper(self: Self) -> bytes:
        """
        Read the next chunk from the client.

        A ConnectionResetError is translated into an EOF.
        """
        try:
            return await self.read_chunk()
        except ConnectionResetError:
            return b""
