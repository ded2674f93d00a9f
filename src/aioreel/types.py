"""Data types used by multiple modules."""

from __future__ import annotations

import abc
import inspect
from collections.abc import (
    AsyncIterable,
    Callable,
    Iterable,
    Iterator,
    Mapping,
    MutableMapping,
)
from typing import Any, Self

from .errors import HandlerError

HeaderValue = str | list[str]
"""The legal types of a header value; a list produces one header line per item."""

FiniteBody = bytes | bytearray | memoryview | str
"""A response body whose size is known without iterating it."""

LazyBody = Iterable[bytes | str] | AsyncIterable[bytes | str]
"""A response body produced chunk by chunk."""

Body = FiniteBody | LazyBody
"""The legal types of a response body."""

FunctionType = Callable[[str, str, "Headers", bytes], Any]
"""
The type of a plain handler callable.

The callable receives the method, path, headers and body of the request and returns
(or, if it is a coroutine function, resolves to) a status, headers, body triple.
"""


class Headers(MutableMapping[str, HeaderValue]):
    """
    A case-insensitive mapping of HTTP header names to values.

    Names are stored in lowercase, which is the canonical form used throughout.
    """

    __slots__ = {
        "_items": """The headers, keyed by lowercase name.""",
    }

    _items: dict[str, HeaderValue]

    def __init__(
        self: Self,
        items: Mapping[str, HeaderValue] | Iterable[tuple[str, HeaderValue]] = (),
    ) -> None:
        """
        Construct a new Headers.

        :param items: The initial headers, as a mapping or as name/value pairs.
        """
        self._items = {}
        pairs = items.items() if isinstance(items, Mapping) else items
        for name, value in pairs:
            self[name] = value

    def __getitem__(self: Self, name: str) -> HeaderValue:
        return self._items[name.lower()]

    def __setitem__(self: Self, name: str, value: HeaderValue) -> None:
        self._items[name.lower()] = value

    def __delitem__(self: Self, name: str) -> None:
        del self._items[name.lower()]

    def __contains__(self: Self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._items

    def __iter__(self: Self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self: Self) -> int:
        return len(self._items)

    def __repr__(self: Self) -> str:
        return f"Headers({self._items!r})"

    def add(self: Self, name: str, value: str) -> None:
        """
        Add a value to a header, joining with any existing value.

        Repeated request headers are combined this way.

        :param name: The header name.
        :param value: The value to add.
        """
        existing = self._items.get(name.lower())
        if existing is None:
            self[name] = value
        elif isinstance(existing, list):
            self[name] = ", ".join([*existing, value])
        else:
            self[name] = f"{existing}, {value}"


class Request:
    """One HTTP request, normalized for a handler."""

    __slots__ = {
        "body": """The request body; empty if the request had none.""",
        "client": """The client host and port, if known.""",
        "headers": """The request headers.""",
        "http_version": """The HTTP version, e.g. "1.1".""",
        "method": """The uppercase request method.""",
        "path": """The percent-decoded request path.""",
        "query_string": """The raw query string, without the question mark.""",
        "root_path": """The mount prefix consumed by routing so far.""",
    }

    body: bytes
    client: tuple[str, int] | None
    headers: Headers
    http_version: str
    method: str
    path: str
    query_string: bytes
    root_path: str

    def __init__(  # noqa: PLR0913
        self: Self,
        method: str,
        path: str,
        headers: Headers | None = None,
        body: bytes = b"",
        *,
        query_string: bytes = b"",
        http_version: str = "1.1",
        client: tuple[str, int] | None = None,
        root_path: str = "",
    ) -> None:
        """
        Construct a new Request.

        :param method: The request method.
        :param path: The request path.
        :param headers: The request headers.
        :param body: The request body.
        :param query_string: The raw query string.
        :param http_version: The HTTP version.
        :param client: The client host and port, if known.
        :param root_path: The mount prefix consumed by routing so far.
        """
        self.method = method.upper()
        self.path = path
        self.headers = headers if headers is not None else Headers()
        self.body = body
        self.query_string = query_string
        self.http_version = http_version
        self.client = client
        self.root_path = root_path

    def __repr__(self: Self) -> str:
        return f"<Request {self.method} {self.path!r}>"

    @property
    def path_info(self: Self) -> str:
        """The part of the path not yet consumed by routing."""
        return self.path[len(self.root_path) :]

    def mounted_at(self: Self, prefix: str) -> Request:
        """
        Return a copy of this request with a further mount prefix consumed.

        :param prefix: The mount prefix, relative to the current root path.
        :return: The new request.
        """
        return Request(
            self.method,
            self.path,
            self.headers,
            self.body,
            query_string=self.query_string,
            http_version=self.http_version,
            client=self.client,
            root_path=self.root_path + prefix,
        )


class Response:
    """A handler's reply to a request."""

    __slots__ = {
        "body": """The body, either finite or lazy.""",
        "headers": """The response headers.""",
        "status": """The status code.""",
    }

    body: Body
    headers: Headers
    status: int

    def __init__(
        self: Self,
        status: int = 200,
        headers: Mapping[str, HeaderValue] | None = None,
        body: Body = b"",
    ) -> None:
        """
        Construct a new Response.

        :param status: The status code.
        :param headers: The response headers.
        :param body: The response body.
        """
        self.status = status
        self.headers = Headers(headers if headers is not None else ())
        self.body = body

    def __repr__(self: Self) -> str:
        return f"<Response {self.status}>"


class Handler(abc.ABC):
    """An object that turns requests into responses."""

    __slots__ = ()

    @abc.abstractmethod
    async def handle(self: Self, request: Request) -> Response:
        """
        Handle a request.

        :param request: The request.
        :return: The response.
        """
        raise NotImplementedError


class FunctionHandler(Handler):
    """A handler that delegates to a plain callable."""

    __slots__ = {
        "_function": """The wrapped callable.""",
    }

    _function: FunctionType

    def __init__(self: Self, function: FunctionType) -> None:
        """
        Construct a new FunctionHandler.

        :param function: A callable taking method, path, headers and body and returning
            a status, headers, body triple, or an awaitable resolving to one.
        """
        self._function = function

    def __repr__(self: Self) -> str:
        return f"FunctionHandler({self._function!r})"

    async def handle(self: Self, request: Request) -> Response:  # noqa: D102
        result = self._function(
            request.method, request.path_info, request.headers, request.body
        )
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, tuple) or len(result) != 3:  # noqa: PLR2004
            msg = f"Handler returned {result!r}, expected (status, headers, body)"
            raise HandlerError(msg)
        status, headers, body = result
        return Response(status, headers, body)


HandlerLike = Handler | FunctionType
"""Anything that can be used as a handler."""


def as_handler(handler: HandlerLike) -> Handler:
    """
    Wrap a plain callable as a handler; pass handlers through.

    :param handler: A handler or a plain callable.
    :return: The handler.
    """
    if isinstance(handler, Handler):
        return handler
    if not callable(handler):
        msg = f"{handler!r} is neither a Handler nor callable"
        raise TypeError(msg)
    return FunctionHandler(handler)

