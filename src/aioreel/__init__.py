"""
An HTTP server adapter that runs request/response handlers on asyncio.

aioreel is split, like the I/O it performs, into protocol logic that is agnostic to
the choice of asynchronous framework (the http, framing and router modules) and an
I/O adapter that connects that logic to a specific framework (the asyncio module).

A handler is either a Handler subclass, whose handle coroutine turns a Request into a
Response, or a plain callable taking (method, path, headers, body) and returning a
(status, headers, body) triple. The server chooses between a content-length and
chunked transfer encoding for each response based on what the handler returns.

Please see the individual modules for more details.
"""

from .asyncio import Server, ServerState
from .config import ServerConfig
from .errors import FramingError, FrozenHeadersError, HandlerError
from .framing import ResponseFramer
from .router import Router
from .types import FunctionHandler, Handler, Headers, Request, Response

__all__ = [
    "FramingError",
    "FrozenHeadersError",
    "FunctionHandler",
    "Handler",
    "HandlerError",
    "Headers",
    "Request",
    "Response",
    "ResponseFramer",
    "Router",
    "Server",
    "ServerConfig",
    "ServerState",
]
