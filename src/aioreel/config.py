"""Server configuration."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Self

from .types import HandlerLike

DEFAULT_HOST = "127.0.0.1"
"""The host to listen on if none is configured."""

DEFAULT_PORT = 30000
"""The port to listen on if none is configured."""


class ServerConfig:
    """
    The configuration of one server.

    There should be one instance of this per Server; nothing in it is process-wide.
    """

    __slots__ = {
        "default_handler": """The handler for requests that match no mount.""",
        "host": """The host name or address literal to listen on.""",
        "mounts": """The (path prefix, handler) pairs, in registration order.""",
        "port": """The TCP port to listen on, or 0 for any free port.""",
        "shutdown_timeout": """
            Seconds to wait for in-flight connections when stopping, or None to wait
            indefinitely.
            """,
    }

    default_handler: HandlerLike
    host: str
    mounts: tuple[tuple[str, HandlerLike], ...]
    port: int
    shutdown_timeout: float | None

    def __init__(  # noqa: PLR0913
        self: Self,
        default_handler: HandlerLike,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        mounts: Iterable[tuple[str, HandlerLike]] = (),
        shutdown_timeout: float | None = None,
    ) -> None:
        """
        Construct a new ServerConfig.

        :param default_handler: The handler for requests that match no mount.
        :param host: The host to listen on.
        :param port: The port to listen on.
        :param mounts: The (path prefix, handler) pairs to mount.
        :param shutdown_timeout: Seconds to wait for in-flight connections when
            stopping, after which they are cancelled, or None to wait indefinitely.
        """
        if not 0 <= port <= 0xFFFF:  # noqa: PLR2004
            msg = f"Port {port} out of range"
            raise ValueError(msg)
        if shutdown_timeout is not None and shutdown_timeout < 0:
            msg = "Shutdown timeout must not be negative"
            raise ValueError(msg)
        self.default_handler = default_handler
        self.host = host
        self.port = port
        self.mounts = tuple(mounts)
        self.shutdown_timeout = shutdown_timeout
