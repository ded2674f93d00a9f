"""An I/O adapter connecting aioreel to the Python standard library asyncio."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import functools
import io
import logging
import signal
import socket
from types import TracebackType
from typing import Self

from . import http
from .config import ServerConfig
from .router import Router
from .types import Handler


class Connection(http.Connection):
    """An HTTP connection over asyncio."""

    __slots__ = {
        "_stream_reader": """The stream reader for the connection.""",
        "_stream_writer": """The stream writer for the connection.""",
    }

    _stream_reader: asyncio.StreamReader
    _stream_writer: asyncio.StreamWriter

    def __init__(
        self: Self,
        handler: Handler,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """
        Construct a new Connection.

        :param handler: The handler that serves requests.
        :param reader: The read half of the connection.
        :param writer: The write half of the connection.
        """
        peer = writer.get_extra_info("peername")
        client = (str(peer[0]), int(peer[1])) if isinstance(peer, tuple) else None
        super().__init__(handler, client)
        self._stream_reader = reader
        self._stream_writer = writer

    async def read_chunk(self: Self) -> bytes:  # noqa: D102
        return await self._stream_reader.read(io.DEFAULT_BUFFER_SIZE)

    async def write_chunk(self: Self, data: bytes, drain: bool) -> None:  # noqa: D102
        self._stream_writer.write(data)
        if drain:
            await self._stream_writer.drain()

    def close_transport(self: Self) -> None:  # noqa: D102
        self._stream_writer.close()


class ConnectionHandler:
    """
    A handler for incoming connections.

    This handler handles creating a Connection object for each connection and running
    it, closing the connection once it is finished, and tracking the set of running
    connection-handling tasks.
    """

    __slots__ = {
        "_connections",
        "_handler",
        "_shutting_down",
    }

    _connections: dict[asyncio.Task[None], Connection]
    _handler: Handler
    _shutting_down: bool

    def __init__(self: Self, handler: Handler) -> None:
        """
        Construct a new ConnectionHandler.

        :param handler: The handler that serves requests.
        """
        self._connections = {}
        self._handler = handler
        self._shutting_down = False

    def __len__(self: Self) -> int:
        """Return the number of connections in progress."""
        return len(self._connections)

    async def handle_connection(
        self: Self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """
        Handle a single connection.

        Failures are logged and go no further, so that one connection cannot affect
        the listener or any other connection.

        :param reader: The read half of the connection.
        :param writer: The write half of the connection.
        """
        task = asyncio.current_task()
        assert task is not None
        connection = Connection(self._handler, reader, writer)
        self._connections[task] = connection
        if self._shutting_down:
            # Accepted just before the listener closed.
            connection.request_shutdown()
        try:
            try:
                await connection.run()
            finally:
                writer.close()
                with contextlib.suppress(ConnectionError):
                    await writer.wait_closed()
        except ConnectionError:
            logging.getLogger(__name__).debug("Connection lost", exc_info=True)
        except Exception:  # pylint: disable=broad-except
            logging.getLogger(__name__).exception("Uncaught exception on connection")
        finally:
            del self._connections[task]

    def request_shutdown(self: Self) -> None:
        """Ask every connection, including any accepted from now on, to finish."""
        self._shutting_down = True
        for connection in self._connections.values():
            connection.request_shutdown()

    async def wait_finished(self: Self, timeout: float | None) -> None:
        """
        Wait until all connection tasks have completed.

        :param timeout: Seconds to wait before cancelling the remaining tasks, or None
            to wait indefinitely.
        """
        if not self._connections:
            return
        _, pending = await asyncio.wait(set(self._connections), timeout=timeout)
        if pending:
            logging.getLogger(__name__).warning(
                "Cancelling %d connection(s) still running at shutdown", len(pending)
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


class ServerState(enum.Enum):
    """The lifecycle states of a Server."""

    STOPPED = enum.auto()
    LISTENING = enum.auto()
    STOPPING = enum.auto()


class Server:
    """
    An HTTP server running handlers on asyncio.

    Each server owns its router, its listening sockets and its connections; any number
    of servers can run in the same event loop.
    """

    __slots__ = {
        "_config": """The server configuration.""",
        "_connection_handler": """The tracker of accepted connections.""",
        "_router": """The router built from the configuration.""",
        "_server": """The asyncio listening server, while listening.""",
        "_state": """The lifecycle state.""",
        "_stopped": """A future completed when an ongoing stop finishes.""",
    }

    _config: ServerConfig
    _connection_handler: ConnectionHandler
    _router: Router
    _server: asyncio.Server | None
    _state: ServerState
    _stopped: asyncio.Future[None] | None

    def __init__(self: Self, config: ServerConfig) -> None:
        """
        Construct a new Server.

        :param config: The server configuration.
        """
        self._config = config
        self._router = Router(config.mounts, config.default_handler)
        self._connection_handler = ConnectionHandler(self._router)
        self._server = None
        self._state = ServerState.STOPPED
        self._stopped = None

    async def __aenter__(self: Self) -> Self:
        """Start the server."""
        await self.start()
        return self

    async def __aexit__(
        self: Self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Stop the server."""
        await self.stop()

    @property
    def state(self: Self) -> ServerState:
        """The lifecycle state."""
        return self._state

    @property
    def router(self: Self) -> Router:
        """The router that serves requests."""
        return self._router

    @property
    def sockets(self: Self) -> tuple[socket.socket, ...]:
        """The listening sockets; empty unless listening."""
        if self._server is None:
            return ()
        return tuple(self._server.sockets)

    @property
    def port(self: Self) -> int | None:
        """The port of the first listening socket, or None if not listening."""
        for sock in self.sockets:
            return int(sock.getsockname()[1])
        return None

    async def start(self: Self, host: str | None = None, port: int | None = None) -> None:
        """
        Start accepting connections.

        :param host: The host to listen on, overriding the configuration.
        :param port: The port to listen on, overriding the configuration.
        :raises RuntimeError: if the server is not stopped
        """
        if self._state is not ServerState.STOPPED:
            msg = f"Cannot start a server that is {self._state.name.lower()}"
            raise RuntimeError(msg)
        self._connection_handler = ConnectionHandler(self._router)
        host = self._config.host if host is None else host
        port = self._config.port if port is None else port
        self._server = await asyncio.start_server(
            self._connection_handler.handle_connection, host=host, port=port
        )
        self._state = ServerState.LISTENING
        logging.getLogger(__name__).info(
            "Server listening on %s",
            ", ".join(str(sock.getsockname()) for sock in self._server.sockets),
        )

    async def stop(self: Self) -> None:
        """
        Stop the server.

        New connections are refused at once, in-flight exchanges are allowed to finish
        (within the configured shutdown timeout), and then the listening sockets are
        released. Stopping a stopped server does nothing; stopping a stopping server
        waits for the first stop to finish.
        """
        if self._state is ServerState.STOPPED:
            return
        if self._state is ServerState.STOPPING:
            assert self._stopped is not None
            await asyncio.shield(self._stopped)
            return
        assert self._server is not None
        self._state = ServerState.STOPPING
        self._stopped = asyncio.get_running_loop().create_future()
        try:
            # Close the listening sockets.
            self._server.close()
            logging.getLogger(__name__).info("Server no longer listening")

            # Let each connection finish its current exchange, then wait for all of
            # them.
            self._connection_handler.request_shutdown()
            await self._connection_handler.wait_finished(self._config.shutdown_timeout)
            await self._server.wait_closed()
            logging.getLogger(__name__).info("All client connections closed")
        finally:
            self._server = None
            self._state = ServerState.STOPPED
            self._stopped.set_result(None)

    async def serve_until_signalled(self: Self) -> str | None:
        """
        Wait until SIGINT or SIGTERM is received.

        On platforms without signal support in the event loop, this waits forever.

        :return: The name of the signal received.
        """
        loop = asyncio.get_running_loop()
        term_sig: asyncio.Future[str] = loop.create_future()

        def signal_handler(signal_name: str) -> None:
            """Handle a signal."""
            # InvalidStateError is raised if the future has already completed, which it
            # might have if two signals are received.
            with contextlib.suppress(asyncio.InvalidStateError):
                term_sig.set_result(signal_name)

        installed = []
        for signal_name in ("SIGINT", "SIGTERM"):
            if hasattr(signal, signal_name):
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(
                        getattr(signal, signal_name),
                        functools.partial(signal_handler, signal_name),
                    )
                    installed.append(getattr(signal, signal_name))
        try:
            return await term_sig
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)


async def _main_coroutine(config: ServerConfig) -> None:
    """
    Run a server in an asyncio event loop until a termination signal.

    :param config: The server configuration.
    """
    async with Server(config) as server:
        logging.getLogger(__name__).info("Server up and running")
        signal_name = await server.serve_until_signalled()
        logging.getLogger(__name__).info("Caught termination signal %s", signal_name)


def run(config: ServerConfig) -> None:
    """
    Run a server until SIGINT or SIGTERM is received.

    :param config: The server configuration.
    """
    asyncio.run(_main_coroutine(config))
