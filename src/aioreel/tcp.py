"""Handling of TCP listening addresses."""

from typing import Self


class TCPAddress:
    """A TCP endpoint address to listen on."""

    __slots__ = {
        "host": "The host part, which can be a hostname or address literal.",
        "port": "The port number.",
    }

    host: str
    port: int

    def __init__(self: Self, combined: str) -> None:
        """
        Parse a TCP listening address into host and port parts.

        :param combined: The combined string, HOST:PORT or [IPv6]:PORT.
        """
        # The host and port part are separated by the last colon.
        parts = combined.rsplit(":", 1)
        if len(parts) != 2:  # noqa: PLR2004
            msg = "Missing :PORT part"
            raise ValueError(msg)
        host, port = parts
        if "[" in port or "]" in port:
            # A colon is present, but not *after* the last bracket, as in an IPv6
            # literal without a port number.
            msg = "Missing :PORT part"
            raise ValueError(msg)
        if not host:
            msg = "Missing HOST part"
            raise ValueError(msg)
        if host[0] == "[" and host[-1] == "]":
            # The Python stdlib doesn’t want the brackets around an IPv6 literal.
            host = host[1:-1]
        self.host = host
        self.port = int(port)
        if not 0 <= self.port <= 0xFFFF:  # noqa: PLR2004
            msg = f"Port {self.port} out of range"
            raise ValueError(msg)

    def __repr__(self: Self) -> str:
        return f"TCPAddress({self.host!r}, {self.port})"
