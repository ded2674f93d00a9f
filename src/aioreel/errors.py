"""Exceptions raised while handling a connection."""


class FramingError(Exception):
    """
    Raised when a response cannot be framed onto the connection.

    This covers writing headers more than once, writing body data after the response
    has been completed (including a HEAD response, which completes right after its
    headers), and headers that cannot be represented on the wire. It is fatal to the
    connection on which it happens and to no other.
    """

    __slots__ = ()


class FrozenHeadersError(FramingError):
    """Raised if response headers are written after they have already been sent."""

    __slots__ = ()


class HandlerError(Exception):
    """
    Raised if a handler misbehaves.

    This is used when a handler returns something that is not a response, and to wrap
    exceptions raised while a lazy response body is being iterated.
    """

    __slots__ = ()
