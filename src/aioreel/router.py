"""Dispatch of requests to handlers mounted at path prefixes."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Self

from .types import Handler, HandlerLike, Request, Response, as_handler


def _normalize_prefix(prefix: str) -> str:
    """
    Canonicalize a mount prefix.

    :param prefix: The prefix as registered.
    :return: The prefix without a trailing slash; the catch-all prefix is "".
    """
    if prefix and not prefix.startswith("/"):
        msg = f'Mount prefix "{prefix}" does not start with "/"'
        raise ValueError(msg)
    return prefix.rstrip("/")


def _matches(prefix: str, path: str) -> bool:
    """
    Check whether a mount prefix matches a path on a segment boundary.

    :param prefix: The normalized prefix.
    :param path: The request path.
    """
    return not prefix or path == prefix or path.startswith(prefix + "/")


class Router(Handler):
    """
    A handler that dispatches to other handlers by path prefix.

    Each request goes to the handler of the most specific mount whose prefix matches
    the request path on a segment boundary, so /path1 matches /path1 and /path1/x but
    not /path10. Among equally long prefixes, the one registered first wins. A request
    that matches no mount goes to the default handler.
    """

    __slots__ = {
        "_default": """The handler for requests that match no mount.""",
        "_mounts": """The (prefix, handler) pairs, most specific first.""",
    }

    _default: Handler
    _mounts: tuple[tuple[str, Handler], ...]

    def __init__(
        self: Self,
        mounts: Iterable[tuple[str, HandlerLike]],
        default: HandlerLike,
    ) -> None:
        """
        Construct a new Router.

        :param mounts: The (path prefix, handler) pairs, in registration order.
        :param default: The handler for requests that match no mount.
        """
        normalized = [
            (_normalize_prefix(prefix), as_handler(handler))
            for prefix, handler in mounts
        ]
        # sorted is stable, so registration order breaks ties.
        self._mounts = tuple(sorted(normalized, key=lambda i: len(i[0]), reverse=True))
        self._default = as_handler(default)

    @property
    def prefixes(self: Self) -> list[str]:
        """The mount prefixes, in the order they are tried."""
        return [prefix for prefix, _ in self._mounts]

    def resolve(self: Self, path: str) -> tuple[str, Handler]:
        """
        Find the mount that handles a path.

        :param path: The path, relative to this router.
        :return: The matched prefix ("" for the default handler) and its handler.
        """
        for prefix, handler in self._mounts:
            if _matches(prefix, path):
                return prefix, handler
        return "", self._default

    def dispatch(self: Self, path: str) -> Handler:
        """
        Find the handler for a path.

        :param path: The path, relative to this router.
        :return: The handler of the matching mount, or the default handler.
        """
        return self.resolve(path)[1]

    async def handle(self: Self, request: Request) -> Response:  # noqa: D102
        prefix, handler = self.resolve(request.path_info)
        logging.getLogger(__name__).debug(
            'Routing %s to mount "%s" (%r)', request, prefix, handler
        )
        if prefix:
            request = request.mounted_at(prefix)
        return await handler.handle(request)
