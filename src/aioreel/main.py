"""The application entry point."""

import argparse
import importlib
import json
import logging
import logging.config
import pathlib
import sys

from . import asyncio
from .config import DEFAULT_HOST, DEFAULT_PORT, ServerConfig
from .tcp import TCPAddress
from .types import Handler, HandlerLike


def load_handler(name: str) -> HandlerLike:
    """
    Import a handler by name.

    A Handler subclass is instantiated with no arguments; anything else must be a
    Handler instance or a plain handler callable.

    :param name: The dotted.module.name:attribute.path of the handler.
    :return: The handler.
    """
    app_parts = name.split(":")
    if len(app_parts) != 2 or not all(app_parts):  # noqa: PLR2004
        msg = f"Handler {name!r} must be module name, colon, and callable name"
        raise ValueError(msg)
    obj = importlib.import_module(app_parts[0])
    for part in app_parts[1].split("."):
        obj = getattr(obj, part)
    if isinstance(obj, type) and issubclass(obj, Handler):
        return obj()
    if not isinstance(obj, Handler) and not callable(obj):
        msg = f"{name} is neither a Handler nor callable"
        raise TypeError(msg)
    return obj


def _parse_mount(value: str) -> tuple[str, str]:
    """
    Split a --mount argument.

    :param value: The PREFIX=module:callable argument.
    :return: The prefix and the handler name.
    """
    prefix, sep, name = value.partition("=")
    if not sep or not prefix.startswith("/"):
        msg = f"Mount {value!r} must be /PREFIX=module:callable"
        raise argparse.ArgumentTypeError(msg)
    return prefix, name


def main() -> None:
    """Run the application."""
    try:
        # Parse and check command-line parameters.
        parser = argparse.ArgumentParser(
            description="Run an HTTP handler under asyncio."
        )
        parser.add_argument(
            "--logging",
            "-l",
            type=pathlib.Path,
            help="the JSON file containing a logging configuration dictionary per "
            "logging.config.dictConfig (default: none)",
        )
        parser.add_argument(
            "--tcp",
            "-t",
            default=TCPAddress(f"{DEFAULT_HOST}:{DEFAULT_PORT}"),
            type=TCPAddress,
            help=f"the TCP address/port to listen on (default: {DEFAULT_HOST}:"
            f"{DEFAULT_PORT})",
            metavar="IPv4ADDR:PORT | [IPv6ADDR]:PORT | HOSTNAME:PORT",
        )
        parser.add_argument(
            "--mount",
            "-m",
            action="append",
            default=[],
            type=_parse_mount,
            help="mount a handler at a path prefix; may be repeated",
            metavar="/PREFIX=MODULE:CALLABLE",
        )
        parser.add_argument(
            "--shutdown-timeout",
            type=float,
            help="seconds to let in-flight requests finish on shutdown before "
            "cancelling them (default: wait indefinitely)",
        )
        parser.add_argument(
            "handler",
            help="the dotted.module.name:callable of the default handler",
        )
        args = parser.parse_args()

        # Set up logging.
        if args.logging is not None:
            with args.logging.open("rb") as logging_config_file:
                cfg = json.load(logging_config_file)
            logging.config.dictConfig(cfg)
        else:
            logging.basicConfig(level=logging.INFO)

        # Import the handlers.
        sys.path.insert(0, ".")
        try:
            default_handler = load_handler(args.handler)
            mounts = [(prefix, load_handler(name)) for prefix, name in args.mount]
        except (ValueError, TypeError) as exc:
            parser.error(str(exc))

        # Run the server.
        config = ServerConfig(
            default_handler,
            host=args.tcp.host,
            port=args.tcp.port,
            mounts=mounts,
            shutdown_timeout=args.shutdown_timeout,
        )
        asyncio.run(config)
    finally:
        logging.shutdown()
