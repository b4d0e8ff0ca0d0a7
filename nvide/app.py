"""Command-line entry point for the Neovim IDE companion."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import CompanionConfig, load_config
from .editor.api import Editor
from .editor.client import NvimClient
from .errors import ConfigError, EditorUnavailableError
from .server.http import IdeServer

logger = logging.getLogger(__name__)


def configure_logging(config: CompanionConfig, *, verbose: bool = False) -> None:
    level = "DEBUG" if verbose else config.log_level.upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    log_file = Path(config.log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    # aiohttp logs every request at INFO; ours does the same with timings.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def run(config: CompanionConfig) -> int:
    """Connect to Neovim and serve until a signal or editor disconnect."""
    client = NvimClient(config.nvim_address or "")
    try:
        await client.connect()
    except EditorUnavailableError as exc:
        logger.error("%s", exc)
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    def _on_disconnect() -> None:
        logger.error("Lost connection to Neovim, shutting down")
        stop.set()

    client.on_disconnect(_on_disconnect)

    server = IdeServer(config, Editor(client))
    try:
        await server.start()
        await stop.wait()
    finally:
        await server.stop()
        await client.close()
    return 0


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="nvide",
        description="Neovim IDE companion for terminal coding agents",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (default: any free port)",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--config", metavar="PATH", default=None,
        help="YAML config file",
    )
    parser.add_argument(
        "--nvim", metavar="ADDRESS", default=None,
        help="Neovim server address (default: $NVIM_LISTEN_ADDRESS or $NVIM)",
    )
    parser.add_argument(
        "--workspace", metavar="DIR", default=None,
        help="Workspace folder reported to the agent (default: cwd)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args()

    try:
        config = load_config(
            args.config,
            port=args.port,
            host=args.host,
            nvim_address=args.nvim,
            workspace=args.workspace,
        )
    except ConfigError as exc:
        print(f"nvide: {exc}", file=sys.stderr)
        sys.exit(2)

    if not config.nvim_address:
        print("NVIM_LISTEN_ADDRESS environment variable is not set.", file=sys.stderr)
        print("This application requires a running Neovim instance.", file=sys.stderr)
        sys.exit(1)

    configure_logging(config, verbose=args.verbose)
    logger.info(
        "Starting IDE companion nvim=%s workspace=%s config=%s log=%s",
        config.nvim_address,
        config.workspace,
        args.config or "<none>",
        config.log_file,
    )
    sys.exit(asyncio.run(run(config)))


if __name__ == "__main__":
    main()
