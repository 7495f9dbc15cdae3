"""
ProxyBase MCP CLI: starts the stdio MCP server.

Usage:
    proxybase-mcp
    PROXYBASE_API_URL=http://localhost:8080 python -m proxybase
    python -m proxybase --log-level debug --max-workers 4

Protocol traffic uses stdout; all logging goes to stderr.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import BinaryIO, List, Optional

from proxybase.core.config import (
    ConfigError,
    ProxyBaseConfig,
    normalize_api_url,
    normalize_log_level,
)
from proxybase.mcp.handlers import Dispatcher
from proxybase.mcp.registry import build_registry
from proxybase.mcp.server import McpServer
from proxybase.sdk.client import ProxyBaseClient

logger = logging.getLogger("ProxyBase")

EXIT_CONFIG_ERROR = 2
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxybase-mcp",
        description="ProxyBase MCP server: proxy procurement tools over stdio JSON-RPC.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Environment:\n"
               "  PROXYBASE_API_URL      backend base URL (default https://api.proxybase.xyz)\n"
               "  PROXYBASE_LOG_LEVEL    debug|info|warning|error (default info)\n",
    )
    parser.add_argument(
        "--api-url",
        type=str,
        default=None,
        metavar="URL",
        help="Backend base URL (overrides PROXYBASE_API_URL).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log verbosity on stderr (overrides PROXYBASE_LOG_LEVEL).",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Maximum concurrently executing tool calls.",
    )
    parser.add_argument(
        "--call-timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Per-request deadline before a timeout error is returned.",
    )
    return parser


def load_config(args: argparse.Namespace) -> ProxyBaseConfig:
    """Environment first, then command-line overrides. Raises ConfigError."""
    config = ProxyBaseConfig.from_env()
    if args.api_url is not None:
        config.backend = config.backend.model_copy(update={"api_url": normalize_api_url(args.api_url)})
    if args.log_level is not None:
        config.log_level = normalize_log_level(args.log_level)
    if args.max_workers is not None:
        if args.max_workers <= 0:
            raise ConfigError("--max-workers must be positive")
        config.dispatch = config.dispatch.model_copy(update={
            "max_workers": args.max_workers,
            "queue_limit": max(args.max_workers, config.dispatch.queue_limit),
        })
    if args.call_timeout is not None:
        if args.call_timeout <= 0:
            raise ConfigError("--call-timeout must be positive")
        config.dispatch = config.dispatch.model_copy(update={"call_timeout_sec": args.call_timeout})
    return config


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    # urllib3 connection chatter is only useful when debugging
    if level != "debug":
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_server(
    config: ProxyBaseConfig,
    client: ProxyBaseClient,
    input_stream: Optional[BinaryIO] = None,
    output_stream: Optional[BinaryIO] = None,
) -> McpServer:
    dispatcher = Dispatcher(build_registry(client))
    return McpServer(
        dispatcher,
        input_stream=input_stream,
        output_stream=output_stream,
        max_workers=config.dispatch.max_workers,
        queue_limit=config.dispatch.queue_limit,
        call_timeout=config.dispatch.call_timeout_sec,
        shutdown_timeout=config.dispatch.shutdown_timeout_sec,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args)
    except ConfigError as exc:
        configure_logging("error")
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR

    configure_logging(config.log_level)
    logger.info("ProxyBase MCP Server starting (backend: %s)", config.backend.api_url)

    with ProxyBaseClient(
        base_url=config.backend.api_url,
        timeout=config.backend.timeout_sec,
        max_retries=config.backend.max_retries,
    ) as client:
        server = build_server(config, client)
        return server.serve()


if __name__ == "__main__":
    sys.exit(main())
