"""
Main entry point: boot the lifecycle and serve the status API.
"""

import argparse
import asyncio
import sys
from contextlib import suppress

import uvicorn

from . import __version__
from .config.container import Container, setup_container
from .config.settings import get_settings
from .observability.logging import get_logger, set_structured_logger, setup_logging

logger = get_logger(__name__)


async def run_headless(container: Container) -> None:
    """Run without HTTP until SIGINT/SIGTERM completes shutdown."""
    lifecycle = container.lifecycle
    lifecycle.initialize()
    if container.settings.lifecycle.install_signal_handlers:
        lifecycle.install_signal_handlers()
    logger.info("Server running headless", state=lifecycle.state.value)
    sweeper = asyncio.create_task(container.run_session_sweeper())
    try:
        await lifecycle.wait_closed()
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


def main(argv=None):
    """Main application entry point with server startup."""
    parser = argparse.ArgumentParser(description="MCP Scope server")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--log-level", default=None, help="Minimum log severity")
    parser.add_argument(
        "--log-format", choices=("json", "console"), default=None, help="Log line format"
    )
    parser.add_argument("--headless", action="store_true", help="Run without the status API")
    parser.add_argument("--version", action="store_true", help="Show version")

    if argv is None:
        argv = []
    args = parser.parse_args(argv)

    if args.version:
        print(f"mcpscope v{__version__}")
        return

    settings = get_settings()
    container = setup_container(settings)
    set_structured_logger(container.logger)
    setup_logging(level=args.log_level, fmt=args.log_format)

    logger.info(
        "MCP Scope initialized",
        environment=settings.environment,
        protocolVersion=settings.lifecycle.protocol_version,
        headless=args.headless,
    )

    if args.headless:
        asyncio.run(run_headless(container))
        return

    from .api.status import create_app

    uvicorn.run(
        create_app(container),
        host=args.host or settings.api.host,
        port=args.port or settings.api.port,
        log_config=None,
    )


def cli_main():
    """CLI entry point."""
    try:
        main(sys.argv[1:])
        sys.exit(0)
    except KeyboardInterrupt:
        print("\nMCP Scope shutdown")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
