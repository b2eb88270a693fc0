"""
Main CLI module for the record reconciler.

Configures logging and serves the HTTP API with uvicorn.
Example: python -m services.record_reconciler --port 8080 --log-format text
"""

import argparse
import sys

import uvicorn
from pydantic import ValidationError

from . import __version__
from .app import create_app
from .log_config import configure_logging, get_logger
from .settings import settings

logger = get_logger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Record Reconciler API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m services.record_reconciler
  python -m services.record_reconciler --port 8080 --log-level DEBUG
  python -m services.record_reconciler --version
        """
    )

    parser.add_argument(
        "--host",
        type=str,
        help="Interface to bind (defaults to HOST setting)"
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Port to listen on (defaults to PORT setting)"
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration"
    )

    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Override log format from configuration"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Record Reconciler {__version__}"
    )

    return parser


def main(argv=None) -> int:
    """
    Main entry point for the CLI application.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    configure_logging(args.log_level, args.log_format, config=config)

    host = args.host or config.host
    port = args.port or config.port

    logger.info(
        "Service starting",
        service_name=config.service_name,
        version=__version__,
        environment=config.environment,
        host=host,
        port=port
    )

    try:
        uvicorn.run(
            create_app(config),
            host=host,
            port=port,
            log_level=(args.log_level or config.log_level).lower(),
        )
    except KeyboardInterrupt:
        logger.warning("Service interrupted by user")
        return 1

    return 0


def cli_main() -> int:
    """Synchronous entry point for setuptools console scripts."""
    return main()


if __name__ == "__main__":
    sys.exit(main())
