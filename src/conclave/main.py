"""
Main entry point for the Conclave run engine server.
"""

import argparse
import os
import sys

import uvicorn

from . import __version__
from .config.settings import get_settings
from .observability.logging import get_logger, setup_logging
from .observability.tracing import setup_tracing

logger = get_logger(__name__)


def main(argv=None):
    """Start the HTTP control surface."""
    parser = argparse.ArgumentParser(description="Conclave pipeline run engine")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--directory", default=None, help="Directory JSON file to load")
    parser.add_argument("--version", action="store_true", help="Show version")

    # Empty list keeps pytest's own arguments out of the parser
    if argv is None:
        argv = []
    args = parser.parse_args(argv)

    if args.version:
        print(f"Conclave v{__version__}")
        return

    # Exported so reloaded workers see it too
    if args.directory:
        os.environ["CONCLAVE_DIRECTORY_FILE"] = args.directory
        get_settings.cache_clear()
    settings = get_settings()

    setup_logging(settings.observability.log_level)

    tracing_manager = None
    if settings.observability.enable_tracing:
        try:
            tracing_manager = setup_tracing(
                service_name=settings.observability.service_name,
                service_version=settings.observability.service_version,
                otlp_endpoint=settings.observability.otlp_endpoint,
            )
            logger.info("Tracing initialized", endpoint=settings.observability.otlp_endpoint)
        except Exception as e:
            logger.warning(f"Failed to initialize tracing: {e}")

    logger.info(
        "Conclave initialized",
        environment=settings.environment,
        tracing_enabled=settings.observability.enable_tracing,
        directory=str(settings.directory_file) if settings.directory_file else None,
    )

    try:
        uvicorn.run(
            "conclave.api.server:app",
            host=args.host or settings.api.host,
            port=args.port or settings.api.port,
            reload=args.reload or settings.api.reload,
        )
    finally:
        if tracing_manager:
            try:
                tracing_manager.shutdown()
                logger.info("Tracing shutdown complete")
            except Exception as e:
                logger.warning(f"Error during tracing shutdown: {e}")


def cli_main():
    """CLI entry point."""
    try:
        main(sys.argv[1:])
        sys.exit(0)
    except KeyboardInterrupt:
        print("\nConclave shutdown")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        print(f"Startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
