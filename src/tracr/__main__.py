# Main Entry Point - API Server
#
# `python -m tracr` (or the `tracr-api` console script) starts the
# FastAPI backend under uvicorn. Settings come from TRACR_* environment
# variables / .env; command-line flags override host and port.

import sys
import argparse

from . import __version__


def main():
    """
    Main entry point for the Tracr API server.
    """
    parser = argparse.ArgumentParser(
        description="Tracr - device fleet registry and command bus API server",
        epilog="Configuration is read from TRACR_* environment variables (.env supported)",
    )

    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind (default: TRACR_HOST or 0.0.0.0)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: TRACR_PORT or 8443)"
    )

    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file to load before reading settings"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Tracr API v{__version__}"
    )

    args = parser.parse_args()

    from .core.config import Settings, set_settings
    from .core.logging_config import configure_logging

    try:
        settings = Settings.from_env(args.env_file)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    set_settings(settings)
    configure_logging(settings.log_level)

    from .api.main import start_api_server

    try:
        start_api_server(
            host=args.host or settings.host,
            port=args.port or settings.port,
        )
    except KeyboardInterrupt:
        print("\n\nShutting down...")


if __name__ == "__main__":
    main()
