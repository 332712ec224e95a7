from __future__ import annotations

import argparse
import os

import uvicorn

from flightschool.config import load_settings
from flightschool.logging_config import configure_logging


def parse_args() -> argparse.Namespace:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Run the Flight School job service.")
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "127.0.0.1"),
        help="Host to bind (default: %(default)s or env HOST)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8000")),
        help="Port to bind (default: %(default)s or env PORT)",
    )
    parser.add_argument(
        "--app",
        default="flightschool.main:create_app",
        help="ASGI app factory (default: %(default)s)",
    )
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable auto-reload (default: False). Use --reload to enable",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=("critical", "error", "warning", "info", "debug", "trace"),
        help="Log level (default: %(default)s or env FLIGHT_SCHOOL_LOG_LEVEL)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(args.log_level if args.log_level != "trace" else "debug", load_settings().log_json)
    uvicorn.run(
        app=args.app,
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        log_config=None,
    )


if __name__ == "__main__":
    main()
