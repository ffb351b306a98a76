from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from subterm.exceptions import ConfigError


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the subterm sandbox gateway."
    )
    parser.add_argument("--host", help="Host to bind to (default: SUBTERM_HOST).")
    parser.add_argument(
        "--port", type=int, help="Port to listen on (default: SUBTERM_PORT)."
    )
    parser.add_argument(
        "--log-level", help="Logging level (default: SUBTERM_LOG_LEVEL)."
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        # Importing the server package builds the app, which reads settings too.
        from subterm.server.config import get_settings

        settings = get_settings()
    except ConfigError as exc:
        print(f"Invalid configuration: {exc.message}", file=sys.stderr)
        return 1

    log_level = (args.log_level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # uvicorn owns SIGINT/SIGTERM and runs the app's shutdown drain.
    uvicorn.run(
        "subterm.server:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
