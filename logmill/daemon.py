"""
LogMill Daemon Entry Point

Installed as the `logmill` console script and run by `python -m logmill`.

This module exists as a thin launcher that:
  1. Configures logging to stderr (stdout is reserved for the one-shot
     metrics dump).
  2. Parses the command line into a DaemonConfig.
  3. Runs the Coordinator and exits with its status.
  4. Catches and logs any fatal exception that escapes it.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from .cli import parse_config
from .coordinator import Coordinator
from .errors import LogMillError

log = logging.getLogger("logmill.daemon")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> None:
    """
    Parse flags and run the daemon.

    Exit codes:
      0 - Graceful shutdown or successful one-shot run
      N - Compile-only / dump-bytecode: number of programs that failed
      1 - Fatal error during startup, one-shot processing or serving
    """
    config, level = parse_config(argv)
    _setup_logging(level)

    try:
        code = asyncio.run(Coordinator(config).run())

    except KeyboardInterrupt:
        log.info("> DAEMON: Interrupted (SIGINT). Exiting.")
        sys.exit(0)

    except LogMillError as exc:
        log.critical(f"> DAEMON: {exc}", exc_info=True)
        sys.exit(1)

    except Exception as exc:
        log.critical(f"> DAEMON: Fatal error: {exc}", exc_info=True)
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()
