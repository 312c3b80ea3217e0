"""
LogMill CLI Flags

Parses the daemon's command line into a DaemonConfig. Environment
variables (LOGMILL_PORT, LOGMILL_PUSH_URL, LOGMILL_PUSH_INTERVAL) only
supply defaults; explicit flags win.

Examples:
  logmill --progs /etc/logmill --logs /var/log/syslog,/var/log/nginx/*.log
  logmill --progs ./progs --logs app.log --one-shot > metrics.json
  logmill --progs ./progs --logs unused --compile-only
"""

from __future__ import annotations

import argparse

from .config import (
    DEFAULT_HOST,
    DEFAULT_POLL_INTERVAL_SECS,
    DEFAULT_PORT,
    DEFAULT_PUSH_INTERVAL_SECS,
    DEFAULT_PUSH_URL,
    DaemonConfig,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="logmill",
        description="LogMill - extract metrics from application logs",
    )

    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="HTTP port to listen on.")
    parser.add_argument("--host", default=DEFAULT_HOST, help="Address to bind the HTTP server to.")
    parser.add_argument("--logs", default="", help="Comma-separated list of files to monitor.")
    parser.add_argument("--progs", default="", help="Directory containing programs.")

    parser.add_argument(
        "--one-shot",
        action="store_true",
        help="Run once on the log files, dump json, and exit.",
    )
    parser.add_argument(
        "--compile-only",
        action="store_true",
        help="Compile programs only, do not start the virtual machines.",
    )
    parser.add_argument(
        "--dump-bytecode",
        action="store_true",
        help="Dump bytecode of programs and exit.",
    )
    parser.add_argument(
        "--syslog-use-current-year",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Patch yearless timestamps with the present year.",
    )

    parser.add_argument(
        "--push-url",
        default=DEFAULT_PUSH_URL,
        help="POST a JSON snapshot of the metrics to this URL.",
    )
    parser.add_argument(
        "--push-interval",
        type=float,
        default=DEFAULT_PUSH_INTERVAL_SECS,
        help="Seconds between metric pushes (with --push-url).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL_SECS,
        help="Seconds between checks of tailed files for new data.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Daemon log verbosity.",
    )
    return parser


def parse_config(argv: list[str] | None = None) -> tuple[DaemonConfig, str]:
    """Parse `argv` and return the daemon config and the log level name."""
    args = build_parser().parse_args(argv)
    config = DaemonConfig(
        logs=args.logs,
        progs=args.progs,
        host=args.host,
        port=args.port,
        one_shot=args.one_shot,
        compile_only=args.compile_only,
        dump_bytecode=args.dump_bytecode,
        syslog_use_current_year=args.syslog_use_current_year,
        push_url=args.push_url,
        push_interval=args.push_interval,
        poll_interval=args.poll_interval,
    )
    return config, args.log_level
