"""
LogMill Daemon Configuration

A single immutable DaemonConfig value carries every process-level setting
to the coordinator. It is built by the CLI (logmill.cli) and never read from
module-level globals.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .errors import ConfigError

# ── Defaults ──────────────────────────────────────────────────────────────────

DEFAULT_HOST: str = "0.0.0.0"
DEFAULT_PORT: int = int(os.environ.get("LOGMILL_PORT", "3903"))
DEFAULT_PUSH_URL: str = os.environ.get("LOGMILL_PUSH_URL", "")
DEFAULT_PUSH_INTERVAL_SECS: float = float(os.environ.get("LOGMILL_PUSH_INTERVAL", "60"))
DEFAULT_POLL_INTERVAL_SECS: float = 0.25


def split_paths(raw: str) -> list[str]:
    """Split a comma-separated path list, dropping empty entries."""
    return [path for path in raw.split(",") if path]


@dataclass(frozen=True)
class DaemonConfig:
    """Process-level settings consumed by the coordinator."""

    logs: str = ""
    progs: str = ""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    one_shot: bool = False
    compile_only: bool = False
    dump_bytecode: bool = False
    syslog_use_current_year: bool = True
    push_url: str = DEFAULT_PUSH_URL
    push_interval: float = DEFAULT_PUSH_INTERVAL_SECS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECS

    @property
    def pathnames(self) -> list[str]:
        return split_paths(self.logs)

    def validate(self) -> list[str]:
        """
        Check the required settings and return the input paths.

        Raises:
            ConfigError: the program directory or the input paths are missing.
        """
        if not self.progs:
            raise ConfigError("No program directory specified; use --progs")
        if not self.logs:
            raise ConfigError("No logs specified to tail; use --logs")
        pathnames = self.pathnames
        if not pathnames:
            raise ConfigError("No logs to tail.")
        return pathnames
