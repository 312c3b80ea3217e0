"""
Shared pytest fixtures for the LogMill tests.

Provides:
- A program directory with one counting program
- Log file helpers
"""

from __future__ import annotations

from pathlib import Path

import pytest

LINE_COUNT_PROGRAM = r"""
# Count every line, and errors by status code.
counter lines_total /^/
counter errors_total by code /status=(?P<code>5\d\d)/
"""


@pytest.fixture
def progs_dir(tmp_path: Path) -> Path:
    """A program directory holding `lines.mtail`."""
    progs = tmp_path / "progs"
    progs.mkdir()
    (progs / "lines.mtail").write_text(LINE_COUNT_PROGRAM)
    return progs


@pytest.fixture
def write_log(tmp_path: Path):
    """Write a log file with the given lines and return its path."""

    def _write(name: str, lines: list[str]) -> Path:
        path = tmp_path / name
        path.write_text("".join(f"{line}\n" for line in lines))
        return path

    return _write
