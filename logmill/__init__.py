"""
LogMill Package

LogMill tails log files, runs small line-matching programs over every line
and exports the resulting metrics over HTTP (JSON and Prometheus text) or to
a push sink. The `coordinator` module governs the process lifecycle; the
remaining modules are the collaborators it wires together.
"""

__version__ = "1.0.0"
__app_name__ = "LogMill"
__daemon_name__ = "logmill"
