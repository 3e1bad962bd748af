"""
Phasekeeper - Utilities

Crash-safe file helpers, periodic tasks and logging setup.
"""

from phasekeeper.utils.fileio import (
    TRANSIENT_ERRNOS,
    append_line,
    atomic_write_text,
    is_transient_os_error,
)
from phasekeeper.utils.logging import configure_logging
from phasekeeper.utils.timer import PeriodicTask

__all__ = [
    "TRANSIENT_ERRNOS",
    "append_line",
    "atomic_write_text",
    "is_transient_os_error",
    "configure_logging",
    "PeriodicTask",
]
