"""
Crash-safe file helpers.

Whole-file writes go through a temporary file in the same directory that is
flushed, fsynced, optionally verified and then renamed over the target, so
readers only ever see the old or the new content. Transient OS errors
(EAGAIN, EBUSY, ETIMEDOUT) are retried with tenacity.
"""

import errno
import logging
import os
from collections.abc import Callable
from pathlib import Path

from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRNOS = frozenset({errno.EAGAIN, errno.EBUSY, errno.ETIMEDOUT, errno.EINTR})


def is_transient_os_error(exc: BaseException) -> bool:
    """Whether an exception is an OSError worth retrying."""
    return isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS


transient_io_retry = retry(
    retry=retry_if_exception(is_transient_os_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=1),
    reraise=True,
)


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove temporary file {path}: {e}")


@transient_io_retry
def atomic_write_text(
    path: Path,
    content: str,
    verify: Callable[[Path], None] | None = None,
) -> None:
    """Atomically replace a file's content.

    Args:
        path: Target file path
        content: Text to write
        verify: Optional check run against the temporary file before the
            rename; raising aborts the write

    Raises:
        Exception: Whatever the write, verify or rename raised. The target
            is untouched and the temporary file removed.
    """
    tmp_path = path.with_suffix(path.suffix + ".tmp")

    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        if verify is not None:
            verify(tmp_path)

        os.replace(tmp_path, path)

    except Exception as e:
        _remove_quietly(tmp_path)
        logger.error(f"Failed to write {path}: {e}")
        raise


@transient_io_retry
def append_line(path: Path, line: str) -> None:
    """Append one line to a log file and fsync it.

    Args:
        path: Log file path
        line: Line content without trailing newline
    """
    with open(path, "a", encoding="utf-8") as f:
        f.write(line.rstrip("\n") + "\n")
        f.flush()
        os.fsync(f.fileno())
