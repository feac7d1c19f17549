"""progress.py — append-only progress and error logs for batch_fusion.

Every dispatch decision is appended to the progress log as one
comma-separated line::

    2025-03-01 14:02:11, PROCESSED, DOE^JANE, 12345, ACC1, 1.2.3, 1.2.3.4, 1.2.3.5

A fault that ends a batch is appended to the error log as a free-text block
(message, traceback, cause, memory snapshot, separator).

Both files are opened with a bounded retry because other processes (for
instance a previous batch still running) may hold them briefly.  When the
retry window is exhausted the entry is dropped with a warning; logging never
blocks a batch indefinitely.

Typical usage::

    from batch_fusion.progress import get_error_log, get_progress_log

    progress = get_progress_log(config)
    progress.log(pair, "PROCESSED")
"""
from __future__ import annotations

__all__ = [
    "ErrorLog",
    "ProgressLog",
    "PROGRESS_STATUSES",
    "SinkUnavailable",
    "format_error_report",
    "get_error_log",
    "get_progress_log",
]

import logging
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING

import psutil

from batch_fusion.config import BatchConfig

if TYPE_CHECKING:
    from batch_fusion.matching import StudyPair

logger = logging.getLogger(__name__)

#: Status values written verbatim; anything else is logged as UNKNOWN.
PROGRESS_STATUSES = frozenset({"PROCESSED", "SKIPPED", "ERROR"})

_SEPARATOR = "----------------------------"


class SinkUnavailable(OSError):
    """A log file could not be opened within the retry window."""


def _open_with_retry(path: Path, timeout: float, delay: float) -> IO[str]:
    """Open *path* for appending, retrying for up to *timeout* seconds.

    Raises
    ------
    SinkUnavailable
        If every attempt failed.
    """
    deadline = time.monotonic() + timeout
    while True:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return path.open("a", encoding="utf-8")
        except OSError as exc:
            if time.monotonic() + delay > deadline:
                raise SinkUnavailable(f"Cannot open log file {path}: {exc}") from exc
            time.sleep(delay)


class ProgressLog:
    """Appends one CSV line per dispatch decision.

    Parameters
    ----------
    log_file:
        Path of the progress log.  Parent directories are created on the
        first write.
    retry_timeout / retry_delay:
        Total time (seconds) spent retrying to open the file, and the pause
        between attempts.
    """

    def __init__(self, log_file: Path, retry_timeout: float = 5.0, retry_delay: float = 0.1) -> None:
        self.log_file = Path(log_file)
        self.retry_timeout = retry_timeout
        self.retry_delay = retry_delay

    def log(self, pair: StudyPair, status: str) -> None:
        """Append a ``timestamp, STATUS, patient..., series...`` line for *pair*.

        *status* is one of ``PROCESSED``, ``SKIPPED`` or ``ERROR``; any other
        value is written as ``UNKNOWN``.
        """
        status = status if status in PROGRESS_STATUSES else "UNKNOWN"
        line = ", ".join(
            [
                datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
                status,
                pair.patient_name,
                pair.patient_id,
                pair.accession_number,
                pair.study_uid,
                pair.primary_series_uid,
                pair.secondary_series_uid,
            ]
        )
        try:
            fh = _open_with_retry(self.log_file, self.retry_timeout, self.retry_delay)
        except SinkUnavailable as exc:
            logger.warning("Progress entry dropped: %s", exc)
            return
        with fh:
            fh.write(line + "\n")

        logger.debug("progress %s: %s/%s", status, pair.primary_series_uid, pair.secondary_series_uid)


class ErrorLog:
    """Appends a diagnostic block for each fault that ends a batch."""

    def __init__(self, log_file: Path, retry_timeout: float = 5.0, retry_delay: float = 0.1) -> None:
        self.log_file = Path(log_file)
        self.retry_timeout = retry_timeout
        self.retry_delay = retry_delay

    def log_exception(self, exc: BaseException) -> None:
        """Append the report for *exc*; dropped with a warning if the file is unavailable."""
        report = format_error_report(exc)
        try:
            fh = _open_with_retry(self.log_file, self.retry_timeout, self.retry_delay)
        except SinkUnavailable as sink_exc:
            logger.warning("Error report dropped: %s", sink_exc)
            return
        with fh:
            fh.write(report)


def format_error_report(exc: BaseException) -> str:
    """Return the error-log block for *exc*."""
    exc_type = type(exc)
    lines = [
        f"Error occurred at {datetime.now().strftime('%B-%d-%Y-%H%M%S')}",
        f"Message: {exc}",
        f"Identifier: {exc_type.__module__}.{exc_type.__qualname__}",
        "Full Report:",
        "".join(traceback.format_exception(exc_type, exc, exc.__traceback__)).rstrip(),
        "Stack Trace:",
    ]
    for frame in traceback.extract_tb(exc.__traceback__):
        lines.append(f"  In {frame.filename} (line {frame.lineno})")

    cause = exc.__cause__ or exc.__context__
    if cause is not None:
        lines.append(f"Possible Cause: {type(cause).__name__}: {cause}")

    lines.extend(_memory_lines())
    lines.append(_SEPARATOR)
    return "\n".join(lines) + "\n"


def _memory_lines() -> list[str]:
    """Memory snapshot of this process and the host, in MB."""
    try:
        mem = psutil.Process().memory_info()
        system = psutil.virtual_memory()
    except psutil.Error as exc:
        return [f"Memory Usage (MB): unavailable ({exc})"]
    return [
        "Memory Usage (MB):",
        f"  ResidentSetSize: {mem.rss / 1e6:.2f} MB",
        f"  VirtualMemorySize: {mem.vms / 1e6:.2f} MB",
        f"  SystemAvailable: {system.available / 1e6:.2f} MB",
    ]


def get_progress_log(config: BatchConfig) -> ProgressLog | None:
    """Return a :class:`ProgressLog` for *config*, or None when none is configured."""
    if config.progress_log is None:
        return None
    return ProgressLog(
        config.progress_log,
        retry_timeout=config.log_retry_timeout,
        retry_delay=config.log_retry_delay,
    )


def get_error_log(config: BatchConfig) -> ErrorLog:
    """Return an :class:`ErrorLog` for *config*.

    Uses ``config.error_log`` when set; otherwise defaults to
    ``batch_error_log.txt`` inside ``config.output_dir`` (or the current
    directory when no output directory is configured).
    """
    if config.error_log is not None:
        log_file = config.error_log
    else:
        log_file = (config.output_dir or Path.cwd()) / "batch_error_log.txt"
    return ErrorLog(
        log_file,
        retry_timeout=config.log_retry_timeout,
        retry_delay=config.log_retry_delay,
    )
