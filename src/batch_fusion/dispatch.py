"""dispatch.py — bounded-concurrency admission loop for fusion jobs.

Pairs are admitted strictly in list order.  Before each admission the number
of running jobs is probed; a pair is launched only while that number is below
the limit, otherwise the loop sleeps for one polling interval and probes
again.  Launches are fire-and-forget: the loop never waits on a job, it only
watches the aggregate count, and it ends once every pair has been admitted
and the count has dropped to zero.

The first fault inside the loop ends the batch.  It is recorded (``ERROR``
progress line, error-log report) and returned in the
:class:`DispatchResult` rather than raised.
"""
from __future__ import annotations

__all__ = ["DispatchResult", "dispatch_pairs"]

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Sequence

if TYPE_CHECKING:
    from batch_fusion.matching import StudyPair
    from batch_fusion.progress import ErrorLog, ProgressLog

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Outcome of one :func:`dispatch_pairs` run."""

    total: int
    launched: list[StudyPair] = field(default_factory=list)
    skipped: list[StudyPair] = field(default_factory=list)
    error: Exception | None = None
    failed_pair: StudyPair | None = None

    @property
    def ok(self) -> bool:
        """True when the run ended without a fault."""
        return self.error is None


def dispatch_pairs(
    pairs: Sequence[StudyPair],
    max_jobs: int,
    launch: Callable[[StudyPair], Any],
    count_running: Callable[[], int],
    *,
    progress: ProgressLog | None = None,
    error_log: ErrorLog | None = None,
    poll_interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> DispatchResult:
    """Launch one job per pair, keeping at most *max_jobs* running.

    Parameters
    ----------
    pairs:
        Pairs in admission order.
    max_jobs:
        Concurrency limit; a pair is admitted only while ``count_running()``
        is below it.
    launch:
        Starts the job for a pair and returns without waiting for it.
    count_running:
        Probe returning the number of jobs currently running.
    progress:
        Receives a ``PROCESSED``, ``SKIPPED`` or ``ERROR`` entry per pair.
    error_log:
        Receives the full report of a fault that ends the run.
    poll_interval:
        Seconds to sleep while waiting for capacity or for running jobs.
    sleep:
        Sleep function (injectable for tests).

    Returns
    -------
    DispatchResult
        Launched and skipped pairs; on a fault, the exception and the pair
        that was being admitted.

    Raises
    ------
    ValueError
        If *max_jobs* is below 1.
    """
    if max_jobs < 1:
        raise ValueError(f"max_jobs must be >= 1, got {max_jobs!r}")

    result = DispatchResult(total=len(pairs))
    cursor = 0
    try:
        while True:
            running = count_running()
            if cursor >= len(pairs) and running == 0:
                break

            if cursor < len(pairs) and running < max_jobs:
                pair = pairs[cursor]
                if pair.primary_series_uid and pair.secondary_series_uid:
                    logger.info(
                        "Processing %d/%d: primary %s with secondary %s",
                        cursor + 1,
                        len(pairs),
                        pair.primary_series_uid,
                        pair.secondary_series_uid,
                    )
                    launch(pair)
                    result.launched.append(pair)
                    _record(progress, pair, "PROCESSED")
                else:
                    logger.warning(
                        "Skipping %d/%d (study %s): missing series UID",
                        cursor + 1,
                        len(pairs),
                        pair.study_uid,
                    )
                    result.skipped.append(pair)
                    _record(progress, pair, "SKIPPED")
                cursor += 1
                continue

            sleep(poll_interval)
    except Exception as exc:
        failed_pair = pairs[cursor] if cursor < len(pairs) else None
        logger.exception("Batch aborted after %d/%d pair(s)", cursor, len(pairs))
        result.error = exc
        result.failed_pair = failed_pair
        if failed_pair is not None:
            _record(progress, failed_pair, "ERROR")
        if error_log is not None:
            error_log.log_exception(exc)
        return result

    logger.info(
        "Batch complete: %d launched, %d skipped", len(result.launched), len(result.skipped)
    )
    return result


def _record(progress: ProgressLog | None, pair: StudyPair, status: str) -> None:
    if progress is not None:
        progress.log(pair, status)
