"""supervisor.py — launch fusion jobs and count the running ones.

The dispatcher only needs two capabilities: start a job for a pair, and tell
how many jobs are running.  :class:`ProcessSupervisor` implements both on
top of the OS: jobs are detached ``subprocess.Popen`` children, and the
running count is a scan of the process table for the job's executable name.

The count is approximate by nature: the process table can lag behind a
launch, and unrelated instances of the same executable are counted too.

Typical usage::

    from batch_fusion.supervisor import ProcessSupervisor

    supervisor = ProcessSupervisor(config)
    supervisor.launch(pair)
    supervisor.count_running()
"""
from __future__ import annotations

__all__ = [
    "DispatchJob",
    "LaunchFault",
    "ProcessSupervisor",
    "build_command",
    "count_processes",
]

import logging
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING

import psutil

from batch_fusion.config import BatchConfig

if TYPE_CHECKING:
    from batch_fusion.matching import StudyPair

logger = logging.getLogger(__name__)


class LaunchFault(RuntimeError):
    """The external job could not be started."""


@dataclass
class DispatchJob:
    """A launched job: its process handle and the pair it processes."""

    pair: StudyPair
    process: subprocess.Popen


def build_command(pair: StudyPair, config: BatchConfig) -> list[str]:
    """Return the command line that runs the fusion job for *pair*.

    ``<executable> <primary folder> <secondary folder> [-w <workflow>] [-r <output dir>]``
    """
    cmd = [str(config.executable), str(pair.primary_files_folder), str(pair.secondary_files_folder)]
    if config.workflow:
        cmd += ["-w", config.workflow]
    if config.output_dir is not None:
        cmd += ["-r", str(config.output_dir)]
    return cmd


def count_processes(name: str) -> int:
    """Return how many live processes in the OS process table are named *name*.

    Names are compared case-insensitively and a trailing ``.exe`` is ignored
    on both sides.  Zombie processes and processes that vanish or deny
    access during the scan are not counted.
    """
    target = _normalize_name(name)
    count = 0
    for proc in psutil.process_iter(["name", "status"]):
        info = proc.info
        if info.get("status") == psutil.STATUS_ZOMBIE:
            continue
        if _normalize_name(info.get("name") or "") == target:
            count += 1
    return count


class ProcessSupervisor:
    """Launches fusion jobs and probes how many are running.

    Parameters
    ----------
    config:
        Batch configuration supplying the executable, workflow, output
        directory and the process name to count.
    dry_run:
        When *True*, :meth:`launch` only logs the command and
        :meth:`count_running` always reports 0.
    """

    def __init__(self, config: BatchConfig, dry_run: bool = False) -> None:
        self.config = config
        self.dry_run = dry_run
        self.process_name = config.get_process_name()
        self._jobs: list[DispatchJob] = []

    def launch(self, pair: StudyPair) -> subprocess.Popen | None:
        """Start the fusion job for *pair* without waiting for it.

        Returns
        -------
        subprocess.Popen or None
            The process handle, or *None* for dry runs.

        Raises
        ------
        LaunchFault
            If the executable cannot be started.
        """
        cmd = build_command(pair, self.config)
        if self.dry_run:
            logger.info("[DRY RUN] Would launch: %s", " ".join(cmd))
            print(f"[DRY RUN] Would launch: {' '.join(cmd)}")
            return None

        logger.info("Launching: %s", " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise LaunchFault(f"Failed to launch {cmd[0]!r}: {exc}") from exc

        self._jobs.append(DispatchJob(pair=pair, process=process))
        return process

    def count_running(self) -> int:
        """Return the number of running fusion processes.

        Exited children launched by this supervisor are reaped first so they
        do not linger in the process table as zombies.
        """
        self._reap()
        if self.dry_run:
            return 0
        return count_processes(self.process_name)

    @property
    def jobs(self) -> list[DispatchJob]:
        """Jobs launched by this supervisor that have not been seen to exit."""
        return list(self._jobs)

    def _reap(self) -> None:
        """Drop jobs whose process has exited."""
        still_running = []
        for job in self._jobs:
            if job.process.poll() is None:
                still_running.append(job)
            else:
                logger.debug(
                    "Job for %s/%s exited with code %s",
                    job.pair.primary_series_uid,
                    job.pair.secondary_series_uid,
                    job.process.returncode,
                )
        self._jobs = still_running


def _normalize_name(name: str) -> str:
    name = name.strip().lower()
    if name.endswith(".exe"):
        name = name[: -len(".exe")]
    return name
