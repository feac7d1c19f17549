from __future__ import annotations

__all__ = ["BatchConfig"]

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class BatchConfig:
    """All batch settings in one place."""

    # External fusion job
    executable: Path = field(default_factory=lambda: Path("/opt/tridfusion/TriDFusion"))
    workflow: str | None = None  # passed to the job as ``-w <workflow>``
    output_dir: Path | None = None  # passed to the job as ``-r <output_dir>``

    # Admission control
    max_jobs: int = 1
    poll_interval: float = 1.0  # seconds between process-table probes
    # Name looked up in the OS process table; defaults to the executable's file name.
    process_name: str | None = None

    # Matching rules (XML). Built-in PET/CT rules are used when None.
    rule_file: Path | None = None

    # Inputs: one series per folder. When records_file is set the folders
    # are not scanned and the pre-extracted CSV table is used instead.
    input_dirs: list[Path] = field(default_factory=list)
    records_file: Path | None = None

    # Sinks
    progress_log: Path | None = None  # no progress lines are written when None
    error_log: Path | None = None  # defaults to <output_dir or cwd>/batch_error_log.txt
    log_retry_timeout: float = 5.0
    log_retry_delay: float = 0.1

    def __post_init__(self) -> None:
        """Validate numeric settings.

        Raises
        ------
        ValueError
            If ``max_jobs`` is below 1 or ``poll_interval`` is not positive.
        """
        if int(self.max_jobs) != self.max_jobs or self.max_jobs < 1:
            raise ValueError(f"max_jobs must be an integer >= 1, got {self.max_jobs!r}")
        self.max_jobs = int(self.max_jobs)
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval!r}")
        self.input_dirs = [Path(d) for d in self.input_dirs]

    def get_process_name(self) -> str:
        """Return the process name counted against ``max_jobs``."""
        if self.process_name:
            return self.process_name
        return Path(self.executable).name

    @classmethod
    def from_yaml(cls, path: str | Path) -> "BatchConfig":
        """Load config from a YAML file, overriding defaults.

        Raises
        ------
        ValueError
            If the file contains invalid YAML syntax or invalid values.
        FileNotFoundError
            If *path* does not exist.
        """
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

        path_fields = {
            "executable", "output_dir", "rule_file", "records_file",
            "progress_log", "error_log",
        }
        for key in path_fields:
            if data.get(key) is not None:
                data[key] = Path(data[key])

        if data.get("input_dirs") is not None:
            data["input_dirs"] = [Path(d) for d in data["input_dirs"]]

        return cls(**data)
