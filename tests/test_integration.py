"""End-to-end integration tests: discover → match → dispatch → progress log.

DICOM headers are real files written with pydicom; only the process launch
(subprocess.Popen) and the process-table scan are faked so no fusion
executable is needed.
"""
from unittest.mock import MagicMock, patch

from batch_fusion.config import BatchConfig
from batch_fusion.dispatch import dispatch_pairs
from batch_fusion.matching import find_matching_studies
from batch_fusion.progress import get_error_log, get_progress_log
from batch_fusion.records import discover_records
from batch_fusion.supervisor import ProcessSupervisor
from conftest import series_attrs, write_series


# ---------------------------------------------------------------------------
# Shared setup helpers
# ---------------------------------------------------------------------------

class FakeProcessTable:
    """Stands in for the OS: every launched job stays alive for *lifetime* probes."""

    def __init__(self, lifetime=2):
        self.lifetime = lifetime
        self.processes = []
        self.commands = []
        self.peak = 0

    def popen(self, cmd, **kwargs):
        self.commands.append(cmd)
        process = MagicMock()
        process.ticks = self.lifetime
        process.poll.side_effect = lambda p=process: None if p.ticks > 0 else 0
        self.processes.append(process)
        return process

    def count(self, name):
        alive = [p for p in self.processes if p.ticks > 0]
        self.peak = max(self.peak, len(alive))
        for p in alive:
            p.ticks -= 1
        return len(alive)


def add_study(root, study, frame, n_pet=3, n_ct=4, ct_description="CT WB"):
    """Write a PET AC and a CT folder for one study; return both folders."""
    pet = write_series(
        root / study / "pet",
        n_files=n_pet,
        **series_attrs(f"{study}.10", "PT", frame=frame, study_uid=study, description="PET WB AC"),
    )
    ct = write_series(
        root / study / "ct",
        n_files=n_ct,
        **series_attrs(f"{study}.20", "CT", frame=frame, study_uid=study, description=ct_description),
    )
    return [pet, ct]


def run_batch(cfg, table):
    records = discover_records(cfg)
    pairs = find_matching_studies(records, cfg.rule_file)
    supervisor = ProcessSupervisor(cfg)
    with patch("batch_fusion.supervisor.subprocess.Popen", side_effect=table.popen), patch(
        "batch_fusion.supervisor.count_processes", side_effect=table.count
    ):
        result = dispatch_pairs(
            pairs,
            cfg.max_jobs,
            supervisor.launch,
            supervisor.count_running,
            progress=get_progress_log(cfg),
            error_log=get_error_log(cfg),
            poll_interval=cfg.poll_interval,
            sleep=lambda _: None,
        )
    return pairs, result


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def test_three_studies_bounded_concurrency(tmp_path, cfg, rule_file):
    dirs = []
    for i, study in enumerate(["1.2.840.1", "1.2.840.2", "1.2.840.3"]):
        dirs += add_study(tmp_path / "input", study, frame=f"9.9.{i}")
    cfg.input_dirs = dirs
    cfg.rule_file = rule_file
    cfg.max_jobs = 2

    table = FakeProcessTable(lifetime=3)
    pairs, result = run_batch(cfg, table)

    assert result.ok
    assert len(pairs) == 3
    assert len(result.launched) == 3
    assert table.peak <= 2
    assert [cmd[1] for cmd in table.commands] == [str(d) for d in dirs[0::2]]

    lines = cfg.progress_log.read_text().splitlines()
    assert [line.split(", ")[1] for line in lines] == ["PROCESSED"] * 3
    assert [line.split(", ")[6] for line in lines] == ["1.2.840.1.10", "1.2.840.2.10", "1.2.840.3.10"]


def test_scout_ct_is_not_paired(tmp_path, cfg):
    cfg.input_dirs = add_study(tmp_path / "input", "1.2.840.1", frame="9.9.1", ct_description="Topogram Scout")

    table = FakeProcessTable()
    pairs, result = run_batch(cfg, table)

    assert pairs == []
    assert result.launched == []
    assert table.commands == []


def test_swapped_ct_series_are_corrected_end_to_end(tmp_path, cfg):
    study, frame = "1.2.840.7", "9.9.7"
    root = tmp_path / "input"
    pet_a = write_series(root / "pet_a", n_files=10, **series_attrs("1.2.840.7.11", "PT", frame=frame, study_uid=study))
    pet_b = write_series(root / "pet_b", n_files=4, **series_attrs("1.2.840.7.12", "PT", frame=frame, study_uid=study))
    ct_x = write_series(root / "ct_x", n_files=5, **series_attrs("1.2.840.7.21", "CT", frame=frame, study_uid=study))
    ct_y = write_series(root / "ct_y", n_files=11, **series_attrs("1.2.840.7.22", "CT", frame=frame, study_uid=study))
    cfg.input_dirs = [pet_a, pet_b, ct_x, ct_y]

    table = FakeProcessTable(lifetime=1)
    pairs, result = run_batch(cfg, table)

    assert result.ok
    assert [(p.primary_series_uid, p.secondary_series_uid) for p in pairs] == [
        ("1.2.840.7.11", "1.2.840.7.22"),
        ("1.2.840.7.12", "1.2.840.7.21"),
    ]
    assert table.commands[0][1:3] == [str(pet_a), str(ct_y)]


def test_launch_failure_stops_batch_and_writes_logs(tmp_path, cfg):
    dirs = []
    for i, study in enumerate(["1.2.840.1", "1.2.840.2"]):
        dirs += add_study(tmp_path / "input", study, frame=f"9.9.{i}")
    cfg.input_dirs = dirs

    records = discover_records(cfg)
    pairs = find_matching_studies(records)
    supervisor = ProcessSupervisor(cfg)
    with patch(
        "batch_fusion.supervisor.subprocess.Popen", side_effect=PermissionError("not executable")
    ), patch("batch_fusion.supervisor.count_processes", return_value=0):
        result = dispatch_pairs(
            pairs,
            cfg.max_jobs,
            supervisor.launch,
            supervisor.count_running,
            progress=get_progress_log(cfg),
            error_log=get_error_log(cfg),
            sleep=lambda _: None,
        )

    assert not result.ok
    assert result.failed_pair is pairs[0]
    lines = cfg.progress_log.read_text().splitlines()
    assert len(lines) == 1
    assert ", ERROR, " in lines[0]
    report = cfg.error_log.read_text()
    assert "Message: Failed to launch" in report
    assert "Possible Cause: PermissionError: not executable" in report


def test_records_from_config_yaml(tmp_path, petct_dirs):
    yaml_file = tmp_path / "config.yaml"
    yaml_file.write_text(
        "max_jobs: 2\n"
        "input_dirs:\n" + "".join(f"  - {d}\n" for d in petct_dirs)
    )
    cfg = BatchConfig.from_yaml(yaml_file)
    pairs = find_matching_studies(discover_records(cfg), cfg.rule_file)

    assert [(p.primary_series_uid, p.secondary_series_uid) for p in pairs] == [("1.2.3.10", "1.2.3.20")]
    assert pairs[0].primary_slice_count == 3
    assert pairs[0].secondary_slice_count == 5
