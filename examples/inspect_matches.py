"""inspect_matches.py — explore a batch without launching anything.

Run with:
    python examples/inspect_matches.py --config examples/batch_config.yaml

Works against any config; input folders that don't exist are skipped.
"""

import argparse

from batch_fusion.config import BatchConfig
from batch_fusion.matching import find_matching_studies, pairs_frame
from batch_fusion.records import discover_records, records_frame
from batch_fusion.supervisor import build_command, count_processes


def main(config_path: str) -> None:
    cfg = BatchConfig.from_yaml(config_path)

    # ------------------------------------------------------------------
    # 1. Discovered series
    # ------------------------------------------------------------------
    print("=" * 60)
    print("DISCOVERED SERIES")
    print("=" * 60)
    records = records_frame(discover_records(cfg))
    if records.empty:
        print("  No series found (input folders may not exist yet).")
    else:
        print(f"  {len(records)} series across "
              f"{records['study_uid'].nunique()} study(ies)\n")
        print(records[["study_uid", "modality", "scan_role", "orientation",
                       "is_volumetric", "slice_count"]].to_string(index=False))

    print()

    # ------------------------------------------------------------------
    # 2. Scan roles per modality
    # ------------------------------------------------------------------
    print("=" * 60)
    print("SCAN ROLES")
    print("=" * 60)
    if records.empty:
        print("  No series to classify.")
    else:
        summary = records.groupby(["modality", "scan_role"]).size().rename("count")
        print(summary.to_string())

    print()

    # ------------------------------------------------------------------
    # 3. Matched pairs and the commands they would run
    # ------------------------------------------------------------------
    print("=" * 60)
    print("MATCHED PAIRS")
    print("=" * 60)
    pairs = find_matching_studies(discover_records(cfg), cfg.rule_file)
    if not pairs:
        print("  Nothing to launch.")
    else:
        print(pairs_frame(pairs)[["study_uid", "primary_series_uid", "secondary_series_uid",
                                  "primary_slice_count", "secondary_slice_count"]]
              .to_string(index=False))
        print()
        for pair in pairs:
            print("  " + " ".join(build_command(pair, cfg)))

    print()

    # ------------------------------------------------------------------
    # 4. Jobs already running
    # ------------------------------------------------------------------
    print("=" * 60)
    print("RUNNING JOBS")
    print("=" * 60)
    name = cfg.get_process_name()
    print(f"  {count_processes(name)} '{name}' process(es) running, limit {cfg.max_jobs}")

    print()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect a fusion batch.")
    parser.add_argument("--config", required=True, help="Path to config YAML.")
    args = parser.parse_args()
    main(args.config)
