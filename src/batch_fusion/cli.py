from __future__ import annotations

import logging
from pathlib import Path

import click

from batch_fusion.config import BatchConfig
from batch_fusion.dispatch import dispatch_pairs
from batch_fusion.matching import find_matching_studies, pairs_frame, save_pairs
from batch_fusion.progress import get_error_log, get_progress_log
from batch_fusion.records import discover_records, records_frame
from batch_fusion.supervisor import ProcessSupervisor

_INPUT_DIRS = click.argument(
    "input_dirs",
    nargs=-1,
    type=click.Path(file_okay=False, path_type=Path),
)


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    metavar="PATH",
    help="Path to YAML config file. Uses built-in defaults if omitted.",
)
@click.option("-w", "--workflow", default=None, help="Workflow the fusion job runs. Overrides config file.")
@click.option(
    "-e",
    "--max-jobs",
    "max_jobs",
    default=None,
    type=click.IntRange(min=1),
    metavar="N",
    help="Maximum number of fusion jobs running at once. Overrides config file.",
)
@click.option(
    "-p",
    "--executable",
    default=None,
    metavar="PATH",
    help="Path to the fusion executable. Overrides config file.",
)
@click.option(
    "-c",
    "--conditions",
    "rule_file",
    default=None,
    metavar="XML",
    help="XML rule file used to pair series. Overrides config file.",
)
@click.option(
    "-l",
    "--progress-log",
    "progress_log",
    default=None,
    metavar="PATH",
    help="Progress log (one CSV line per pair). Overrides config file.",
)
@click.option("--error-log", "error_log", default=None, metavar="PATH", help="Error log file. Overrides config file.")
@click.option(
    "-r",
    "--output-dir",
    "output_dir",
    default=None,
    metavar="DIR",
    help="Output directory passed to the fusion job. Overrides config file.",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: str | None,
    workflow: str | None,
    max_jobs: int | None,
    executable: str | None,
    rule_file: str | None,
    progress_log: str | None,
    error_log: str | None,
    output_dir: str | None,
    verbose: bool,
) -> None:
    """batch-fusion: pair PET/CT series and run fusion jobs in parallel."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    config = BatchConfig.from_yaml(config_path) if config_path else BatchConfig()
    if workflow is not None:
        config.workflow = workflow
    if max_jobs is not None:
        config.max_jobs = max_jobs
    if executable is not None:
        config.executable = Path(executable)
    if rule_file is not None:
        config.rule_file = Path(rule_file)
    if progress_log is not None:
        config.progress_log = Path(progress_log)
    if error_log is not None:
        config.error_log = Path(error_log)
    if output_dir is not None:
        config.output_dir = Path(output_dir)
    ctx.obj["config"] = config


def _config_with_inputs(ctx: click.Context, input_dirs: tuple[Path, ...]) -> BatchConfig:
    """Return the context config, with *input_dirs* replacing the configured folders."""
    config: BatchConfig = ctx.obj["config"]
    if input_dirs:
        config.input_dirs = list(input_dirs)
    return config


@main.command()
@_INPUT_DIRS
@click.option("--dry-run", is_flag=True, help="Print what would be launched without launching.")
@click.pass_context
def run(ctx: click.Context, input_dirs: tuple[Path, ...], dry_run: bool) -> None:
    """Discover series, pair them, and launch fusion jobs."""
    config = _config_with_inputs(ctx, input_dirs)

    click.echo("Discovering series…")
    records = discover_records(config)
    click.echo(f"  Found {len(records)} series.")

    pairs = find_matching_studies(records, config.rule_file)
    click.echo(f"  {len(pairs)} matched pair(s).")

    if not pairs:
        click.echo("Nothing to process.")
        return

    supervisor = ProcessSupervisor(config, dry_run=dry_run)
    result = dispatch_pairs(
        pairs,
        config.max_jobs,
        supervisor.launch,
        supervisor.count_running,
        progress=None if dry_run else get_progress_log(config),
        error_log=get_error_log(config),
        poll_interval=config.poll_interval,
    )

    if not result.ok:
        click.echo(f"Batch aborted: {result.error}", err=True)
        ctx.exit(1)

    prefix = "[DRY RUN] Would launch" if dry_run else "Launched"
    click.echo(f"{prefix} {len(result.launched)} job(s); skipped {len(result.skipped)} pair(s).")


@main.command()
@_INPUT_DIRS
@click.pass_context
def records(ctx: click.Context, input_dirs: tuple[Path, ...]) -> None:
    """Show the series records found in the input folders."""
    config = _config_with_inputs(ctx, input_dirs)
    found = discover_records(config)

    if not found:
        click.echo("No series found.")
        return

    columns = ["patient_id", "study_uid", "series_uid", "modality", "scan_role", "orientation", "is_volumetric"]
    click.echo(records_frame(found)[columns].to_string(index=False))


@main.command()
@_INPUT_DIRS
@click.option("--output", "output", default=None, metavar="CSV", help="Also write the pairs to this CSV file.")
@click.pass_context
def matches(ctx: click.Context, input_dirs: tuple[Path, ...], output: str | None) -> None:
    """Show the primary/secondary pairs without launching anything."""
    config = _config_with_inputs(ctx, input_dirs)
    pairs = find_matching_studies(discover_records(config), config.rule_file)

    if not pairs:
        click.echo("No matching pairs.")
        return

    columns = ["patient_id", "study_uid", "primary_series_uid", "secondary_series_uid"]
    click.echo(pairs_frame(pairs)[columns].to_string(index=False))

    if output is not None:
        save_pairs(pairs, output)
        click.echo(f"Saved {len(pairs)} pair(s) to {output}.")
