#!/usr/bin/env python3
"""
Event Deduplication Engine
==========================

Command-line interface for detecting and merging duplicate event records.

Usage:
    python dedupe.py check events.json --target evt-42   # Check one record
    python dedupe.py run events.json --dry-run           # Preview clusters
    python dedupe.py run events.json -o merged.json      # Merge and write
    python dedupe.py report --ledger ledger.json         # Audit report
    python dedupe.py validate                            # Check configuration
    python dedupe.py export-config --format json         # Effective config
"""

import json
import sys
from pathlib import Path

import click
import yaml

from eventdedup import __version__
from eventdedup.batch import ProcessingMode
from eventdedup.config import ConfigurationError, DedupConfig, load_config
from eventdedup.engine import DeduplicationEngine
from eventdedup.loader import load_events, save_events
from eventdedup.logger import get_logger, setup_logging_from_config
from eventdedup.models.results import MergeStrategy

DEFAULT_OPERATOR = "cli"


def get_config(ctx) -> DedupConfig:
    """Load the configuration once per invocation and set up logging."""
    if "config" in ctx.obj:
        return ctx.obj["config"]

    config_path = ctx.obj["config_path"]
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        sys.exit(1)

    setup_logging_from_config(
        config.logging,
        config_path.parent if config_path else None,
        ctx.obj["log_level"],
        ctx.obj["log_file"],
    )
    ctx.obj["config"] = config
    return config


def read_events(path: Path) -> list:
    try:
        return load_events(path)
    except (FileNotFoundError, ValueError) as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


def load_ledger(engine: DeduplicationEngine, ledger_path: Path) -> None:
    """Import an existing ledger file into the engine."""
    if not ledger_path.exists():
        return
    fmt = "csv" if ledger_path.suffix.lower() == ".csv" else "json"
    result = engine.ledger.import_history(ledger_path.read_text(encoding="utf-8"), fmt)
    for error in result.errors:
        click.echo(click.style(f"  ! Ledger: {error}", fg="yellow"), err=True)


@click.group(invoke_without_command=True)
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to configuration file (defaults are used when omitted)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override log level from config",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Override log file path from config",
)
@click.version_option(version=__version__, prog_name="eventdedup")
@click.pass_context
def cli(ctx, config: Path | None, log_level: str | None, log_file: Path | None):
    """
    Event Deduplication Engine - Find and merge duplicate event records.

    Scores record pairs on title, venue, date, location and content, resolves
    conflicting fields by source reliability, and keeps an audit ledger of
    every merge.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["log_level"] = log_level
    ctx.obj["log_file"] = log_file

    # If no subcommand is provided, show help
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("events", type=click.Path(exists=True, path_type=Path))
@click.option("--target", "-t", required=True, help="Id of the record to check")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
@click.pass_context
def check(ctx, events: Path, target: str, output_format: str):
    """Check whether one record duplicates any other record in EVENTS."""
    engine = DeduplicationEngine(get_config(ctx))
    records = read_events(events)

    target_record = next((r for r in records if r.id == target), None)
    if target_record is None:
        message = f"Error: no record with id {target} in {events}"
        click.echo(click.style(message, fg="red"), err=True)
        sys.exit(1)

    result = engine.check_for_duplicates(target_record, records)

    if output_format == "json":
        click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return

    click.echo(f"\nMatches for {target}: {len(result.matches)}")
    click.echo("-" * 70)
    for match in result.matches:
        click.echo(
            f"  {match.event_id:<30} overall {match.score.overall:.3f}  "
            f"confidence {match.confidence:.0%}"
        )
        for reason in match.reasons:
            click.echo(f"      + {reason}")
        for risk in match.risk_factors:
            click.echo(click.style(f"      ! {risk}", fg="yellow"))
    click.echo("-" * 70)

    if result.is_duplicate:
        verdict = click.style(f"DUPLICATE of {result.primary_event_id}", fg="red", bold=True)
    else:
        verdict = click.style("NOT A DUPLICATE", fg="green", bold=True)
    click.echo(f"Verdict: {verdict}")
    for recommendation in result.recommendations:
        click.echo(f"  {recommendation}")


@cli.command()
@click.argument("events", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--mode",
    "-m",
    type=click.Choice([m.value for m in ProcessingMode]),
    default=ProcessingMode.BATCH.value,
    show_default=True,
    help="Processing mode",
)
@click.option(
    "--strategy",
    "-s",
    type=click.Choice([s.value for s in MergeStrategy]),
    default=MergeStrategy.ENHANCE_PRIMARY.value,
    show_default=True,
    help="Overall merge strategy",
)
@click.option(
    "--dry-run",
    "-n",
    is_flag=True,
    default=False,
    help="Plan merges without executing them or writing files",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the deduplicated records to this JSON or YAML file",
)
@click.option(
    "--ledger",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Merge ledger file, read before and written after the run",
)
@click.option("--operator", default=DEFAULT_OPERATOR, show_default=True, help="Recorded merger")
@click.pass_context
def run(
    ctx,
    events: Path,
    mode: str,
    strategy: str,
    dry_run: bool,
    output: Path | None,
    ledger: Path | None,
    operator: str,
):
    """
    Deduplicate the records in EVENTS.

    Clusters of duplicates are merged into their most complete record. Use
    --dry-run to list the planned merges without executing them.
    """
    engine = DeduplicationEngine(get_config(ctx))
    logger = get_logger(__name__)
    records = read_events(events)

    if ledger and not dry_run:
        load_ledger(engine, ledger)

    if dry_run:
        click.echo(click.style("DRY RUN MODE - No merges will be executed", fg="yellow"))

    logger.info(f"Deduplicating {len(records)} events from {events}")
    result = engine.process_events(
        records,
        ProcessingMode(mode),
        execute=not dry_run,
        operator=operator,
        strategy=MergeStrategy(strategy),
    )

    for decision in result.decisions:
        marker = click.style("review", fg="yellow") if decision.needs_manual_review else "ok"
        click.echo(
            f"  {decision.primary_id} <- {', '.join(decision.duplicate_ids)} "
            f"(confidence {decision.confidence:.0%}, {marker})"
        )

    if not dry_run and output:
        merged_away = {d for decision in result.decisions for d in decision.duplicate_ids}
        merged_by_id = {r.id: r for r in result.merged_records}
        canonical = [merged_by_id.get(r.id, r) for r in records if r.id not in merged_away]
        save_events(canonical, output)
        click.echo(f"\nWrote {len(canonical)} records to {output}")

    if ledger and not dry_run:
        ledger.parent.mkdir(parents=True, exist_ok=True)
        fmt = "csv" if ledger.suffix.lower() == ".csv" else "json"
        ledger.write_text(engine.ledger.export_history(fmt), encoding="utf-8")
        click.echo(f"Ledger written to {ledger}")

    # Summary
    click.echo("\n" + "=" * 50)
    click.echo(f"  Events processed:   {result.processed_count}")
    click.echo(f"  Clusters:           {len(result.clusters)}")
    click.echo(f"  Duplicates found:   {result.duplicates_found}")
    click.echo(f"  Merges completed:   {result.merges_completed}")
    click.echo(f"  Errors:             {len(result.errors)}")
    click.echo("=" * 50)

    for event_id, error in result.errors.items():
        click.echo(click.style(f"  ✗ {event_id}: {error}", fg="red"))

    if dry_run:
        click.echo(click.style("\nDRY RUN - No merges were executed", fg="yellow"))

    sys.exit(1 if result.errors else 0)


@cli.command()
@click.option(
    "--ledger",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Merge ledger file (JSON or CSV)",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json", "csv"]),
    default="text",
    show_default=True,
)
@click.pass_context
def report(ctx, ledger: Path, output_format: str):
    """Print the audit report of a merge ledger."""
    engine = DeduplicationEngine(get_config(ctx))
    load_ledger(engine, ledger)

    if output_format == "csv":
        click.echo(engine.export_data("csv"), nl=False)
        return

    audit = engine.generate_report()
    if output_format == "json":
        click.echo(json.dumps(audit, indent=2, ensure_ascii=False))
        return

    summary = audit["summary"]
    click.echo("\n" + "=" * 50)
    click.echo(click.style("MERGE AUDIT REPORT", bold=True))
    click.echo("=" * 50)
    click.echo(f"  Total merges:        {summary['total_merges']}")
    if summary["date_range"]:
        click.echo(
            f"  Period:              {summary['date_range']['start'][:10]} - "
            f"{summary['date_range']['end'][:10]}"
        )
    click.echo(f"  Average confidence:  {summary['avg_confidence']:.1%}")
    click.echo(f"  Quality improvement: {summary['avg_quality_improvement']:+.3f}")

    strategies = audit["analytics"]["strategy_effectiveness"]
    if strategies:
        click.echo("\nStrategies:")
        for name, stats in strategies.items():
            click.echo(
                f"  {name:<20} {stats['count']:>5} merges  "
                f"success {stats['success_rate']:.0%}"
            )

    if audit["quality_issues"]:
        click.echo("\nQuality issues:")
        for issue in audit["quality_issues"]:
            color = "red" if issue["severity"] == "high" else "yellow"
            click.echo(click.style(f"  ! [{issue['severity']}] {issue['description']}", fg=color))

    if audit["recommendations"]:
        click.echo("\nRecommendations:")
        for recommendation in audit["recommendations"]:
            click.echo(f"  - {recommendation}")
    click.echo("=" * 50)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the configuration file against the schema."""
    config_path = ctx.obj["config_path"]

    click.echo("\nValidating configuration...\n")
    if config_path is None:
        click.echo(click.style("  ! No config file given (using defaults)", fg="yellow"))
        click.echo(click.style("\nVALIDATION PASSED", fg="green", bold=True))
        return

    click.echo(f"  Checking {config_path.name}...")
    try:
        load_config(config_path)
    except ConfigurationError as e:
        click.echo(click.style(f"    ✗ {e}", fg="red"))
        click.echo(click.style("\nVALIDATION FAILED", fg="red", bold=True))
        sys.exit(1)

    click.echo(click.style(f"    ✓ {config_path.name} is valid", fg="green"))
    click.echo(click.style("\nVALIDATION PASSED", fg="green", bold=True))


@cli.command("export-config")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["yaml", "json"]),
    default="yaml",
    show_default=True,
)
@click.pass_context
def export_config(ctx, output_format: str):
    """Print the effective configuration, including built-in sources and rules."""
    engine = DeduplicationEngine(get_config(ctx))
    config = engine.get_configuration()

    if output_format == "json":
        click.echo(json.dumps(config, indent=2, ensure_ascii=False))
    else:
        click.echo(yaml.safe_dump(config, allow_unicode=True, sort_keys=False), nl=False)


if __name__ == "__main__":
    cli()
