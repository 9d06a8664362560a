#!/usr/bin/env python3
"""ndvimon

Command line entry point for the NDVI anomaly pipeline.

Stages (each resumable from its checkpoint):
- baseline     -> long-term seasonal norm per location and day of year
- years        -> year-specific curves, one partition per year
- anomalies    -> standardized anomalies (year vs. baseline), per year
- derivatives  -> change-rate anomalies from retained posterior draws
- run          -> all of the above in order
- status       -> checkpoint progress, without running anything

Exit status:
  0  every unit succeeded
  1  some units failed (InsufficientData / ConvergenceFailure), run completed
  2  run aborted (missing upstream data, checkpoint write failure, bad config)

Examples:
  # Fit the baseline with 8 workers
  python -m ndvimon --workers 8 baseline

  # Incremental update: refit only 2024 and recompute its anomalies
  python -m ndvimon years --year 2024
  python -m ndvimon anomalies --year 2024

  # What would run, without fitting
  python -m ndvimon --dry-run run
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from ndvimon.config import DEFAULT_CONFIG_YAML, PipelineConfig, format_year_range, load_config, year_file
from ndvimon.errors import PipelineError
from ndvimon.pipeline import (
    ONLY_CHOICES,
    StageResult,
    baseline_needs_rebuild,
    baseline_path,
    baseline_store,
    build_anomalies,
    build_baseline,
    build_derivatives,
    build_years,
    checkpoint_status,
    make_baseline_task,
    make_year_task,
    plan_stage,
    prepare_observations,
    read_baseline,
    target_years,
    year_needs_refit,
    year_store,
)
from ndvimon.scheduler import ExitStatus, worst_status


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for ndvimon.

    Structure:
    - Global args: config path, worker count, work subset, dry run, verbosity
    - Subcommands: one per pipeline stage, plus run and status
    """
    ap = argparse.ArgumentParser(
        prog="ndvimon",
        description="NDVI baseline / year-specific fitting and anomaly pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit status: 0 all units succeeded, 1 some units failed, 2 aborted.
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_YAML,
        help=f"Path to pipeline YAML (default: {DEFAULT_CONFIG_YAML})",
    )
    ap.add_argument("--workers", type=int, help="Worker processes (overrides execution.workers)")
    ap.add_argument(
        "--only",
        choices=ONLY_CHOICES,
        help="missing: resume and fill gaps (default); all: refit everything in scope",
    )
    ap.add_argument("--dry-run", action="store_true", help="Print planned work without fitting")
    ap.add_argument("--no-progress", action="store_true", help="Disable progress bars")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging (per-unit failures)")

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("baseline", help="Fit the long-term baseline")

    for name, help_text in (
        ("years", "Fit year-specific curves (--year refits only those years)"),
        ("anomalies", "Compute anomalies from baseline and year tables"),
        ("derivatives", "Compute change-rate anomalies from posterior draws"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--year", type=int, action="append", help="Year to process (repeatable)")

    sub.add_parser("run", help="Run every stage in order")
    sub.add_parser("status", help="Show checkpoint progress")

    return ap


# -----------------------------------------------------------------------------
# Output helpers
# -----------------------------------------------------------------------------

def _print_result(result: StageResult) -> None:
    s = result.summary
    print(f"{s.stage}: {s.succeeded}/{s.total} succeeded")
    print(f"  InsufficientData:   {s.insufficient_data}")
    print(f"  ConvergenceFailure: {s.convergence_failure}")
    if s.resumed:
        print(f"  Resumed:            {s.resumed}")
    if result.output is not None:
        print(f"Wrote {result.output} ({result.extra.get('rows', 0)} rows)")


def _print_plan(name: str, plan: Dict[str, int]) -> None:
    print(f"[dry-run] {name}: {plan['to_run']} of {plan['total']} units to fit "
          f"({plan['in_output']} in output, {plan['checkpointed']} checkpointed)")


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_baseline(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    only = args.only or "missing"
    if args.dry_run:
        b = cfg.baseline
        print(f"[dry-run] Baseline window {format_year_range(b.years)}, granularity {b.granularity}")
        if only != "all" and baseline_needs_rebuild(cfg):
            print("[dry-run] Baseline settings changed: full rebuild")
            only = "all"
        task = make_baseline_task(cfg, prepare_observations(cfg))
        _print_plan("baseline", plan_stage(task, baseline_store(cfg), baseline_path(cfg), only))
        return int(ExitStatus.SUCCESS)

    result = build_baseline(cfg, only=only, progress=not args.no_progress)
    _print_result(result)
    return int(result.exit_status)


def _handle_years(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    years = getattr(args, "year", None)
    only = args.only or ("all" if years else "missing")
    if args.dry_run:
        obs = prepare_observations(cfg)
        baseline = read_baseline(cfg)
        for year in target_years(cfg, obs, years):
            year_only = only
            if only != "all" and year_needs_refit(cfg, year, baseline):
                print(f"[dry-run] Year {year} fitted with other settings or another baseline: full refit")
                year_only = "all"
            task = make_year_task(cfg, obs, year, baseline)
            _print_plan(f"year {year}", plan_stage(task, year_store(cfg, year), year_file(cfg.paths.output_dir, year), year_only))
        return int(ExitStatus.SUCCESS)

    results = build_years(cfg, years, only=only, progress=not args.no_progress)
    for result in results.values():
        _print_result(result)
    return int(worst_status(r.exit_status for r in results.values()))


def _handle_anomalies(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    years = getattr(args, "year", None)
    if args.dry_run:
        print(f"[dry-run] Would compute anomalies for: {years or 'every fitted year'}")
        return int(ExitStatus.SUCCESS)

    report, summary = build_anomalies(cfg, years)
    print(f"Anomalies: {report.matched} rows")
    print(f"  Dropped keys (MissingJoinKey): {report.dropped} "
          f"({report.baseline_only} baseline-only, {report.year_only} year-only)")
    print(summary.to_string(index=False))
    return int(ExitStatus.SUCCESS)


def _handle_derivatives(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    years = getattr(args, "year", None)
    if args.dry_run:
        print(f"[dry-run] Would compute change derivatives (lags {list(cfg.derivatives.lags)}) "
              f"for: {years or 'every fitted year'}")
        return int(ExitStatus.SUCCESS)

    written = build_derivatives(cfg, years, only=args.only or ("all" if years else "missing"))
    for year, n in written.items():
        print(f"Derivatives {year}: {n} rows")
    if not written:
        print("Derivatives: nothing to do")
    return int(ExitStatus.SUCCESS)


def _handle_run(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    if args.dry_run:
        _handle_baseline(cfg, args)
        if baseline_path(cfg).exists():
            _handle_years(cfg, args)
        else:
            print("[dry-run] Year-specific stages wait for the baseline")
        return int(ExitStatus.SUCCESS)

    only = args.only or "missing"
    progress = not args.no_progress
    obs = prepare_observations(cfg)

    baseline = build_baseline(cfg, obs=obs, only=only, progress=progress)
    _print_result(baseline)
    years = build_years(cfg, obs=obs, only=only, progress=progress)
    for result in years.values():
        _print_result(result)

    _handle_anomalies(cfg, argparse.Namespace(dry_run=False, year=None))
    if cfg.uncertainty.retain_draws:
        _handle_derivatives(cfg, argparse.Namespace(dry_run=False, year=None, only=only))

    return int(worst_status([baseline.exit_status] + [r.exit_status for r in years.values()]))


def _handle_status(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    df = checkpoint_status(cfg)
    if df.empty:
        print(f"No checkpoints under {cfg.paths.checkpoint_dir}")
    else:
        print(df.to_string(index=False))
    print(f"Baseline: {'present' if baseline_path(cfg).exists() else 'missing'} ({baseline_path(cfg)})")
    return int(ExitStatus.SUCCESS)


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for the ndvimon CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = load_config(args.config).with_workers(args.workers)
    except (SystemExit, ValueError) as e:
        print(f"[aborted] config: {e}", file=sys.stderr)
        return int(ExitStatus.ABORTED)

    handlers = {
        "baseline": _handle_baseline,
        "years": _handle_years,
        "anomalies": _handle_anomalies,
        "derivatives": _handle_derivatives,
        "run": _handle_run,
        "status": _handle_status,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(cfg, args)
    except PipelineError as e:
        print(f"[aborted] {type(e).__name__}: {e}", file=sys.stderr)
        return int(ExitStatus.ABORTED)
    except KeyboardInterrupt:
        print("[aborted] interrupted; completed batches are checkpointed", file=sys.stderr)
        return int(ExitStatus.ABORTED)


if __name__ == "__main__":
    raise SystemExit(main())
