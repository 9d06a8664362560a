#!/usr/bin/env python3
"""ndvimon.pipeline

Stage orchestration: observations -> baseline -> year-specific -> anomalies
(-> change-rate derivatives).

Every fitting stage follows the same life cycle:
1. plan: all units minus units already present in the output artifact
   (unless only="all", which clears the checkpoint and refits everything)
2. run: the scheduler fits the remaining units, resuming from the checkpoint
3. finalize: previous output + checkpoint shards are merged into the output
   table (written atomically), fit statistics and posterior draws are
   written, and only then is the checkpoint removed

Year-specific stages are partitioned per year (own checkpoint directory, own
output file), so refitting one year never touches another or the baseline.

The baseline is monolithic: when the configured baseline window (or its
model settings) differs from baseline.meta.json it is rebuilt from scratch.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from ndvimon.anomalies import JoinReport, calculate_anomalies, summarize_anomalies
from ndvimon.baseline import BASELINE_COLUMNS, BaselineByDoy, BaselineByLocation
from ndvimon.checkpoint import CheckpointStore, KEY_COLUMNS, write_parquet_atomic, write_text_atomic
from ndvimon.config import (
    BASELINE_FILE,
    BASELINE_META_FILE,
    PipelineConfig,
    anomaly_file,
    derivative_file,
    draws_dir,
    draws_partition,
    year_file,
)
from ndvimon.derivatives import calculate_change_derivatives
from ndvimon.errors import UpstreamDataMissing
from ndvimon.fitting import CURVE_DERIVATIVE_COLUMNS, ModelSpec, Uncertainty
from ndvimon.mask import apply_validity_mask
from ndvimon.observations import coverage_years, filter_years, load_observations
from ndvimon.scheduler import ExitStatus, RunSummary, run_units
from ndvimon.yearly import YEAR_COLUMNS, YearByDoy, YearByLocation

logger = logging.getLogger(__name__)

ONLY_CHOICES = ("missing", "all")


@dataclass
class StageResult:
    summary: RunSummary
    output: Optional[Path] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def exit_status(self) -> ExitStatus:
        return self.summary.exit_status


# -----------------------------------------------------------------------------
# Inputs
# -----------------------------------------------------------------------------

def prepare_observations(cfg: PipelineConfig) -> pd.DataFrame:
    """Load the observation store and apply the validity mask."""
    obs = load_observations(cfg.paths.observations)
    obs = apply_validity_mask(obs, cfg.mask)
    if obs.empty:
        raise UpstreamDataMissing("No observations left after the validity mask")
    return obs


def baseline_path(cfg: PipelineConfig) -> Path:
    return cfg.paths.output_dir / BASELINE_FILE


def read_baseline(cfg: PipelineConfig) -> pd.DataFrame:
    path = baseline_path(cfg)
    if not path.exists():
        raise UpstreamDataMissing(f"Baseline table not found: {path} (run the baseline stage first)")
    try:
        return pd.read_parquet(path)
    except (OSError, ValueError) as e:
        raise UpstreamDataMissing(f"Baseline table unreadable: {path}: {e}") from e


def _uncertainty_kwargs(cfg: PipelineConfig) -> Dict[str, Any]:
    u = cfg.uncertainty
    return {
        "uncertainty": Uncertainty(u.method),
        "n_draws": u.n_draws,
        "confidence": u.confidence,
        "seed": u.seed,
        "keep_draws": u.retain_draws,
    }


def _fit_stats_path(output_path: Path) -> Path:
    return output_path.with_name(output_path.stem + "_fit_stats.parquet")


def baseline_curves(cfg: PipelineConfig) -> bool:
    """Curve derivatives apply to the seasonal (per-location) baseline only."""
    return cfg.derivatives.curves and cfg.baseline.granularity == "location"


def year_curves(cfg: PipelineConfig) -> bool:
    return cfg.derivatives.curves and cfg.year_specific.granularity == "location_year"


def baseline_columns(cfg: PipelineConfig) -> List[str]:
    return BASELINE_COLUMNS + (CURVE_DERIVATIVE_COLUMNS if baseline_curves(cfg) else [])


def year_columns(cfg: PipelineConfig) -> List[str]:
    return YEAR_COLUMNS + (CURVE_DERIVATIVE_COLUMNS if year_curves(cfg) else [])


# -----------------------------------------------------------------------------
# Generic stage life cycle
# -----------------------------------------------------------------------------

def _read_existing(output_path: Path, only: str) -> Optional[pd.DataFrame]:
    if only == "all" or not output_path.exists():
        return None
    try:
        return pd.read_parquet(output_path)
    except (OSError, ValueError) as e:
        raise UpstreamDataMissing(f"Existing output unreadable: {output_path}: {e}") from e


def plan_stage(task, store: CheckpointStore, output_path: Path, only: str = "missing") -> Dict[str, int]:
    """Counts of units: total, already in the output, in the checkpoint, to run."""
    units = task.units()
    existing = _read_existing(output_path, only)
    in_output = task.units_in(existing) if existing is not None else set()
    todo = [u for u in units if u not in in_output]
    checkpointed = set() if only == "all" else store.completed_units() & set(todo)
    return {
        "total": len(units),
        "in_output": len(units) - len(todo),
        "checkpointed": len(checkpointed),
        "to_run": len(todo) - len(checkpointed),
    }


def _stats_frame(store: CheckpointStore) -> pd.DataFrame:
    rows = []
    for unit_id, entry in store.outcomes().items():
        failure = entry["failure"] or {}
        rows.append({
            "unit_id": unit_id,
            "ok": entry["ok"],
            "failure": failure.get("kind"),
            "message": failure.get("message"),
            "attempts": entry["attempts"],
            **entry["stats"],
        })
    return pd.DataFrame(rows)


def _merge_keyed(old: Optional[pd.DataFrame], new: Optional[pd.DataFrame], keys: Sequence[str]) -> Optional[pd.DataFrame]:
    frames = [f for f in (old, new) if f is not None and not f.empty]
    if not frames:
        return None
    out = pd.concat(frames, ignore_index=True).drop_duplicates(subset=list(keys), keep="last")
    return out.sort_values(list(keys)).reset_index(drop=True)


def _write_draw_partitions(draws: Optional[pd.DataFrame], root: Path) -> int:
    """One file per day of year, one row per location, merged with any existing partition."""
    if draws is None or draws.empty:
        return 0
    n = 0
    for doy, part in draws.groupby("day_of_year", sort=True):
        path = draws_partition(root, int(doy))
        part = part.drop(columns=[c for c in ("year", "day_of_year") if c in part.columns])
        if path.exists():
            old = pd.read_parquet(path)
            part = pd.concat([old[~old["location_id"].isin(part["location_id"])], part], ignore_index=True)
        write_parquet_atomic(part.sort_values("location_id").reset_index(drop=True), path)
        n += 1
    return n


def _finalize(
    store: CheckpointStore,
    output_path: Path,
    existing: Optional[pd.DataFrame],
    columns: Sequence[str],
    draws_root: Path,
) -> int:
    keys = [k for k in KEY_COLUMNS if k in columns]
    table = _merge_keyed(existing, store.load_records(), keys)
    if table is None:
        table = pd.DataFrame({c: pd.Series(dtype="float64") for c in columns})
    write_parquet_atomic(table[list(columns)], output_path)

    stats_path = _fit_stats_path(output_path)
    new_stats = _stats_frame(store)
    old_stats = pd.read_parquet(stats_path) if (existing is not None and stats_path.exists()) else None
    stats = _merge_keyed(old_stats, new_stats, ["unit_id"])
    if stats is not None:
        write_parquet_atomic(stats, stats_path)

    n_parts = _write_draw_partitions(store.load_draws(), draws_root)
    if n_parts:
        logger.info("Wrote %d draws partitions under %s", n_parts, draws_root)

    store.clear()
    logger.info("Wrote %s (%d rows)", output_path, len(table))
    return len(table)


def _run_stage(
    cfg: PipelineConfig,
    task,
    store: CheckpointStore,
    output_path: Path,
    columns: Sequence[str],
    draws_root: Path,
    only: str = "missing",
    progress: bool = True,
) -> StageResult:
    if only not in ONLY_CHOICES:
        raise ValueError(f"only must be one of {ONLY_CHOICES}, got {only!r}")
    if only == "all":
        store.clear()
        if draws_root.exists():
            shutil.rmtree(draws_root)

    units = task.units()
    existing = _read_existing(output_path, only)
    in_output = task.units_in(existing) if existing is not None else set()
    todo = [u for u in units if u not in in_output]

    e = cfg.execution
    summary = run_units(
        task, todo, store,
        workers=e.workers,
        checkpoint_every=e.checkpoint_every,
        max_internal_threads=e.max_internal_threads,
        max_retries=e.max_retries,
        reserve_cores=e.reserve_cores,
        max_core_fraction=e.max_core_fraction,
        progress=progress,
    )
    prior = len(units) - len(todo)
    summary.total += prior
    summary.succeeded += prior
    summary.resumed += prior

    n_rows = _finalize(store, output_path, existing, columns, draws_root)
    return StageResult(summary=summary, output=output_path, extra={"rows": n_rows})


# -----------------------------------------------------------------------------
# Baseline
# -----------------------------------------------------------------------------

_META_KEYS = ("years", "granularity", "window_days", "basis_dim", "spatial_basis_dim", "uncertainty", "curve_derivatives")


def baseline_meta(cfg: PipelineConfig) -> Dict[str, Any]:
    b = cfg.baseline
    return {
        "years": list(b.years),
        "granularity": b.granularity,
        "window_days": b.window_days,
        "basis_dim": b.basis_dim,
        "spatial_basis_dim": b.spatial_basis_dim,
        "uncertainty": cfg.uncertainty.method,
        "curve_derivatives": baseline_curves(cfg),
    }


def baseline_needs_rebuild(cfg: PipelineConfig) -> bool:
    """True when a persisted baseline was built with different window/model settings."""
    out = cfg.paths.output_dir
    if not (out / BASELINE_FILE).exists():
        return False
    meta_path = out / BASELINE_META_FILE
    if not meta_path.exists():
        return True
    stored = json.loads(meta_path.read_text(encoding="utf-8"))
    current = baseline_meta(cfg)
    return any(stored.get(k) != current[k] for k in _META_KEYS)


def baseline_store(cfg: PipelineConfig) -> CheckpointStore:
    return CheckpointStore(cfg.paths.checkpoint_dir / "baseline", stage="baseline")


def make_baseline_task(cfg: PipelineConfig, obs: pd.DataFrame):
    b = cfg.baseline
    years = list(range(b.years[0], b.years[1] + 1))
    pooled = filter_years(obs, years)
    if pooled.empty:
        raise UpstreamDataMissing(f"No observations in the baseline window {b.years[0]}-{b.years[1]}")

    doys = tuple(cfg.execution.doys)
    if b.granularity == "location":
        spec = ModelSpec.seasonal_cyclic(
            b.basis_dim, min_observations=b.min_observations, derivative=baseline_curves(cfg),
            **_uncertainty_kwargs(cfg),
        )
        return BaselineByLocation(pooled, spec, doys=doys)
    spec = ModelSpec.spatial(b.spatial_basis_dim, min_observations=b.min_observations_doy, **_uncertainty_kwargs(cfg))
    return BaselineByDoy(pooled, spec, window_days=b.window_days, pooled_years=years, doys=doys)


def build_baseline(
    cfg: PipelineConfig,
    obs: Optional[pd.DataFrame] = None,
    only: str = "missing",
    progress: bool = True,
) -> StageResult:
    """Fit (or resume fitting) the baseline table."""
    if only != "all" and baseline_needs_rebuild(cfg):
        logger.warning("Baseline settings changed since the last build; rebuilding from scratch")
        only = "all"

    obs = prepare_observations(cfg) if obs is None else obs
    task = make_baseline_task(cfg, obs)
    out = cfg.paths.output_dir
    result = _run_stage(
        cfg, task, baseline_store(cfg), out / BASELINE_FILE, baseline_columns(cfg), draws_dir(out),
        only=only, progress=progress,
    )
    meta = {**baseline_meta(cfg), "written_at": datetime.now(timezone.utc).isoformat(), "summary": result.summary.to_dict()}
    write_text_atomic(json.dumps(meta, indent=2), out / BASELINE_META_FILE)
    return result


# -----------------------------------------------------------------------------
# Year-specific
# -----------------------------------------------------------------------------

def year_store(cfg: PipelineConfig, year: int) -> CheckpointStore:
    return CheckpointStore(cfg.paths.checkpoint_dir / "years" / str(year), stage=f"year_{year}")


def target_years(cfg: PipelineConfig, obs: pd.DataFrame, years: Optional[Sequence[int]] = None) -> List[int]:
    available = coverage_years(obs)
    if years is None and cfg.year_specific.years is not None:
        lo, hi = cfg.year_specific.years
        years = range(lo, hi + 1)
    if years is None:
        return available
    missing = sorted(set(years) - set(available))
    if missing:
        raise UpstreamDataMissing(f"No observations for year(s): {missing}")
    return sorted(set(years))


def make_year_task(cfg: PipelineConfig, obs: pd.DataFrame, year: int, baseline: pd.DataFrame):
    y = cfg.year_specific
    years = coverage_years(obs)
    doys = tuple(cfg.execution.doys)
    if y.granularity == "location_year":
        spec = ModelSpec.seasonal_padded(
            y.basis_dim, min_observations=y.min_observations, derivative=year_curves(cfg),
            **_uncertainty_kwargs(cfg),
        )
        return YearByLocation(
            filter_years(obs, [year - 1, year, year + 1]), year, spec,
            coverage=(years[0], years[-1]),
            padding_days=y.padding_days,
            edge_basis_reduction=y.edge_basis_reduction,
            min_target_year_observations=y.min_target_year_observations,
            doys=doys,
        )
    spec = ModelSpec.spatial(
        y.spatial_basis_dim, covariate="norm",
        min_observations=y.min_observations_doy,
        min_location_fraction=y.min_location_fraction,
        **_uncertainty_kwargs(cfg),
    )
    return YearByDoy(filter_years(obs, [year - 1, year]), baseline, year, spec, trailing_days=y.trailing_days, doys=doys)


def baseline_fingerprint(baseline: pd.DataFrame) -> str:
    """Content hash of a baseline table, independent of row order."""
    table = baseline[BASELINE_COLUMNS].sort_values(["location_id", "day_of_year"])
    hashed = pd.util.hash_pandas_object(table, index=False).to_numpy()
    return hashlib.sha1(hashed.tobytes()).hexdigest()[:16]


def year_meta_path(cfg: PipelineConfig, year: int) -> Path:
    return year_file(cfg.paths.output_dir, year).with_suffix(".meta.json")


def year_meta(cfg: PipelineConfig, baseline: pd.DataFrame) -> Dict[str, Any]:
    """Settings a year partition was fitted with. year_doy fits also depend on the baseline norm."""
    y = cfg.year_specific
    return {
        "granularity": y.granularity,
        "basis_dim": y.basis_dim,
        "spatial_basis_dim": y.spatial_basis_dim,
        "padding_days": y.padding_days,
        "trailing_days": y.trailing_days,
        "uncertainty": cfg.uncertainty.method,
        "curve_derivatives": year_curves(cfg),
        "baseline": baseline_fingerprint(baseline) if y.granularity == "year_doy" else None,
    }


def year_needs_refit(cfg: PipelineConfig, year: int, baseline: pd.DataFrame) -> bool:
    """True when a persisted year table was fitted with other settings or another baseline."""
    if not year_file(cfg.paths.output_dir, year).exists():
        return False
    meta_path = year_meta_path(cfg, year)
    if not meta_path.exists():
        return True
    stored = json.loads(meta_path.read_text(encoding="utf-8"))
    current = year_meta(cfg, baseline)
    return any(stored.get(k) != v for k, v in current.items())


def build_year(
    cfg: PipelineConfig,
    year: int,
    obs: Optional[pd.DataFrame] = None,
    baseline: Optional[pd.DataFrame] = None,
    only: str = "missing",
    progress: bool = True,
) -> StageResult:
    """Fit (or resume fitting) the year-specific table for one year."""
    baseline = read_baseline(cfg) if baseline is None else baseline
    if only != "all" and year_needs_refit(cfg, year, baseline):
        logger.warning("Year %d was fitted with other settings or another baseline; refitting", year)
        only = "all"

    obs = prepare_observations(cfg) if obs is None else obs
    task = make_year_task(cfg, obs, year, baseline)
    out = cfg.paths.output_dir
    result = _run_stage(
        cfg, task, year_store(cfg, year), year_file(out, year), year_columns(cfg), draws_dir(out, year),
        only=only, progress=progress,
    )
    write_text_atomic(json.dumps(year_meta(cfg, baseline), indent=2), year_meta_path(cfg, year))
    return result


def build_years(
    cfg: PipelineConfig,
    years: Optional[Sequence[int]] = None,
    obs: Optional[pd.DataFrame] = None,
    only: str = "missing",
    progress: bool = True,
) -> Dict[int, StageResult]:
    baseline = read_baseline(cfg)
    obs = prepare_observations(cfg) if obs is None else obs
    results = {}
    for year in target_years(cfg, obs, years):
        results[year] = build_year(cfg, year, obs=obs, baseline=baseline, only=only, progress=progress)
    return results


# -----------------------------------------------------------------------------
# Anomalies and derivatives
# -----------------------------------------------------------------------------

def available_years(cfg: PipelineConfig) -> List[int]:
    root = cfg.paths.output_dir / "years"
    if not root.exists():
        return []
    return sorted(int(p.stem.split("_")[1]) for p in root.glob("year_*.parquet") if not p.stem.endswith("_fit_stats"))


def build_anomalies(cfg: PipelineConfig, years: Optional[Sequence[int]] = None) -> Tuple[JoinReport, pd.DataFrame]:
    """Recompute anomaly tables for `years` (default: every year with a year-specific table)."""
    baseline = read_baseline(cfg)
    out = cfg.paths.output_dir
    years = available_years(cfg) if years is None else sorted(set(years))
    if not years:
        raise UpstreamDataMissing(f"No year-specific tables under {out / 'years'}")

    report = JoinReport()
    summaries = []
    for year in years:
        path = year_file(out, year)
        if not path.exists():
            raise UpstreamDataMissing(f"Year-specific table not found: {path}")
        anomalies, year_report = calculate_anomalies(
            baseline, pd.read_parquet(path), alpha=cfg.anomalies.alpha, year=year,
        )
        write_parquet_atomic(anomalies, anomaly_file(out, year))
        logger.info("Anomalies %d: %d rows, %d keys dropped", year, len(anomalies), year_report.dropped)
        report = report + year_report
        summaries.append(summarize_anomalies(anomalies))

    summary = pd.concat(summaries, ignore_index=True)
    summary_path = out / "anomalies" / "anomaly_summary.parquet"
    if summary_path.exists():
        old = pd.read_parquet(summary_path)
        summary = pd.concat([old[~old["year"].isin(years)], summary], ignore_index=True)
        summary = summary.sort_values("year").reset_index(drop=True)
    write_parquet_atomic(summary, summary_path)
    return report, summary


def build_derivatives(
    cfg: PipelineConfig,
    years: Optional[Sequence[int]] = None,
    only: str = "missing",
) -> Dict[int, int]:
    """Change-rate anomalies per year from retained draws. Returns year -> rows written."""
    out = cfg.paths.output_dir
    if not draws_dir(out).exists():
        raise UpstreamDataMissing(
            f"No baseline draws under {draws_dir(out)}; set uncertainty.method: posterior and retain_draws: true"
        )
    years = available_years(cfg) if years is None else sorted(set(years))
    d = cfg.derivatives
    written = {}
    for year in years:
        path = derivative_file(out, year)
        if only == "missing" and path.exists():
            logger.info("Derivatives %d: already present, skipping", year)
            continue
        if not draws_dir(out, year).exists():
            raise UpstreamDataMissing(f"No draws for {year} under {draws_dir(out, year)}")
        table, _ = calculate_change_derivatives(out, year, lags=d.lags, doys=cfg.execution.doys, confidence=d.confidence)
        write_parquet_atomic(table, path)
        written[year] = len(table)
    return written


# -----------------------------------------------------------------------------
# Status
# -----------------------------------------------------------------------------

def checkpoint_status(cfg: PipelineConfig) -> pd.DataFrame:
    """One row per checkpoint partition on disk: completed / failed unit counts."""
    root = cfg.paths.checkpoint_dir
    stores = [baseline_store(cfg)]
    years_root = root / "years"
    if years_root.exists():
        stores += [year_store(cfg, int(p.name)) for p in sorted(years_root.iterdir()) if p.is_dir() and p.name.isdigit()]

    rows = []
    for store in stores:
        if not store.exists():
            continue
        entries = list(store.outcomes().values())
        s = RunSummary.from_entries(store.stage, len(entries), entries)
        rows.append({**asdict(s), "path": str(store.root)})
    return pd.DataFrame(rows, columns=["stage", "total", "succeeded", "insufficient_data",
                                       "convergence_failure", "resumed", "path"])
