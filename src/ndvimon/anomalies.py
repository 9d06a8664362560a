#!/usr/bin/env python3
"""ndvimon.anomalies

Anomaly calculator: a pure join of the baseline and a year-specific table.

For every (location_id, day_of_year) present on both sides, per year:
    anomaly    = year_mean - norm_mean
    anomaly_se = sqrt(year_se^2 + norm_se^2)      (errors assumed independent)
    z_score    = anomaly / anomaly_se
    p_value    = 2 * Phi(-|z_score|)              (two-tailed)

Keys on only one side are dropped and counted in a JoinReport.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

logger = logging.getLogger(__name__)

JOIN_KEYS = ["location_id", "day_of_year"]
BASELINE_INPUT = ["location_id", "day_of_year", "norm_mean", "norm_se"]
YEAR_INPUT = ["location_id", "day_of_year", "year_mean", "year_se"]

ANOMALY_COLUMNS = [
    "location_id", "year", "day_of_year",
    "anomaly", "anomaly_se", "z_score", "p_value", "is_significant",
    "year_mean", "year_se", "norm_mean", "norm_se",
]


@dataclass(frozen=True)
class JoinReport:
    """Key accounting for one anomaly join."""

    matched: int = 0
    baseline_only: int = 0
    year_only: int = 0

    @property
    def dropped(self) -> int:
        return self.baseline_only + self.year_only

    def __add__(self, other: "JoinReport") -> "JoinReport":
        return JoinReport(
            self.matched + other.matched,
            self.baseline_only + other.baseline_only,
            self.year_only + other.year_only,
        )

    def to_dict(self) -> Dict[str, int]:
        return {**asdict(self), "dropped": self.dropped}


def _require_columns(df: pd.DataFrame, cols: Sequence[str], what: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{what} table is missing columns: {missing}")


def calculate_anomalies(
    baseline: pd.DataFrame,
    year_table: pd.DataFrame,
    alpha: float = 0.05,
    year: Optional[int] = None,
) -> Tuple[pd.DataFrame, JoinReport]:
    """Join baseline and year-specific predictions and compute standardized anomalies.

    year_table may hold several years (a `year` column) or a single one
    (no `year` column); the baseline is matched against each year separately.
    Passing `year` labels a single-year table, and an empty table then counts
    every baseline key as dropped for that year.
    """
    _require_columns(baseline, BASELINE_INPUT, "Baseline")
    _require_columns(year_table, YEAR_INPUT, "Year-specific")

    base = baseline[BASELINE_INPUT]
    if year is not None and "year" not in year_table.columns:
        year_table = year_table.assign(year=year)
    if "year" in year_table.columns:
        groups = list(year_table.groupby("year", sort=True)) or [(year, year_table)]
    else:
        groups = [(None, year_table)]

    report = JoinReport()
    frames = []
    for label, part in groups:
        cols = YEAR_INPUT + (["year"] if "year" in part.columns else [])
        part = part[cols].astype({k: base[k].dtype for k in JOIN_KEYS})
        merged = base.merge(part, on=JOIN_KEYS, how="outer", indicator=True)
        side = merged["_merge"]
        part_report = JoinReport(
            matched=int((side == "both").sum()),
            baseline_only=int((side == "left_only").sum()),
            year_only=int((side == "right_only").sum()),
        )
        if part_report.dropped:
            logger.warning(
                "Anomaly join%s: dropped %d keys (%d baseline-only, %d year-only)",
                "" if label is None else f" {label}",
                part_report.dropped, part_report.baseline_only, part_report.year_only,
            )
        report = report + part_report
        frames.append(merged[side == "both"].drop(columns="_merge"))

    out = pd.concat(frames, ignore_index=True)
    if "year" in out.columns:
        out["year"] = out["year"].astype("int64")

    out["anomaly"] = out["year_mean"] - out["norm_mean"]
    out["anomaly_se"] = np.sqrt(out["year_se"] ** 2 + out["norm_se"] ** 2)
    with np.errstate(divide="ignore", invalid="ignore"):
        out["z_score"] = out["anomaly"] / out["anomaly_se"]
    out["p_value"] = 2.0 * norm.sf(np.abs(out["z_score"].to_numpy(dtype=float)))
    out["is_significant"] = out["p_value"] < alpha

    cols = [c for c in ANOMALY_COLUMNS if c in out.columns]
    out = out[cols].sort_values([c for c in ("year", "location_id", "day_of_year") if c in cols])
    return out.reset_index(drop=True), report


def summarize_anomalies(anomalies: pd.DataFrame, by: Sequence[str] = ("year",)) -> pd.DataFrame:
    """Per-group share of negative and significantly negative/positive anomalies."""
    by = [c for c in by if c in anomalies.columns]
    df = anomalies.assign(
        negative=anomalies["anomaly"] < 0,
        significant_negative=anomalies["is_significant"] & (anomalies["anomaly"] < 0),
        significant_positive=anomalies["is_significant"] & (anomalies["anomaly"] > 0),
    )
    grouped = df.groupby(by) if by else df.groupby(lambda _: 0)
    summary = grouped.agg(
        n=("anomaly", "size"),
        mean_anomaly=("anomaly", "mean"),
        median_anomaly=("anomaly", "median"),
        mean_z=("z_score", "mean"),
        pct_negative=("negative", "mean"),
        pct_significant_negative=("significant_negative", "mean"),
        pct_significant_positive=("significant_positive", "mean"),
    )
    for c in ("pct_negative", "pct_significant_negative", "pct_significant_positive"):
        summary[c] = 100.0 * summary[c]
    return summary.reset_index(drop=not by)
