#!/usr/bin/env python3
"""ndvimon.derivatives

Change-rate (derivative) anomalies from retained posterior draws.

For a target (year, day) and lag k, at every location:

    year_rate  = (year(d) - year(d - k)) / k      draws from the year-specific fits
    norm_rate  = (norm(d) - norm(d - k)) / k      draws from the baseline fits
    change     = year_rate - norm_rate

d - k wraps around the cycle; when it wraps, the year-specific side comes
from the previous year's draws. The change is significant when the central
`confidence` interval of its draws excludes zero. prob_slower / prob_faster
are the posterior shares of change below / above zero.

Requires uncertainty.method = posterior and retain_draws = true, which write
draws/baseline/doy_DDD.parquet and draws/years/YYYY/doy_DDD.parquet.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ndvimon.config import draws_dir, draws_partition
from ndvimon.windows import wrap_doy

logger = logging.getLogger(__name__)

DERIVATIVE_COLUMNS = [
    "location_id", "year", "day_of_year", "lag",
    "year_rate", "norm_rate", "change_anomaly", "change_lower", "change_upper",
    "significant", "prob_slower", "prob_faster",
]


def draws_file(output_dir: Path, day_of_year: int, year: Optional[int] = None) -> Path:
    return draws_partition(draws_dir(output_dir, year), day_of_year)


def draw_columns(df: pd.DataFrame):
    return [c for c in df.columns if c.startswith("draw_")]


def change_anomaly(
    year_now: np.ndarray,
    year_prev: np.ndarray,
    norm_now: np.ndarray,
    norm_prev: np.ndarray,
    lag: int,
    confidence: float = 0.95,
) -> Dict[str, np.ndarray]:
    """Summarize the differenced-rate posterior. Inputs are (n_locations, n_draws)."""
    year_rate = (np.asarray(year_now) - np.asarray(year_prev)) / float(lag)
    norm_rate = (np.asarray(norm_now) - np.asarray(norm_prev)) / float(lag)
    sims = year_rate - norm_rate

    alpha = 1.0 - confidence
    lower = np.quantile(sims, alpha / 2.0, axis=1)
    upper = np.quantile(sims, 1.0 - alpha / 2.0, axis=1)
    return {
        "year_rate": year_rate.mean(axis=1),
        "norm_rate": norm_rate.mean(axis=1),
        "change_anomaly": sims.mean(axis=1),
        "change_lower": lower,
        "change_upper": upper,
        "significant": (lower > 0) | (upper < 0),
        "prob_slower": (sims < 0).mean(axis=1),
        "prob_faster": (sims > 0).mean(axis=1),
    }


class _DrawCache:
    """Reads draws partitions on demand, keeping each file once."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir
        self._frames: Dict[Tuple[Optional[int], int], Optional[pd.DataFrame]] = {}

    def get(self, day_of_year: int, year: Optional[int] = None) -> Optional[pd.DataFrame]:
        key = (year, day_of_year)
        if key not in self._frames:
            path = draws_file(self.output_dir, day_of_year, year)
            if path.exists():
                df = pd.read_parquet(path)
                self._frames[key] = df.set_index("location_id")[draw_columns(df)]
            else:
                self._frames[key] = None
        return self._frames[key]

    def evict_before(self, year: int, day_of_year: int) -> None:
        for key in [k for k in self._frames if k[0] == year and k[1] < day_of_year]:
            del self._frames[key]


def _aligned(*frames: pd.DataFrame) -> Tuple[np.ndarray, Sequence[np.ndarray]]:
    """Inner-join draw frames on location_id and truncate to a common draw count."""
    index = frames[0].index
    for f in frames[1:]:
        index = index.intersection(f.index)
    n = min(f.shape[1] for f in frames)
    return index.to_numpy(), [f.loc[index].to_numpy(dtype=float)[:, :n] for f in frames]


def calculate_change_derivatives(
    output_dir: Path,
    year: int,
    lags: Iterable[int] = (3, 7, 14, 30),
    doys: Iterable[int] = range(1, 366),
    confidence: float = 0.95,
) -> Tuple[pd.DataFrame, int]:
    """Change-rate anomalies for every (day, lag) of `year` with draws available.

    Returns (table, n_skipped) where n_skipped counts (day, lag) pairs with a
    missing draws partition on either side.
    """
    lags = sorted(int(k) for k in lags)
    cache = _DrawCache(output_dir)
    frames = []
    skipped = 0

    for doy in doys:
        year_now = cache.get(doy, year)
        norm_now = cache.get(doy)
        for lag in lags:
            prev_doy = wrap_doy(doy - lag)
            prev_year = year - 1 if doy - lag < 1 else year
            year_prev = cache.get(prev_doy, prev_year)
            norm_prev = cache.get(prev_doy)
            if any(f is None for f in (year_now, year_prev, norm_now, norm_prev)):
                skipped += 1
                continue

            locs, (y_now, y_prev, n_now, n_prev) = _aligned(year_now, year_prev, norm_now, norm_prev)
            if len(locs) == 0:
                skipped += 1
                continue
            res = change_anomaly(y_now, y_prev, n_now, n_prev, lag, confidence)
            frames.append(pd.DataFrame({"location_id": locs, "year": year, "day_of_year": doy, "lag": lag, **res}))
        cache.evict_before(year, doy - max(lags, default=0))

    if skipped:
        logger.info("Derivatives %d: %d (day, lag) pairs skipped for missing draws", year, skipped)
    if not frames:
        return pd.DataFrame(columns=DERIVATIVE_COLUMNS), skipped
    out = pd.concat(frames, ignore_index=True)[DERIVATIVE_COLUMNS]
    return out.sort_values(["lag", "location_id", "day_of_year"]).reset_index(drop=True), skipped
