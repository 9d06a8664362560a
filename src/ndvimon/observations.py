#!/usr/bin/env python3
"""ndvimon.observations

The Observation Store: a flat table of vegetation-index samples produced by
the (external) spatial aggregation step.

Columns after normalization:
    location_id  int     stable id of the analysis cell
    x, y         float   cell coordinates (constant per location_id)
    date         datetime64[ns]
    year         int
    day_of_year  int     1..366
    value        float   vegetation index (NaN rows are dropped)

The table is read-only for the lifetime of a run. Nothing in this module
mutates a frame it was given; every helper returns a new frame.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from ndvimon.errors import UpstreamDataMissing

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("location_id", "x", "y", "date", "value")

# Upstream tables have used a few spellings over time.
_COLUMN_ALIASES = {
    "pixel_id": "location_id",
    "ndvi": "value",
    "NDVI": "value",
    "yday": "day_of_year",
    "doy": "day_of_year",
}


def _read_table(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in (".parquet", ".pq"):
        return pd.read_parquet(path)
    if suffix in (".csv", ".txt"):
        return pd.read_csv(path)
    raise UpstreamDataMissing(f"Unsupported observation table format: {path}")


def normalize_observations(df: pd.DataFrame) -> pd.DataFrame:
    """Validate and normalize a raw observation table.

    - Renames known aliases (pixel_id, NDVI, yday, ...)
    - Derives year/day_of_year from date (the date is authoritative)
    - Drops rows with a missing value
    - Checks that each location_id maps to exactly one (x, y)

    Raises:
        UpstreamDataMissing: required columns are absent.
        ValueError: the location -> coordinate invariant is violated.
    """
    df = df.rename(columns={k: v for k, v in _COLUMN_ALIASES.items() if k in df.columns and v not in df.columns})
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise UpstreamDataMissing(f"Observation table is missing columns: {missing}")

    out = pd.DataFrame(
        {
            "location_id": df["location_id"].astype("int64"),
            "x": df["x"].astype("float64"),
            "y": df["y"].astype("float64"),
            "date": pd.to_datetime(df["date"]).dt.normalize(),
            "value": pd.to_numeric(df["value"], errors="coerce").astype("float64"),
        }
    )
    out["year"] = out["date"].dt.year.astype("int64")
    out["day_of_year"] = out["date"].dt.dayofyear.astype("int64")

    n_before = len(out)
    out = out[np.isfinite(out["value"])].reset_index(drop=True)
    if len(out) < n_before:
        logger.debug("Dropped %d observations with missing values", n_before - len(out))

    coords_per_loc = out.groupby("location_id")[["x", "y"]].nunique()
    bad = coords_per_loc[(coords_per_loc["x"] > 1) | (coords_per_loc["y"] > 1)]
    if not bad.empty:
        raise ValueError(
            f"{len(bad)} location_id(s) map to more than one (x, y); "
            f"first offenders: {bad.index[:5].tolist()}"
        )

    return out[["location_id", "x", "y", "date", "year", "day_of_year", "value"]]


def load_observations(path: Path) -> pd.DataFrame:
    """Read and normalize the observation table at `path` (parquet or csv).

    Raises UpstreamDataMissing when the file is absent, unreadable, or empty.
    """
    if not path.exists():
        raise UpstreamDataMissing(f"Observation table not found: {path}")
    try:
        raw = _read_table(path)
    except (OSError, ValueError) as e:
        raise UpstreamDataMissing(f"Observation table unreadable: {path}: {e}") from e

    obs = normalize_observations(raw)
    if obs.empty:
        raise UpstreamDataMissing(f"Observation table has no usable rows: {path}")

    logger.info(
        "Loaded %d observations, %d locations, years %d-%d",
        len(obs), obs["location_id"].nunique(), obs["year"].min(), obs["year"].max(),
    )
    return obs


def location_table(obs: pd.DataFrame) -> pd.DataFrame:
    """One row per location: location_id, x, y (sorted by location_id)."""
    return (
        obs.groupby("location_id", sort=True)[["x", "y"]]
        .first()
        .reset_index()
    )


def coverage_years(obs: pd.DataFrame) -> List[int]:
    """Sorted list of years present in the store."""
    return sorted(int(y) for y in obs["year"].unique())


def filter_years(obs: pd.DataFrame, years: Optional[Sequence[int]]) -> pd.DataFrame:
    if years is None:
        return obs
    return obs[obs["year"].isin(list(years))].reset_index(drop=True)
