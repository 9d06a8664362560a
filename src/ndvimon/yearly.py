#!/usr/bin/env python3
"""ndvimon.yearly

Year-specific predictor tasks. Both produce, for one year:

    location_id, year, day_of_year, year_mean, year_se, year_lower, year_upper

- YearByDoy: one unit per (year, day of year). Observations from the trailing
  window ending at that date are joined to the baseline norm of their own day
  of year and fitted with a spatial smoother that carries the norm as a
  covariate. Predictions are made at every location that has a baseline for
  the target day.
- YearByLocation: one unit per (location, year). The year's observations,
  padded with the edges of the adjacent years, are fitted with a non-cyclic
  seasonal smoother. The first and last years of coverage have one-sided (or
  no) padding and are fitted with fewer basis functions.

Years are independent: a task only ever sees its own year (plus padding).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd

from ndvimon.checkpoint import UnitOutcome, make_unit_id, parse_unit_id
from ndvimon.errors import FailureKind, FitFailure, UpstreamDataMissing
from ndvimon.fitting import ModelSpec, fit, seasonal_grid, spatial_grid
from ndvimon.observations import location_table
from ndvimon.windows import CYCLE_DAYS, doy_to_date, select_padded_year, select_trailing, wrap_doy

logger = logging.getLogger(__name__)

YEAR_COLUMNS = ["location_id", "year", "day_of_year", "year_mean", "year_se", "year_lower", "year_upper"]


def target_doys(year: int, doys: Sequence[int], last_date: Optional[pd.Timestamp]) -> List[int]:
    """Days of `year` that are not after the last observed date."""
    if last_date is None:
        return list(doys)
    return [d for d in doys if doy_to_date(year, d) <= last_date]


def is_edge_year(year: int, coverage: Tuple[int, int]) -> bool:
    return year in coverage


# -----------------------------------------------------------------------------
# Per (year, day of year): spatial fit with the norm as covariate
# -----------------------------------------------------------------------------

@dataclass
class YearByDoy:
    obs: pd.DataFrame
    baseline: pd.DataFrame
    year: int
    spec: ModelSpec
    trailing_days: int = 16
    doys: Sequence[int] = tuple(range(1, CYCLE_DAYS + 1))
    _norm: Optional[pd.DataFrame] = field(default=None, init=False, repr=False)
    _locations: Optional[pd.DataFrame] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.baseline is None or self.baseline.empty:
            raise UpstreamDataMissing(f"Year {self.year}: a baseline table is required for year-specific fits")
        if self.spec.covariate is None:
            self.spec = replace(self.spec, covariate="norm")

    @property
    def stage(self) -> str:
        return f"year_{self.year}"

    def units(self) -> List[str]:
        last = self.obs["date"].max() if not self.obs.empty else None
        return [make_unit_id(year=self.year, doy=d) for d in target_doys(self.year, self.doys, last)]

    def units_in(self, table: pd.DataFrame) -> Set[str]:
        return {make_unit_id(year=self.year, doy=d) for d in table["day_of_year"].unique()}

    @property
    def norm(self) -> pd.DataFrame:
        if self._norm is None:
            self._norm = self.baseline[["location_id", "day_of_year", "norm_mean"]].rename(
                columns={"norm_mean": self.spec.covariate}
            )
        return self._norm

    @property
    def locations(self) -> pd.DataFrame:
        if self._locations is None:
            self._locations = location_table(self.obs)
        return self._locations

    def run(self, unit_id: str) -> UnitOutcome:
        doy = parse_unit_id(unit_id)["doy"]
        cov = self.spec.covariate

        sample = select_trailing(self.obs, doy_to_date(self.year, doy), self.trailing_days)
        sample = sample.assign(day_of_year=wrap_doy(sample["day_of_year"].to_numpy()))
        sample = sample.merge(self.norm, on=["location_id", "day_of_year"], how="inner")

        targets = self.locations.merge(
            self.norm[self.norm["day_of_year"] == wrap_doy(doy)][["location_id", cov]],
            on="location_id", how="inner",
        )
        if targets.empty:
            failure = FitFailure(FailureKind.INSUFFICIENT_DATA, f"no baseline for day {doy}", len(sample))
            return UnitOutcome(unit_id, failure=failure, stats={"n_obs": float(len(sample))})

        grid = spatial_grid(targets, targets[cov], name=cov)
        result = fit(sample, grid, self.spec)
        return UnitOutcome.from_fit(unit_id, result, "location_id", "year", year=self.year, day_of_year=doy)


# -----------------------------------------------------------------------------
# Per (location, year): padded seasonal fit
# -----------------------------------------------------------------------------

@dataclass
class YearByLocation:
    obs: pd.DataFrame
    year: int
    spec: ModelSpec
    coverage: Tuple[int, int]
    padding_days: int = 31
    edge_basis_reduction: int = 1
    min_target_year_observations: int = 10
    doys: Sequence[int] = tuple(range(1, CYCLE_DAYS + 1))
    _rows: Optional[Dict[int, np.ndarray]] = field(default=None, init=False, repr=False)

    @property
    def stage(self) -> str:
        return f"year_{self.year}"

    @property
    def edge_year(self) -> bool:
        return is_edge_year(self.year, self.coverage)

    @property
    def year_spec(self) -> ModelSpec:
        if self.edge_year:
            return replace(self.spec, basis_dim=self.spec.basis_dim - self.edge_basis_reduction)
        return self.spec

    def units(self) -> List[str]:
        in_year = self.obs[self.obs["year"] == self.year]
        return [make_unit_id(loc=loc, year=self.year) for loc in sorted(in_year["location_id"].unique())]

    def units_in(self, table: pd.DataFrame) -> Set[str]:
        return {make_unit_id(loc=loc, year=self.year) for loc in table["location_id"].unique()}

    def _location_obs(self, location_id: int) -> pd.DataFrame:
        if self._rows is None:
            self._rows = self.obs.groupby("location_id").indices
        idx = self._rows.get(location_id)
        if idx is None:
            return self.obs.iloc[:0]
        return self.obs.iloc[idx]

    def run(self, unit_id: str) -> UnitOutcome:
        loc = parse_unit_id(unit_id)["loc"]
        spec = self.year_spec
        sample = select_padded_year(self._location_obs(loc), self.year, self.padding_days)
        extra = {"basis_dim": float(spec.basis_dim), "edge_year": float(self.edge_year)}

        n_target = int((~sample["is_padding"]).sum())
        if n_target < self.min_target_year_observations:
            failure = FitFailure(
                FailureKind.INSUFFICIENT_DATA,
                f"{n_target} observations in {self.year} < {self.min_target_year_observations}",
                len(sample),
            )
            return UnitOutcome.from_fit(unit_id, failure, "day_of_year", "year", stats=extra)

        last = self.obs["date"].max() if self.year == self.coverage[1] else None
        grid = seasonal_grid(target_doys(self.year, self.doys, last), column="day_offset")
        result = fit(sample, grid, spec)
        return UnitOutcome.from_fit(
            unit_id, result, "day_of_year", "year", stats=extra, location_id=loc, year=self.year,
        )
