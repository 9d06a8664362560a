#!/usr/bin/env python3
"""ndvimon.baseline

Baseline (climatology) builder tasks. Both produce the same table:

    location_id, day_of_year (1..365), norm_mean, norm_se, norm_lower, norm_upper

(plus deriv_mean, deriv_lower, deriv_upper, deriv_sig for the per-location
fit when curve derivatives are switched on)

- BaselineByLocation: one unit per location. All observations of the
  baseline years are pooled onto the 365-day cycle and fitted with a cyclic
  seasonal smoother; predicted for every day of year.
- BaselineByDoy: one unit per day of year. Observations within +/- W days
  of the target day (wrapped, pooled over the baseline years) are fitted with
  a spatial smoother and predicted at every location.

Locations or days that fail the minimum-data gate have no rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

import numpy as np
import pandas as pd

from ndvimon.checkpoint import UnitOutcome, make_unit_id, parse_unit_id
from ndvimon.fitting import ModelSpec, fit, seasonal_grid, spatial_grid
from ndvimon.observations import location_table
from ndvimon.windows import CYCLE_DAYS, select_symmetric

BASELINE_COLUMNS = ["location_id", "day_of_year", "norm_mean", "norm_se", "norm_lower", "norm_upper"]


@dataclass
class BaselineByLocation:
    """Cyclic seasonal fit per location over the pooled baseline years."""

    obs: pd.DataFrame
    spec: ModelSpec
    doys: Sequence[int] = tuple(range(1, CYCLE_DAYS + 1))
    stage: str = "baseline"
    _rows: Optional[Dict[int, np.ndarray]] = field(default=None, init=False, repr=False)

    def units(self) -> List[str]:
        return [make_unit_id(loc=loc) for loc in sorted(self.obs["location_id"].unique())]

    def units_in(self, table: pd.DataFrame) -> Set[str]:
        return {make_unit_id(loc=loc) for loc in table["location_id"].unique()}

    def _location_obs(self, location_id: int) -> pd.DataFrame:
        if self._rows is None:
            self._rows = self.obs.groupby("location_id").indices
        idx = self._rows.get(location_id)
        if idx is None:
            return self.obs.iloc[:0]
        return self.obs.iloc[idx]

    def run(self, unit_id: str) -> UnitOutcome:
        loc = parse_unit_id(unit_id)["loc"]
        # A window wider than half the cycle selects every day, wrapped into 1..365
        sample = select_symmetric(self._location_obs(loc), 1, CYCLE_DAYS // 2)
        result = fit(sample, seasonal_grid(self.doys), self.spec)
        return UnitOutcome.from_fit(unit_id, result, "day_of_year", "norm", location_id=loc)


@dataclass
class BaselineByDoy:
    """Spatial fit per day of year over a symmetric window of pooled years."""

    obs: pd.DataFrame
    spec: ModelSpec
    window_days: int = 7
    pooled_years: Optional[Sequence[int]] = None
    doys: Sequence[int] = tuple(range(1, CYCLE_DAYS + 1))
    stage: str = "baseline"
    _locations: Optional[pd.DataFrame] = field(default=None, init=False, repr=False)

    def units(self) -> List[str]:
        return [make_unit_id(doy=d) for d in self.doys]

    def units_in(self, table: pd.DataFrame) -> Set[str]:
        return {make_unit_id(doy=d) for d in table["day_of_year"].unique()}

    @property
    def locations(self) -> pd.DataFrame:
        if self._locations is None:
            self._locations = location_table(self.obs)
        return self._locations

    def run(self, unit_id: str) -> UnitOutcome:
        doy = parse_unit_id(unit_id)["doy"]
        sample = select_symmetric(self.obs, doy, self.window_days, self.pooled_years)
        result = fit(sample, spatial_grid(self.locations), self.spec)
        return UnitOutcome.from_fit(unit_id, result, "location_id", "norm", day_of_year=doy)
