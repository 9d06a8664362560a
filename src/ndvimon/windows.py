#!/usr/bin/env python3
"""ndvimon.windows

Windowed sample selection: which observations feed one fitting call.

Three policies:
- symmetric: every observation, across the pooled years, whose day_of_year is
  within +/- W days of a target day. Days wrap around the 365-day cycle
  (day 3 with W=7 includes days 361..365).
- trailing: every observation whose calendar date is within the W days
  ending at (and including) a target date. Works on dates, so it crosses
  Jan 1 into the previous year without any day-of-year arithmetic.
- padded year: one year's observations plus up to P days from the tail of the
  previous year and the head of the next year, re-expressed as a continuous
  day offset relative to Jan 1 of the target year (negative before, > 365 after).

An empty window is a valid answer; callers decide whether that is fatal.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

CYCLE_DAYS = 365


# -----------------------------------------------------------------------------
# Day-of-year arithmetic
# -----------------------------------------------------------------------------

def wrap_doy(doy):
    """Wrap day-of-year values into [1, 365]. Accepts scalars or arrays.

    Day 366 (Dec 31 of a leap year) maps to day 1 of the cycle, i.e. it sits
    next to Jan 1, which is where it belongs seasonally.
    """
    if np.ndim(doy) == 0:
        return int((int(doy) - 1) % CYCLE_DAYS + 1)
    return (np.asarray(doy, dtype="int64") - 1) % CYCLE_DAYS + 1


def doy_window(target_day: int, window_size: int) -> List[int]:
    """Sorted day-of-year set {target - W, ..., target + W}, wrapped into [1, 365]."""
    if window_size < 0:
        raise ValueError("window_size must be >= 0")
    if 2 * window_size + 1 >= CYCLE_DAYS:
        return list(range(1, CYCLE_DAYS + 1))
    days = {wrap_doy(target_day + off) for off in range(-window_size, window_size + 1)}
    return sorted(days)


def trailing_dates(target_date: pd.Timestamp, window_size: int) -> pd.DatetimeIndex:
    """The `window_size` calendar dates ending at target_date (inclusive)."""
    end = pd.Timestamp(target_date).normalize()
    return pd.date_range(end=end, periods=window_size, freq="D")


def doy_to_date(year: int, day_of_year: int) -> pd.Timestamp:
    return pd.Timestamp(year=year, month=1, day=1) + pd.Timedelta(days=int(day_of_year) - 1)


# -----------------------------------------------------------------------------
# Selection policies
# -----------------------------------------------------------------------------

def select_symmetric(
    obs: pd.DataFrame,
    target_day: int,
    window_size: int,
    pooled_years: Optional[Sequence[int]] = None,
) -> pd.DataFrame:
    """Observations whose (wrapped) day_of_year is within +/- window_size of target_day.

    The returned day_of_year column is always within [1, 365].
    """
    days = doy_window(target_day, window_size)
    sub = obs
    if pooled_years is not None:
        sub = sub[sub["year"].isin(list(pooled_years))]
    wrapped = wrap_doy(sub["day_of_year"].to_numpy())
    keep = np.isin(wrapped, days)
    out = sub.loc[keep].copy()
    out["day_of_year"] = wrapped[keep].astype("int64")
    return out.reset_index(drop=True)


def select_trailing(obs: pd.DataFrame, target_date: pd.Timestamp, window_size: int) -> pd.DataFrame:
    """Observations dated within the trailing window ending at target_date."""
    dates = trailing_dates(target_date, window_size)
    keep = (obs["date"] >= dates[0]) & (obs["date"] <= dates[-1])
    return obs.loc[keep].reset_index(drop=True)


def select_padded_year(obs: pd.DataFrame, year: int, padding_days: int) -> pd.DataFrame:
    """One year of observations plus edge padding from the adjacent years.

    Adds a `day_offset` column: days since Dec 31 of the previous year, so
    Jan 1 of `year` is 1, the previous Dec 31 is 0, and padding from the next
    year continues past 365/366. If an adjacent year is not in the store,
    that side is simply empty.
    """
    jan1 = pd.Timestamp(year=year, month=1, day=1)
    next_jan1 = pd.Timestamp(year=year + 1, month=1, day=1)
    lo = jan1 - pd.Timedelta(days=padding_days)
    hi = next_jan1 + pd.Timedelta(days=padding_days)
    keep = (obs["date"] >= lo) & (obs["date"] < hi)
    out = obs.loc[keep].copy()
    out["day_offset"] = ((out["date"] - jan1).dt.days + 1).astype("int64")
    out["is_padding"] = out["year"] != year
    return out.reset_index(drop=True)


def select(
    obs: pd.DataFrame,
    target_day: int,
    mode: str,
    window_size: int,
    pooled_years: Optional[Sequence[int]] = None,
    *,
    year: Optional[int] = None,
) -> pd.DataFrame:
    """Dispatch to a selection policy.

    mode:
        "symmetric" - pooled_years optional
        "trailing"  - `year` required; target date is (year, target_day)
        "padded"    - `year` required; window_size is the padding length, target_day unused
    """
    if mode == "symmetric":
        return select_symmetric(obs, target_day, window_size, pooled_years)
    if mode in ("trailing", "padded") and year is None:
        raise ValueError(f"mode={mode!r} requires a year")
    if mode == "trailing":
        return select_trailing(obs, doy_to_date(year, target_day), window_size)
    if mode == "padded":
        return select_padded_year(obs, year, window_size)
    raise ValueError(f"Unknown selection mode: {mode!r}")
