#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from ndvimon.errors import UpstreamDataMissing
from ndvimon.observations import (
    coverage_years,
    load_observations,
    location_table,
    normalize_observations,
)


def test_normalize_derives_calendar_columns_and_aliases():
    raw = pd.DataFrame({
        "pixel_id": [1, 1, 2],
        "x": [0.0, 0.0, 5.0],
        "y": [0.0, 0.0, 5.0],
        "date": ["2016-12-31", "2017-01-01", "2017-03-01"],
        "NDVI": [0.3, np.nan, 0.5],
    })
    obs = normalize_observations(raw)
    assert list(obs.columns) == ["location_id", "x", "y", "date", "year", "day_of_year", "value"]
    assert len(obs) == 2  # missing value dropped
    assert obs["day_of_year"].tolist() == [366, 60]
    assert obs["year"].tolist() == [2016, 2017]


def test_location_must_keep_its_coordinates():
    raw = pd.DataFrame({"location_id": [1, 1], "x": [0.0, 1.0], "y": [0.0, 0.0],
                        "date": ["2017-01-01", "2017-01-02"], "value": [0.3, 0.4]})
    with pytest.raises(ValueError):
        normalize_observations(raw)


def test_missing_columns_are_upstream_missing():
    with pytest.raises(UpstreamDataMissing):
        normalize_observations(pd.DataFrame({"location_id": [1], "value": [0.2]}))


def test_load_observations_parquet_and_csv(tmp_path, raw_observations):
    pq = tmp_path / "obs.parquet"
    csv = tmp_path / "obs.csv"
    raw_observations.to_parquet(pq, index=False)
    raw_observations.to_csv(csv, index=False)
    a = load_observations(pq)
    b = load_observations(csv)
    assert len(a) == len(b) == len(raw_observations)
    assert coverage_years(a) == [2015, 2016, 2017, 2018]


def test_load_observations_missing_or_empty(tmp_path):
    with pytest.raises(UpstreamDataMissing):
        load_observations(tmp_path / "nope.parquet")
    empty = tmp_path / "empty.csv"
    pd.DataFrame(columns=["location_id", "x", "y", "date", "value"]).to_csv(empty, index=False)
    with pytest.raises(UpstreamDataMissing):
        load_observations(empty)


def test_location_table(observations):
    locs = location_table(observations)
    assert len(locs) == 16
    assert locs["location_id"].is_monotonic_increasing
