#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from ndvimon.config import config_from_mapping  # noqa: E402


def synthetic_observations(
    years=(2015, 2016, 2017, 2018),
    grid: int = 4,
    every_days: int = 4,
    noise: float = 0.02,
    seed: int = 7,
) -> pd.DataFrame:
    """Small grid of locations with a smooth seasonal cycle plus a west-east gradient."""
    rng = np.random.default_rng(seed)
    dates = pd.date_range(f"{years[0]}-01-01", f"{years[-1]}-12-31", freq=f"{every_days}D")
    rows = []
    loc = 0
    for i in range(grid):
        for j in range(grid):
            loc += 1
            x, y = 1000.0 * i, 1000.0 * j
            # stagger sampling so locations are not observed on the same days
            d = dates + pd.Timedelta(days=loc % every_days)
            doy = d.dayofyear.to_numpy()
            season = 0.45 + 0.25 * np.sin(2 * np.pi * (doy - 110) / 365.0)
            value = season + 0.02 * i - 0.01 * j + rng.normal(0.0, noise, len(d))
            rows.append(pd.DataFrame({"location_id": loc, "x": x, "y": y, "date": d, "value": value}))
    obs = pd.concat(rows, ignore_index=True)
    return obs[obs["date"].dt.year.isin(list(years))].reset_index(drop=True)


@pytest.fixture
def raw_observations() -> pd.DataFrame:
    return synthetic_observations()


@pytest.fixture
def observations(raw_observations) -> pd.DataFrame:
    from ndvimon.observations import normalize_observations

    return normalize_observations(raw_observations)


def make_config(tmp_path: Path, obs_path: Path, **sections):
    """Pipeline config rooted in tmp_path, small enough to fit in seconds."""
    data = {
        "paths": {
            "observations": str(obs_path),
            "output_dir": str(tmp_path / "out"),
            "checkpoint_dir": str(tmp_path / "ckpt"),
        },
        "baseline": {"years": [2015, 2018], "basis_dim": 9, "spatial_basis_dim": 4},
        "year_specific": {"basis_dim": 9, "spatial_basis_dim": 4},
        "execution": {"workers": 1, "checkpoint_every": 5, "days_of_year": [1, 365]},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return config_from_mapping(data)


@pytest.fixture
def obs_path(tmp_path, raw_observations) -> Path:
    path = tmp_path / "observations.parquet"
    raw_observations.to_parquet(path, index=False)
    return path


@pytest.fixture
def pipeline_cfg(tmp_path, obs_path):
    return make_config(tmp_path, obs_path)
