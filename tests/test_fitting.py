#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from ndvimon.errors import FailureKind, FitFailure
from ndvimon.fitting import (
    CURVE_DERIVATIVE_COLUMNS,
    FitResult,
    ModelSpec,
    Uncertainty,
    fit,
    se_from_bounds,
    seasonal_grid,
    spatial_grid,
)
from ndvimon.observations import location_table
from ndvimon.windows import select_padded_year, select_symmetric


def _one_location(observations, loc=1):
    return observations[observations["location_id"] == loc].reset_index(drop=True)


def test_seasonal_cyclic_recovers_curve(observations):
    sample = select_symmetric(_one_location(observations), 1, 182)
    res = fit(sample, seasonal_grid(range(1, 366)), ModelSpec.seasonal_cyclic(9))
    assert isinstance(res, FitResult)
    assert len(res) == 365
    truth = 0.45 + 0.25 * np.sin(2 * np.pi * (np.arange(1, 366) - 110) / 365.0)
    assert np.max(np.abs(res.mean - truth)) < 0.05
    assert np.all(res.se > 0)
    assert np.allclose(res.upper - res.lower, 2 * 1.959963984540054 * res.se)


def test_seasonal_cyclic_is_continuous_across_new_year(observations):
    sample = select_symmetric(_one_location(observations), 1, 182)
    res = fit(sample, seasonal_grid([364, 365, 1, 2]), ModelSpec.seasonal_cyclic(9))
    d = np.diff(res.mean)
    # day 365 -> day 1 is just another one-day step
    assert abs(d[1] - d[0]) < 1e-3
    assert abs(d[2] - d[1]) < 1e-3


def test_fit_is_deterministic(observations):
    sample = select_symmetric(_one_location(observations), 1, 182)
    spec = ModelSpec.seasonal_cyclic(9, uncertainty=Uncertainty.POSTERIOR, n_draws=50, seed=11)
    a = fit(sample, seasonal_grid(range(1, 366)), spec)
    b = fit(sample, seasonal_grid(range(1, 366)), spec)
    np.testing.assert_allclose(a.mean, b.mean)
    np.testing.assert_allclose(a.se, b.se)


def test_minimum_observation_gate_returns_insufficient_data(observations):
    sample = _one_location(observations).head(19)
    res = fit(sample, seasonal_grid(range(1, 366)), ModelSpec.seasonal_cyclic(9, min_observations=20))
    assert isinstance(res, FitFailure)
    assert res.kind is FailureKind.INSUFFICIENT_DATA
    assert res.n_obs == 19


def test_empty_window_is_insufficient_data(observations):
    res = fit(observations.iloc[:0], seasonal_grid([1]), ModelSpec.seasonal_cyclic())
    assert isinstance(res, FitFailure)
    assert res.kind is FailureKind.INSUFFICIENT_DATA


def test_location_fraction_gate(observations):
    locations = location_table(observations)
    sample = select_symmetric(observations, 180, 7)
    sample = sample[sample["location_id"] <= 3].assign(norm=0.5)
    grid = spatial_grid(locations, np.full(len(locations), 0.5))
    spec = ModelSpec.spatial(4, covariate="norm", min_observations=5, min_location_fraction=0.33)
    res = fit(sample, grid, spec)
    assert isinstance(res, FitFailure)
    assert res.kind is FailureKind.INSUFFICIENT_DATA


def test_spatial_with_covariate_predicts_every_location(observations):
    locations = location_table(observations)
    sample = select_symmetric(observations, 180, 7)
    sample = sample.assign(norm=0.45 + 0.25 * np.sin(2 * np.pi * (sample["day_of_year"] - 110) / 365.0))
    grid = spatial_grid(locations, np.full(len(locations), 0.7))
    res = fit(sample, grid, ModelSpec.spatial(4, covariate="norm", min_observations=20))
    assert isinstance(res, FitResult)
    assert sorted(res.target_id) == sorted(locations["location_id"])
    assert "covariate_coef" in res.stats
    # west-east gradient survives
    by_loc = dict(zip(res.target_id, res.mean))
    assert by_loc[16] > by_loc[1]


def test_grid_rows_without_covariate_are_not_predicted(observations):
    locations = location_table(observations)
    sample = select_symmetric(observations, 180, 7).assign(norm=0.6)
    cov = np.full(len(locations), 0.6)
    cov[0] = np.nan
    res = fit(sample, spatial_grid(locations, cov), ModelSpec.spatial(4, covariate="norm", min_observations=20))
    assert len(res) == len(locations) - 1


def test_padded_fit_first_year_without_prior_padding(observations):
    sample = select_padded_year(_one_location(observations), 2015, 31)
    assert sample["day_offset"].min() >= 1
    res = fit(sample, seasonal_grid(range(1, 366), column="day_offset"), ModelSpec.seasonal_padded(8))
    assert isinstance(res, FitResult)
    assert len(res) == 365


def test_posterior_draws_shape_and_bounds(observations):
    sample = select_symmetric(_one_location(observations), 1, 182)
    spec = ModelSpec.seasonal_cyclic(9, uncertainty=Uncertainty.POSTERIOR, n_draws=40, keep_draws=True)
    res = fit(sample, seasonal_grid(range(1, 11)), spec)
    assert res.draws.shape == (10, 40)
    assert np.all(res.lower <= res.mean) and np.all(res.mean <= res.upper)
    frame = res.draws_frame("day_of_year")
    assert list(frame.columns[:2]) == ["day_of_year", "draw_000"]


def test_constant_response_does_not_crash():
    sample = pd.DataFrame({"day_of_year": np.arange(1, 366, 3), "value": 0.5})
    res = fit(sample, seasonal_grid([1, 100]), ModelSpec.seasonal_cyclic(9))
    assert isinstance(res, (FitResult, FitFailure))
    if isinstance(res, FitFailure):
        assert res.kind is FailureKind.CONVERGENCE


def test_se_from_bounds():
    assert se_from_bounds(0.5 - 1.959963984540054 * 0.1, 0.5 + 1.959963984540054 * 0.1) == pytest.approx(0.1)


def _true_slope(days):
    days = np.asarray(days, dtype=float)
    return 0.25 * (2 * np.pi / 365.0) * np.cos(2 * np.pi * (days - 110) / 365.0)


def test_cyclic_curve_derivative_tracks_true_slope(observations):
    sample = select_symmetric(_one_location(observations), 1, 182)
    days = np.arange(1, 366)
    spec = ModelSpec.seasonal_cyclic(9, derivative=True, n_draws=200)
    res = fit(sample, seasonal_grid(days), spec)
    assert np.max(np.abs(res.deriv_mean - _true_slope(days))) < 1e-3
    assert np.all(res.deriv_lower <= res.deriv_mean) and np.all(res.deriv_mean <= res.deriv_upper)

    frame = res.to_frame("day_of_year").set_index("day_of_year")
    assert list(frame.columns[-4:]) == CURVE_DERIVATIVE_COLUMNS
    # steepest green-up and senescence are clearly non-zero
    assert frame.loc[110, "deriv_sig"] and frame.loc[110, "deriv_mean"] > 0
    assert frame.loc[292, "deriv_sig"] and frame.loc[292, "deriv_mean"] < 0
    # slope is continuous across the new year
    assert abs(frame.loc[365, "deriv_mean"] - frame.loc[1, "deriv_mean"]) < 2e-4


def test_curve_derivative_does_not_change_predictions(observations):
    sample = select_symmetric(_one_location(observations), 1, 182)
    plain = fit(sample, seasonal_grid(range(1, 366)), ModelSpec.seasonal_cyclic(9))
    with_slope = fit(sample, seasonal_grid(range(1, 366)), ModelSpec.seasonal_cyclic(9, derivative=True))
    np.testing.assert_allclose(plain.mean, with_slope.mean)
    np.testing.assert_allclose(plain.se, with_slope.se)
    assert plain.deriv_mean is None
    assert "deriv_mean" not in plain.to_frame().columns


def test_padded_curve_derivative_sign(observations):
    sample = select_padded_year(_one_location(observations), 2016, 31)
    days = np.arange(1, 366)
    res = fit(sample, seasonal_grid(days, column="day_offset"), ModelSpec.seasonal_padded(9, derivative=True))
    assert isinstance(res, FitResult)
    assert np.corrcoef(res.deriv_mean, _true_slope(days))[0, 1] > 0.9
    assert res.deriv_mean[109] > 0 and res.deriv_lower[109] > 0


def test_spatial_fit_has_no_curve_derivative(observations):
    locations = location_table(observations)
    sample = select_symmetric(observations, 180, 7)
    res = fit(sample, spatial_grid(locations), ModelSpec.spatial(4, min_observations=20, derivative=True))
    assert isinstance(res, FitResult)
    assert res.deriv_mean is None
