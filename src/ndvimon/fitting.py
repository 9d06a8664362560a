#!/usr/bin/env python3
"""ndvimon.fitting

Smooth regression fitter: one stateless call turns a sample window into
predictions (mean + uncertainty) on a target grid.

    fit(sample, grid, spec) -> FitResult | FitFailure

The model family is selected by `ModelSpec.kind` (a tagged variant, dispatched
through a table of design builders rather than subclasses):

- seasonal_cyclic: value ~ f(day_of_year), f periodic over 365 days.
  Intercept + Fourier harmonics with a k^4 roughness penalty, so value and all
  derivatives agree across the Dec 31 / Jan 1 seam.
- seasonal_padded: value ~ f(day_offset), non-cyclic cubic P-spline for a
  single year padded with days from the adjacent years.
- spatial: value ~ f(x, y) [+ b * covariate], tensor-product cubic P-spline
  over the coordinates; the optional covariate (the baseline prediction for
  that day) enters as an unpenalized linear term.

All three are penalized least squares. The smoothing parameter is chosen by
minimizing GCV over log10(lambda); standard errors come from the Bayesian
covariance Vb = sigma^2 (X'X + lambda S)^-1. Uncertainty is reported either
analytically (delta method) or from multivariate-normal coefficient draws,
both summarized into the same mean/se/lower/upper shape.

Seasonal models can also report the curve's first derivative (slope per
day): a central finite difference of the prediction basis projected through
the same coefficient draws, with a `deriv_sig` flag where the interval
excludes zero. Used to time green-up and senescence.

Required deps: numpy, scipy, pandas.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.interpolate import BSpline
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.optimize import minimize_scalar
from scipy.stats import norm

from ndvimon.errors import FailureKind, FitFailure

CYCLE_DAYS = 365.0
LOG_LAMBDA_BOUNDS = (-8.0, 8.0)
SLOPE_EPS = 1e-3

CURVE_DERIVATIVE_COLUMNS = ["deriv_mean", "deriv_lower", "deriv_upper", "deriv_sig"]


# -----------------------------------------------------------------------------
# Model definitions
# -----------------------------------------------------------------------------

class ModelKind(str, Enum):
    SEASONAL_CYCLIC = "seasonal_cyclic"
    SEASONAL_PADDED = "seasonal_padded"
    SPATIAL = "spatial"


class Uncertainty(str, Enum):
    ANALYTIC = "analytic"
    POSTERIOR = "posterior"


@dataclass(frozen=True)
class ModelSpec:
    """What to fit and how to report it.

    basis_dim is the number of basis functions for seasonal models and the
    number per axis for the spatial model.
    """

    kind: ModelKind
    basis_dim: int = 12
    covariate: Optional[str] = None
    min_observations: int = 20
    min_location_fraction: float = 0.0
    uncertainty: Uncertainty = Uncertainty.ANALYTIC
    n_draws: int = 100
    confidence: float = 0.95
    seed: int = 1034
    keep_draws: bool = False
    derivative: bool = False
    max_iter: int = 500

    @property
    def predictors(self) -> Tuple[str, ...]:
        if self.kind is ModelKind.SEASONAL_CYCLIC:
            return ("day_of_year",)
        if self.kind is ModelKind.SEASONAL_PADDED:
            return ("day_offset",)
        return ("x", "y") + ((self.covariate,) if self.covariate else ())

    @classmethod
    def seasonal_cyclic(cls, basis_dim: int = 12, **kw) -> "ModelSpec":
        return cls(kind=ModelKind.SEASONAL_CYCLIC, basis_dim=basis_dim, **kw)

    @classmethod
    def seasonal_padded(cls, basis_dim: int = 12, **kw) -> "ModelSpec":
        return cls(kind=ModelKind.SEASONAL_PADDED, basis_dim=basis_dim, **kw)

    @classmethod
    def spatial(cls, basis_dim: int = 6, covariate: Optional[str] = None, **kw) -> "ModelSpec":
        return cls(kind=ModelKind.SPATIAL, basis_dim=basis_dim, covariate=covariate, **kw)


@dataclass(frozen=True)
class FitResult:
    """Predictions for every target in the grid that could be predicted."""

    target_id: np.ndarray
    mean: np.ndarray
    se: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    draws: Optional[np.ndarray] = None
    stats: Dict[str, float] = field(default_factory=dict)
    deriv_mean: Optional[np.ndarray] = None
    deriv_lower: Optional[np.ndarray] = None
    deriv_upper: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.target_id)

    def to_frame(self, id_name: str = "target_id") -> pd.DataFrame:
        df = pd.DataFrame(
            {id_name: self.target_id, "mean": self.mean, "se": self.se,
             "lower": self.lower, "upper": self.upper}
        )
        if self.deriv_mean is not None:
            df["deriv_mean"] = self.deriv_mean
            df["deriv_lower"] = self.deriv_lower
            df["deriv_upper"] = self.deriv_upper
            # interval excludes zero
            df["deriv_sig"] = self.deriv_lower * self.deriv_upper > 0
        return df

    def draws_frame(self, id_name: str = "target_id") -> Optional[pd.DataFrame]:
        if self.draws is None:
            return None
        cols = {f"draw_{i:03d}": self.draws[:, i] for i in range(self.draws.shape[1])}
        return pd.DataFrame({id_name: self.target_id, **cols})


FitOutcome = Union[FitResult, FitFailure]


def z_value(confidence: float) -> float:
    return float(norm.ppf(0.5 + confidence / 2.0))


def se_from_bounds(lower, upper, confidence: float = 0.95):
    """se = (upper - lower) / (2 * z_{1 - alpha/2})."""
    return (np.asarray(upper) - np.asarray(lower)) / (2.0 * z_value(confidence))


# -----------------------------------------------------------------------------
# Basis construction
# -----------------------------------------------------------------------------

def _fourier_basis(t: np.ndarray, n_harmonics: int) -> np.ndarray:
    w = 2.0 * np.pi * np.asarray(t, dtype=float) / CYCLE_DAYS
    cols = [np.ones_like(w)]
    for k in range(1, n_harmonics + 1):
        cols.append(np.cos(k * w))
        cols.append(np.sin(k * w))
    return np.column_stack(cols)


def _fourier_penalty(n_harmonics: int) -> np.ndarray:
    weights = [0.0]
    for k in range(1, n_harmonics + 1):
        weights += [float(k) ** 4, float(k) ** 4]
    return np.diag(weights)


def _bspline_basis(x: np.ndarray, lo: float, hi: float, n_basis: int, degree: int = 3) -> np.ndarray:
    """Cubic B-spline basis on equally spaced knots over [lo, hi]."""
    nseg = max(1, n_basis - degree)
    h = (hi - lo) / nseg
    knots = lo + h * np.arange(-degree, nseg + degree + 1)
    x = np.clip(np.asarray(x, dtype=float), knots[degree], knots[-degree - 1])
    return BSpline.design_matrix(x, knots, degree).toarray()


def _difference_penalty(n_basis: int, order: int = 2) -> np.ndarray:
    d = np.diff(np.eye(n_basis), n=order, axis=0)
    return d.T @ d


def _range(*arrays: np.ndarray) -> Tuple[float, float]:
    lo = float(min(np.min(a) for a in arrays))
    hi = float(max(np.max(a) for a in arrays))
    if hi - lo < 1e-9:
        lo, hi = lo - 0.5, hi + 0.5
    return lo, hi


def _slope_basis(
    basis: Callable[[np.ndarray], np.ndarray],
    t: np.ndarray,
    lo: float = -np.inf,
    hi: float = np.inf,
    eps: float = SLOPE_EPS,
) -> np.ndarray:
    """d basis / dt by central differences, one-sided at the ends of [lo, hi]."""
    t = np.asarray(t, dtype=float)
    a = np.maximum(t - eps, lo)
    b = np.minimum(t + eps, hi)
    return (basis(b) - basis(a)) / (b - a)[:, None]


# (X, Xp, S, slope): slope maps the grid's predictor to d Xp / dt, None for spatial fits
Slope = Optional[Callable[[np.ndarray], np.ndarray]]
Design = Tuple[np.ndarray, np.ndarray, np.ndarray, Slope]


def _design_seasonal_cyclic(spec: ModelSpec, sample: pd.DataFrame, grid: pd.DataFrame) -> Design:
    n_harm = max(1, (spec.basis_dim - 1) // 2)
    basis = partial(_fourier_basis, n_harmonics=n_harm)
    X = basis(sample["day_of_year"].to_numpy())
    Xp = basis(grid["day_of_year"].to_numpy())
    return X, Xp, _fourier_penalty(n_harm), partial(_slope_basis, basis)


def _design_seasonal_padded(spec: ModelSpec, sample: pd.DataFrame, grid: pd.DataFrame) -> Design:
    t, tp = sample["day_offset"].to_numpy(), grid["day_offset"].to_numpy()
    lo, hi = _range(t, tp)
    basis = partial(_bspline_basis, lo=lo, hi=hi, n_basis=spec.basis_dim)
    X = basis(t)
    Xp = basis(tp)
    return X, Xp, _difference_penalty(X.shape[1]), partial(_slope_basis, basis, lo=lo, hi=hi)


def _tensor(bx: np.ndarray, by: np.ndarray) -> np.ndarray:
    return (bx[:, :, None] * by[:, None, :]).reshape(bx.shape[0], bx.shape[1] * by.shape[1])


def _design_spatial(spec: ModelSpec, sample: pd.DataFrame, grid: pd.DataFrame) -> Design:
    xs, ys = sample["x"].to_numpy(), sample["y"].to_numpy()
    gx, gy = grid["x"].to_numpy(), grid["y"].to_numpy()
    xlo, xhi = _range(xs, gx)
    ylo, yhi = _range(ys, gy)
    k = spec.basis_dim

    bx, by = _bspline_basis(xs, xlo, xhi, k), _bspline_basis(ys, ylo, yhi, k)
    X = _tensor(bx, by)
    Xp = _tensor(_bspline_basis(gx, xlo, xhi, k), _bspline_basis(gy, ylo, yhi, k))
    ka, kb = bx.shape[1], by.shape[1]
    S = np.kron(_difference_penalty(ka), np.eye(kb)) + np.kron(np.eye(ka), _difference_penalty(kb))

    if spec.covariate:
        X = np.column_stack([X, sample[spec.covariate].to_numpy(dtype=float)])
        Xp = np.column_stack([Xp, grid[spec.covariate].to_numpy(dtype=float)])
        S = np.pad(S, ((0, 1), (0, 1)))
    return X, Xp, S, None


_DESIGNS: Dict[ModelKind, Callable[[ModelSpec, pd.DataFrame, pd.DataFrame], Design]] = {
    ModelKind.SEASONAL_CYCLIC: _design_seasonal_cyclic,
    ModelKind.SEASONAL_PADDED: _design_seasonal_padded,
    ModelKind.SPATIAL: _design_spatial,
}


# -----------------------------------------------------------------------------
# Penalized least squares with GCV smoothing selection
# -----------------------------------------------------------------------------

class _NotConverged(Exception):
    pass


@dataclass(frozen=True)
class _Solution:
    beta: np.ndarray
    vb: np.ndarray
    edf: float
    rss: float
    log_lambda: float


def _penalized_fit(X: np.ndarray, y: np.ndarray, S: np.ndarray, max_iter: int) -> _Solution:
    n, p = X.shape
    XtX = X.T @ X
    Xty = X.T @ y

    # Penalty scaled to the data so the lambda search range is comparable across models
    tr_s = float(np.trace(S))
    tr_x = float(np.trace(XtX)) or 1.0
    scale = tr_x / tr_s if tr_s > 0 else 1.0
    ridge = 1e-9 * (tr_x / p) * np.eye(p)

    def solve(log_lam: float):
        H = XtX + (10.0 ** log_lam) * scale * S + ridge
        c = cho_factor(H, check_finite=False)
        beta = cho_solve(c, Xty, check_finite=False)
        edf = float(np.trace(cho_solve(c, XtX, check_finite=False)))
        resid = y - X @ beta
        return c, beta, edf, float(resid @ resid)

    def gcv(log_lam: float) -> float:
        try:
            _, _, edf, rss = solve(log_lam)
        except LinAlgError:
            return np.inf
        dof = n - edf
        if dof <= 0 or not np.isfinite(rss):
            return np.inf
        return n * rss / dof ** 2

    res = minimize_scalar(gcv, bounds=LOG_LAMBDA_BOUNDS, method="bounded",
                          options={"xatol": 1e-2, "maxiter": max_iter})
    if not res.success or not np.isfinite(res.fun):
        raise _NotConverged(f"GCV search did not converge ({res.message})")

    try:
        c, beta, edf, rss = solve(float(res.x))
    except LinAlgError as e:
        raise _NotConverged(f"penalized system is singular: {e}") from e
    sigma2 = rss / (n - edf)
    vb = sigma2 * cho_solve(c, np.eye(p), check_finite=False)
    if not (np.all(np.isfinite(beta)) and np.all(np.isfinite(vb))):
        raise _NotConverged("non-finite coefficients")
    return _Solution(beta=beta, vb=vb, edf=edf, rss=rss, log_lambda=float(res.x))


# -----------------------------------------------------------------------------
# Public entry point
# -----------------------------------------------------------------------------

def fit(sample: pd.DataFrame, grid: pd.DataFrame, spec: ModelSpec) -> FitOutcome:
    """Fit `spec` to `sample` and predict at every row of `grid`.

    Args:
        sample: observations with a `value` column and the spec's predictor columns
            (plus `location_id` when min_location_fraction is used).
        grid: prediction targets with a `target_id` column and the predictor columns.
            Grid rows with a missing predictor (e.g. no baseline for a location) are
            not predicted.
        spec: model variant, thresholds and uncertainty mode.

    Returns:
        FitResult on success, otherwise FitFailure with kind InsufficientData
        or ConvergenceFailure. Never raises for data-dependent problems.
    """
    cols = list(spec.predictors)
    sample = sample.dropna(subset=cols + ["value"])
    grid = grid.dropna(subset=cols)
    n = len(sample)

    if n < spec.min_observations:
        return FitFailure(FailureKind.INSUFFICIENT_DATA, f"{n} observations < {spec.min_observations}", n)
    if grid.empty:
        return FitFailure(FailureKind.INSUFFICIENT_DATA, "empty target grid", n)
    if spec.min_location_fraction > 0:
        have = sample["location_id"].nunique()
        total = grid["target_id"].nunique()
        if have < spec.min_location_fraction * total:
            return FitFailure(
                FailureKind.INSUFFICIENT_DATA,
                f"{have}/{total} locations with data < {spec.min_location_fraction:.0%}", n,
            )

    X, Xp, S, slope = _DESIGNS[spec.kind](spec, sample, grid)
    y = sample["value"].to_numpy(dtype=float)

    try:
        sol = _penalized_fit(X, y, S, spec.max_iter)
    except _NotConverged as e:
        return FitFailure(FailureKind.CONVERGENCE, str(e), n)

    z = z_value(spec.confidence)
    alpha = 1.0 - spec.confidence
    with_slope = spec.derivative and slope is not None
    coefs = None
    if spec.uncertainty is Uncertainty.POSTERIOR or with_slope:
        rng = np.random.default_rng(spec.seed)
        coefs = rng.multivariate_normal(sol.beta, sol.vb, size=spec.n_draws, method="eigh")

    draws = None
    if spec.uncertainty is Uncertainty.POSTERIOR:
        sims = Xp @ coefs.T
        mean = sims.mean(axis=1)
        lower = np.quantile(sims, alpha / 2.0, axis=1)
        upper = np.quantile(sims, 1.0 - alpha / 2.0, axis=1)
        se = se_from_bounds(lower, upper, spec.confidence)
        if spec.keep_draws:
            draws = sims
    else:
        mean = Xp @ sol.beta
        se = np.sqrt(np.clip(np.einsum("ij,jk,ik->i", Xp, sol.vb, Xp), 0.0, None))
        lower, upper = mean - z * se, mean + z * se

    if not (np.all(np.isfinite(mean)) and np.all(np.isfinite(se))):
        return FitFailure(FailureKind.CONVERGENCE, "non-finite predictions", n)

    deriv = {}
    if with_slope:
        d_sims = slope(grid[spec.predictors[0]].to_numpy(dtype=float)) @ coefs.T
        deriv = {
            "deriv_mean": d_sims.mean(axis=1),
            "deriv_lower": np.quantile(d_sims, alpha / 2.0, axis=1),
            "deriv_upper": np.quantile(d_sims, 1.0 - alpha / 2.0, axis=1),
        }
        if not all(np.all(np.isfinite(v)) for v in deriv.values()):
            return FitFailure(FailureKind.CONVERGENCE, "non-finite curve derivative", n)

    tss = float(np.sum((y - y.mean()) ** 2))
    stats = {
        "n_obs": float(n),
        "edf": sol.edf,
        "log_lambda": sol.log_lambda,
        "r2": 1.0 - sol.rss / tss if tss > 0 else float("nan"),
        "rmse": float(np.sqrt(sol.rss / n)),
    }
    if "location_id" in sample.columns:
        stats["n_locations"] = float(sample["location_id"].nunique())
    if spec.covariate:
        stats["covariate_coef"] = float(sol.beta[-1])

    return FitResult(
        target_id=grid["target_id"].to_numpy(),
        mean=mean, se=se, lower=lower, upper=upper,
        draws=draws, stats=stats, **deriv,
    )


# -----------------------------------------------------------------------------
# Grid helpers
# -----------------------------------------------------------------------------

def seasonal_grid(days, column: str = "day_of_year") -> pd.DataFrame:
    days = np.asarray(list(days), dtype="int64")
    return pd.DataFrame({"target_id": days, column: days})


def spatial_grid(locations: pd.DataFrame, covariate: Optional[pd.Series] = None, name: str = "norm") -> pd.DataFrame:
    grid = pd.DataFrame(
        {"target_id": locations["location_id"].to_numpy(),
         "x": locations["x"].to_numpy(dtype=float),
         "y": locations["y"].to_numpy(dtype=float)}
    )
    if covariate is not None:
        grid[name] = np.asarray(covariate, dtype=float)
    return grid
