#!/usr/bin/env python3
"""ndvimon.config

Shared configuration for the ndvimon pipeline stages.

One YAML file (config/pipeline.yaml) holds every knob: input/output paths,
the baseline window, model flexibility, minimum-data thresholds, uncertainty
mode, and parallelism. It is parsed once into frozen dataclasses so worker
processes receive a plain, picklable value.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Thresholds that were tuned empirically (minimum counts, edge-year basis
  reduction) are configuration, never constants in the fitting code.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml


YearRange = Tuple[int, int]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast, before any fitting starts.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Loose-value coercion
# -----------------------------------------------------------------------------
# YAML users write ranges as [2013, 2024], "2013-2024" or a single year.

def coerce_year_range(x: Any) -> Optional[YearRange]:
    """Try to coerce a year or [start, end] into an inclusive (start, end) tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, int):
        return (x, x)
    if isinstance(x, str):
        parts = [p for p in x.replace(":", "-").split("-") if p.strip()]
        try:
            nums = [int(p) for p in parts]
        except ValueError:
            return None
        x = nums
    if isinstance(x, (list, tuple)):
        if len(x) == 1:
            x = (x[0], x[0])
        if len(x) == 2:
            try:
                start, end = int(x[0]), int(x[1])
            except (TypeError, ValueError):
                return None
            if start > end:
                return None
            return (start, end)
    return None


def format_year_range(r: Optional[YearRange]) -> str:
    """Format a year range as a readable string."""
    if r is None:
        return "(all)"
    return f"{r[0]}" if r[0] == r[1] else f"{r[0]}-{r[1]}"


def _require_range(section: str, key: str, value: Any, lo: int, hi: int) -> YearRange:
    r = coerce_year_range(value)
    if r is None or r[0] < lo or r[1] > hi:
        raise ValueError(f"{section}.{key} must be an inclusive [start, end] range within {lo}..{hi}, got {value!r}")
    return r


def _require_choice(section: str, key: str, value: str, choices: Sequence[str]) -> str:
    if value not in choices:
        raise ValueError(f"{section}.{key} must be one of {list(choices)}, got {value!r}")
    return value


def _require_positive(section: str, key: str, value: Any) -> None:
    if value is None or value <= 0:
        raise ValueError(f"{section}.{key} must be > 0, got {value!r}")


# -----------------------------------------------------------------------------
# Section dataclasses
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class PathsConfig:
    observations: Path = Path("data/interim/tables/ndvi_observations.parquet")
    output_dir: Path = Path("data/processed/gam_models")
    checkpoint_dir: Path = Path("data/processed/checkpoints")


@dataclass(frozen=True)
class MaskConfig:
    valid_ids: Optional[Path] = None
    landcover_raster: Optional[Path] = None
    exclude_classes: Tuple[int, ...] = (11, 12)
    coords_crs: Optional[str] = None
    regions_gpkg: Optional[Path] = None
    regions_layer: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return any(p is not None for p in (self.valid_ids, self.landcover_raster, self.regions_gpkg))


@dataclass(frozen=True)
class BaselineConfig:
    years: YearRange = (2013, 2024)
    granularity: str = "location"
    window_days: int = 7
    basis_dim: int = 12
    spatial_basis_dim: int = 6
    min_observations: int = 20
    min_observations_doy: int = 50


@dataclass(frozen=True)
class YearConfig:
    years: Optional[YearRange] = None
    granularity: str = "location_year"
    padding_days: int = 31
    trailing_days: int = 16
    basis_dim: int = 12
    edge_basis_reduction: int = 1
    min_observations: int = 15
    min_target_year_observations: int = 10
    min_observations_doy: int = 20
    min_location_fraction: float = 0.33
    spatial_basis_dim: int = 6


@dataclass(frozen=True)
class UncertaintyConfig:
    method: str = "analytic"
    n_draws: int = 100
    confidence: float = 0.95
    seed: int = 1034
    retain_draws: bool = False


@dataclass(frozen=True)
class AnomalyConfig:
    alpha: float = 0.05


@dataclass(frozen=True)
class DerivativeConfig:
    lags: Tuple[int, ...] = (3, 7, 14, 30)
    confidence: float = 0.95
    curves: bool = False


@dataclass(frozen=True)
class ExecutionConfig:
    workers: int = 4
    reserve_cores: int = 2
    max_core_fraction: float = 0.75
    max_internal_threads: int = 1
    checkpoint_every: int = 100
    max_retries: int = 0
    days_of_year: YearRange = (1, 365)

    @property
    def doys(self) -> List[int]:
        return list(range(self.days_of_year[0], self.days_of_year[1] + 1))


@dataclass(frozen=True)
class PipelineConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    mask: MaskConfig = field(default_factory=MaskConfig)
    baseline: BaselineConfig = field(default_factory=BaselineConfig)
    year_specific: YearConfig = field(default_factory=YearConfig)
    uncertainty: UncertaintyConfig = field(default_factory=UncertaintyConfig)
    anomalies: AnomalyConfig = field(default_factory=AnomalyConfig)
    derivatives: DerivativeConfig = field(default_factory=DerivativeConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    def with_workers(self, workers: Optional[int]) -> "PipelineConfig":
        if workers is None:
            return self
        _require_positive("execution", "workers", workers)
        return replace(self, execution=replace(self.execution, workers=int(workers)))

    def validate(self) -> "PipelineConfig":
        b, y, u, e = self.baseline, self.year_specific, self.uncertainty, self.execution
        _require_choice("baseline", "granularity", b.granularity, ("location", "doy"))
        _require_choice("year_specific", "granularity", y.granularity, ("location_year", "year_doy"))
        _require_choice("uncertainty", "method", u.method, ("analytic", "posterior"))
        for section, key, value in (
            ("baseline", "basis_dim", b.basis_dim),
            ("baseline", "spatial_basis_dim", b.spatial_basis_dim),
            ("baseline", "window_days", b.window_days),
            ("year_specific", "basis_dim", y.basis_dim),
            ("year_specific", "trailing_days", y.trailing_days),
            ("uncertainty", "n_draws", u.n_draws),
            ("execution", "workers", e.workers),
            ("execution", "max_internal_threads", e.max_internal_threads),
            ("execution", "checkpoint_every", e.checkpoint_every),
        ):
            _require_positive(section, key, value)
        if y.basis_dim - y.edge_basis_reduction < 5:
            raise ValueError("year_specific.basis_dim - edge_basis_reduction must leave at least 5 basis functions")
        if not 0.0 <= y.min_location_fraction <= 1.0:
            raise ValueError("year_specific.min_location_fraction must be within [0, 1]")
        if not 0.0 < u.confidence < 1.0:
            raise ValueError("uncertainty.confidence must be within (0, 1)")
        if u.retain_draws and u.method != "posterior":
            raise ValueError("uncertainty.retain_draws requires uncertainty.method: posterior")
        if e.max_retries < 0:
            raise ValueError("execution.max_retries must be >= 0")
        return self


# -----------------------------------------------------------------------------
# Mapping -> dataclasses
# -----------------------------------------------------------------------------

def _section(cls, raw: Any, section: str, converters: Dict[str, Any]):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ValueError(f"Config section '{section}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown keys in '{section}': {unknown}")
    kwargs = {}
    for key, value in raw.items():
        conv = converters.get(key)
        kwargs[key] = conv(value) if (conv is not None and value is not None) else value
    return cls(**kwargs)


def _opt_path(x: Any) -> Optional[Path]:
    return None if x is None else Path(x)


def config_from_mapping(data: Dict[str, Any]) -> PipelineConfig:
    """Build a validated PipelineConfig from a parsed YAML mapping."""
    unknown = sorted(set(data) - {f.name for f in fields(PipelineConfig)})
    if unknown:
        raise ValueError(f"Unknown top-level config sections: {unknown}")

    cfg = PipelineConfig(
        paths=_section(PathsConfig, data.get("paths"), "paths",
                       {"observations": Path, "output_dir": Path, "checkpoint_dir": Path}),
        mask=_section(MaskConfig, data.get("mask"), "mask",
                      {"valid_ids": _opt_path, "landcover_raster": _opt_path, "regions_gpkg": _opt_path,
                       "exclude_classes": lambda v: tuple(int(c) for c in v)}),
        baseline=_section(BaselineConfig, data.get("baseline"), "baseline",
                          {"years": lambda v: _require_range("baseline", "years", v, 1900, 2200)}),
        year_specific=_section(YearConfig, data.get("year_specific"), "year_specific",
                               {"years": lambda v: _require_range("year_specific", "years", v, 1900, 2200)}),
        uncertainty=_section(UncertaintyConfig, data.get("uncertainty"), "uncertainty", {}),
        anomalies=_section(AnomalyConfig, data.get("anomalies"), "anomalies", {}),
        derivatives=_section(DerivativeConfig, data.get("derivatives"), "derivatives",
                             {"lags": lambda v: tuple(int(k) for k in v)}),
        execution=_section(ExecutionConfig, data.get("execution"), "execution",
                           {"days_of_year": lambda v: _require_range("execution", "days_of_year", v, 1, 365)}),
    )
    return cfg.validate()


def load_config(path: Path) -> PipelineConfig:
    """Load and validate the pipeline YAML."""
    return config_from_mapping(load_yaml(path))


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so the CLI and tests agree on artifact names.

DEFAULT_CONFIG_YAML = Path("config/pipeline.yaml")

BASELINE_FILE = "baseline.parquet"
BASELINE_META_FILE = "baseline.meta.json"


def year_file(output_dir: Path, year: int) -> Path:
    return output_dir / "years" / f"year_{year}.parquet"


def anomaly_file(output_dir: Path, year: int) -> Path:
    return output_dir / "anomalies" / f"anomalies_{year}.parquet"


def derivative_file(output_dir: Path, year: int) -> Path:
    return output_dir / "derivatives" / f"derivatives_{year}.parquet"


def draws_dir(output_dir: Path, year: Optional[int] = None) -> Path:
    if year is None:
        return output_dir / "draws" / "baseline"
    return output_dir / "draws" / "years" / str(year)


def draws_partition(root: Path, day_of_year: int) -> Path:
    return root / f"doy_{int(day_of_year):03d}.parquet"
