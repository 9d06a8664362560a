#!/usr/bin/env python3
"""ndvimon.mask

Per-location validity mask, applied once before any fitting begins.

Three independent sources can be combined (a location must pass all of the
ones that are configured):
1. An explicit id list (any table with a location_id column)
2. A landcover raster (e.g. NLCD reprojected to the analysis grid); locations
   whose cell falls in an excluded class (open water, ice) or on nodata are dropped
3. Region polygons (e.g. the ecoregions GeoPackage); locations outside every
   polygon are dropped

Required deps: rasterio (raster sampling), geopandas (point-in-polygon).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence, Set, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterio.warp import transform as warp_transform

from ndvimon.config import MaskConfig
from ndvimon.errors import UpstreamDataMissing
from ndvimon.observations import location_table

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Individual mask sources
# -----------------------------------------------------------------------------

def valid_ids_from_table(path: Path) -> Set[int]:
    """Read a table (parquet/csv) with a location_id column."""
    if not path.exists():
        raise UpstreamDataMissing(f"Valid-location table not found: {path}")
    if path.suffix.lower() in (".parquet", ".pq"):
        df = pd.read_parquet(path)
    else:
        df = pd.read_csv(path)
    col = "location_id" if "location_id" in df.columns else "pixel_id"
    if col not in df.columns:
        raise UpstreamDataMissing(f"{path} has no location_id column")
    return set(int(v) for v in df[col].dropna().unique())


def valid_ids_from_landcover(
    locations: pd.DataFrame,
    raster_path: Path,
    *,
    exclude_classes: Sequence[int] = (11, 12),
    coords_crs: Optional[str] = None,
) -> Set[int]:
    """Sample a landcover raster at each location and keep non-excluded classes.

    Parameters
    ----------
    locations : DataFrame
        location_id, x, y
    raster_path : Path
        Single-band categorical raster.
    exclude_classes : sequence of int
        Class codes to drop (NLCD: 11 open water, 12 perennial ice/snow).
    coords_crs : str | None
        CRS of x/y. If given and different from the raster CRS, coordinates are
        transformed before sampling. If None, x/y are assumed to be in the raster CRS.
    """
    if not raster_path.exists():
        raise UpstreamDataMissing(f"Landcover raster not found: {raster_path}")

    xs = locations["x"].to_numpy(dtype=float)
    ys = locations["y"].to_numpy(dtype=float)

    with rasterio.open(raster_path) as src:
        if coords_crs is not None and src.crs is not None and str(src.crs).upper() != str(coords_crs).upper():
            xs_t, ys_t = warp_transform(coords_crs, src.crs, list(xs), list(ys))
            xs, ys = np.asarray(xs_t), np.asarray(ys_t)

        # Boundless sampling: points outside the raster come back as nodata/0
        values = np.array([v[0] for v in src.sample(zip(xs, ys), indexes=1)])
        nodata = src.nodata

    keep = ~np.isin(values, np.asarray(list(exclude_classes)))
    if nodata is not None:
        keep &= values != nodata

    ids = locations["location_id"].to_numpy()[keep]
    logger.info("Landcover mask keeps %d of %d locations", len(ids), len(locations))
    return set(int(i) for i in ids)


def valid_ids_from_regions(
    locations: pd.DataFrame,
    regions: Union[Path, gpd.GeoDataFrame],
    *,
    layer: Optional[str] = None,
    coords_crs: Optional[str] = None,
) -> Set[int]:
    """Keep locations whose point falls inside any region polygon."""
    if isinstance(regions, Path):
        if not regions.exists():
            raise UpstreamDataMissing(f"Regions GeoPackage not found: {regions}")
        regions = gpd.read_file(regions, layer=layer) if layer else gpd.read_file(regions)

    points = gpd.GeoDataFrame(
        locations[["location_id"]].copy(),
        geometry=gpd.points_from_xy(locations["x"], locations["y"]),
        crs=coords_crs or regions.crs,
    )
    if regions.crs is not None and points.crs != regions.crs:
        points = points.to_crs(regions.crs)

    joined = gpd.sjoin(points, regions[["geometry"]], how="inner", predicate="within")
    ids = set(int(i) for i in joined["location_id"].unique())
    logger.info("Region mask keeps %d of %d locations", len(ids), len(locations))
    return ids


# -----------------------------------------------------------------------------
# Combined mask
# -----------------------------------------------------------------------------

def _intersect(sets: Iterable[Set[int]]) -> Optional[Set[int]]:
    out: Optional[Set[int]] = None
    for s in sets:
        out = set(s) if out is None else (out & s)
    return out


def apply_validity_mask(
    obs: pd.DataFrame,
    cfg: MaskConfig,
    *,
    regions: Optional[gpd.GeoDataFrame] = None,
) -> pd.DataFrame:
    """Drop observations at locations that fail any configured mask.

    Returns `obs` unchanged when no mask source is configured.
    """
    if not cfg.enabled and regions is None:
        return obs

    locations = location_table(obs)
    sources = []
    if cfg.valid_ids is not None:
        sources.append(valid_ids_from_table(cfg.valid_ids))
    if cfg.landcover_raster is not None:
        sources.append(
            valid_ids_from_landcover(
                locations, cfg.landcover_raster,
                exclude_classes=cfg.exclude_classes, coords_crs=cfg.coords_crs,
            )
        )
    if regions is not None or cfg.regions_gpkg is not None:
        sources.append(
            valid_ids_from_regions(
                locations, regions if regions is not None else cfg.regions_gpkg,
                layer=cfg.regions_layer, coords_crs=cfg.coords_crs,
            )
        )

    valid = _intersect(sources) or set()
    out = obs[obs["location_id"].isin(valid)].reset_index(drop=True)
    logger.info(
        "Validity mask: %d of %d locations kept (%d observations)",
        out["location_id"].nunique(), len(locations), len(out),
    )
    return out
