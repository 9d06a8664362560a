#!/usr/bin/env python3

from __future__ import annotations

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterio.transform import from_origin
from shapely.geometry import box

from ndvimon.config import MaskConfig
from ndvimon.mask import apply_validity_mask, valid_ids_from_landcover, valid_ids_from_regions
from ndvimon.observations import location_table


def _landcover(tmp_path, classes: np.ndarray):
    """4x4 raster with 1000 m cells whose centres sit on the synthetic location grid."""
    path = tmp_path / "nlcd.tif"
    with rasterio.open(
        path, "w", driver="GTiff", height=4, width=4, count=1, dtype="uint8",
        crs="EPSG:5070", transform=from_origin(-500.0, 3500.0, 1000.0, 1000.0), nodata=0,
    ) as dst:
        dst.write(classes.astype("uint8"), 1)
    return path


def test_landcover_drops_water_and_nodata(tmp_path, observations):
    classes = np.full((4, 4), 41)
    classes[3, 0] = 11  # row 3 is y=0, col 0 is x=0 -> location 1
    classes[0, 3] = 0   # y=3000, x=3000 -> location 16, nodata
    path = _landcover(tmp_path, classes)

    ids = valid_ids_from_landcover(location_table(observations), path)
    assert 1 not in ids
    assert 16 not in ids
    assert len(ids) == 14


def test_regions_keep_points_inside(observations):
    regions = gpd.GeoDataFrame({"region_id": ["w"]}, geometry=[box(-100, -100, 1500, 3500)], crs="EPSG:5070")
    ids = valid_ids_from_regions(location_table(observations), regions, coords_crs="EPSG:5070")
    # x in {0, 1000}
    assert ids == set(range(1, 9))


def test_apply_validity_mask_combines_sources(tmp_path, observations):
    classes = np.full((4, 4), 41)
    classes[3, 0] = 11
    path = _landcover(tmp_path, classes)
    valid = tmp_path / "valid.csv"
    pd.DataFrame({"location_id": [1, 2, 3]}).to_csv(valid, index=False)

    cfg = MaskConfig(valid_ids=valid, landcover_raster=path)
    masked = apply_validity_mask(observations, cfg)
    assert set(masked["location_id"]) == {2, 3}


def test_no_mask_is_identity(observations):
    assert apply_validity_mask(observations, MaskConfig()) is observations
