#!/usr/bin/env python3

from __future__ import annotations

from pathlib import Path

import pytest

from ndvimon.config import (
    PipelineConfig,
    coerce_year_range,
    config_from_mapping,
    format_year_range,
    load_config,
    load_yaml,
    year_file,
)

ROOT = Path(__file__).resolve().parents[1]


def test_coerce_year_range_accepts_loose_forms():
    assert coerce_year_range([2013, 2024]) == (2013, 2024)
    assert coerce_year_range("2013-2024") == (2013, 2024)
    assert coerce_year_range(2020) == (2020, 2020)
    assert coerce_year_range([2019]) == (2019, 2019)


def test_coerce_year_range_rejects_bad_input():
    assert coerce_year_range(None) is None
    assert coerce_year_range([2024, 2013]) is None
    assert coerce_year_range("abc") is None
    assert coerce_year_range([1, 2, 3]) is None


def test_format_year_range():
    assert format_year_range(None) == "(all)"
    assert format_year_range((2020, 2020)) == "2020"
    assert format_year_range((2013, 2024)) == "2013-2024"


def test_shipped_config_loads():
    cfg = load_config(ROOT / "config" / "pipeline.yaml")
    assert cfg.baseline.years == (2013, 2024)
    assert cfg.execution.max_internal_threads == 1
    assert cfg.derivatives.lags == (3, 7, 14, 30)
    assert len(cfg.execution.doys) == 365


def test_defaults_validate():
    assert PipelineConfig().validate().baseline.window_days == 7


def test_unknown_keys_rejected():
    with pytest.raises(ValueError):
        config_from_mapping({"baseline": {"window": 7}})
    with pytest.raises(ValueError):
        config_from_mapping({"fitting": {}})


@pytest.mark.parametrize(
    "data",
    [
        {"baseline": {"granularity": "pixel"}},
        {"uncertainty": {"method": "bootstrap"}},
        {"uncertainty": {"retain_draws": True}},
        {"year_specific": {"basis_dim": 5, "edge_basis_reduction": 1}},
        {"year_specific": {"min_location_fraction": 1.5}},
        {"execution": {"workers": 0}},
        {"execution": {"days_of_year": [0, 365]}},
        {"baseline": {"years": [2024, 2013]}},
    ],
)
def test_invalid_values_raise(data):
    with pytest.raises(ValueError):
        config_from_mapping(data)


def test_with_workers_override():
    cfg = PipelineConfig().with_workers(12)
    assert cfg.execution.workers == 12
    assert PipelineConfig().with_workers(None).execution.workers == 4


def test_load_yaml_fails_fast(tmp_path):
    with pytest.raises(SystemExit):
        load_yaml(tmp_path / "missing.yaml")
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        load_yaml(p)


def test_year_file_layout(tmp_path):
    assert year_file(tmp_path, 2019) == tmp_path / "years" / "year_2019.parquet"
