#!/usr/bin/env python3

from __future__ import annotations

import time

import pandas as pd
import pytest

from ndvimon.checkpoint import (
    CheckpointStore,
    ResultArena,
    UnitOutcome,
    UnitStatus,
    make_unit_id,
    parse_unit_id,
)
from ndvimon.errors import CheckpointWriteFailure, FailureKind, FitFailure, UpstreamDataMissing


def _ok(unit_id: str, loc: int) -> UnitOutcome:
    records = pd.DataFrame({"location_id": [loc], "day_of_year": [1], "norm_mean": [0.5], "norm_se": [0.01]})
    return UnitOutcome(unit_id, records=records, stats={"n_obs": 30.0})


def _failed(unit_id: str) -> UnitOutcome:
    return UnitOutcome(unit_id, failure=FitFailure(FailureKind.INSUFFICIENT_DATA, "3 < 20", 3))


def test_unit_ids_round_trip_and_sort():
    assert make_unit_id(loc=17) == "loc:17"
    assert make_unit_id(year=2019, doy=5) == "year:2019:doy:005"
    assert parse_unit_id("loc:17:year:2019") == {"loc": 17, "year": 2019}
    assert sorted(make_unit_id(doy=d) for d in (100, 9, 10)) == ["doy:009", "doy:010", "doy:100"]
    with pytest.raises(ValueError):
        parse_unit_id("loc:17:year")


def test_shard_write_and_resume_queries(tmp_path):
    store = CheckpointStore(tmp_path / "baseline")
    assert not store.exists()
    store.write_shard([_ok("loc:1", 1), _failed("loc:2")])

    assert store.exists()
    assert store.completed_units() == {"loc:1", "loc:2"}
    assert store.status("loc:1") is UnitStatus.COMPLETE
    assert store.status("loc:3") is UnitStatus.PENDING
    assert store.remaining(["loc:1", "loc:2", "loc:3", "loc:4"]) == ["loc:3", "loc:4"]

    records = store.load_records()
    assert records["location_id"].tolist() == [1]
    entry = store.outcomes()["loc:2"]
    assert entry["ok"] is False
    assert FitFailure.from_dict(entry["failure"]).kind is FailureKind.INSUFFICIENT_DATA


def test_shards_are_independent(tmp_path):
    store = CheckpointStore(tmp_path / "years" / "2019")
    first = store.write_shard([_ok("loc:1", 1)])
    store.write_shard([_ok("loc:2", 2)])

    first.unlink()  # losing one shard only re-queues its own units
    assert store.remaining(["loc:1", "loc:2"]) == ["loc:1"]
    assert store.load_records()["location_id"].tolist() == [2]


def test_shard_without_manifest_is_ignored(tmp_path):
    store = CheckpointStore(tmp_path / "baseline")
    path = store.write_shard([_ok("loc:1", 1)])
    path.unlink()
    assert store.completed_units() == set()
    assert store.load_records() is None


def test_unreadable_manifest_is_fatal(tmp_path):
    store = CheckpointStore(tmp_path / "baseline")
    store.root.mkdir(parents=True)
    (store.root / "shard-deadbeef.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(UpstreamDataMissing):
        store.completed_units()


def test_write_failure_raises_checkpoint_write_failure(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x", encoding="utf-8")
    store = CheckpointStore(blocker / "baseline")
    with pytest.raises(CheckpointWriteFailure):
        store.write_shard([_ok("loc:1", 1)])


def test_clear_removes_partition(tmp_path):
    store = CheckpointStore(tmp_path / "baseline")
    store.write_shard([_ok("loc:1", 1)])
    store.clear()
    assert not store.root.exists()
    assert store.completed_units() == set()


def test_arena_append_keeps_objects_and_drains():
    arena = ResultArena()
    outcomes = [_ok(f"loc:{i}", i) for i in range(5)]
    for o in outcomes:
        arena.append(o)
    assert len(arena) == 5
    assert all(a is b for a, b in zip(arena, outcomes))
    assert arena.drain() == outcomes
    assert len(arena) == 0


def _time_appends(k: int, outcome: UnitOutcome) -> float:
    arena = ResultArena()
    start = time.perf_counter()
    for _ in range(k):
        arena.append(outcome)
    return time.perf_counter() - start


def test_arena_append_scales_linearly():
    outcome = _ok("loc:1", 1)
    small = min(_time_appends(20_000, outcome) for _ in range(3))
    large = min(_time_appends(200_000, outcome) for _ in range(3))
    # 10x the work; a quadratic accumulator would be ~100x
    assert large < 40 * max(small, 1e-6)


def test_from_fit_failure_and_key_order():
    failure = FitFailure(FailureKind.CONVERGENCE, "no", 40)
    out = UnitOutcome.from_fit("loc:1", failure, "day_of_year", "norm", location_id=1)
    assert not out.ok
    assert out.stats["n_obs"] == 40.0
    assert out.records is None
