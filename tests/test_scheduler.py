#!/usr/bin/env python3

from __future__ import annotations

import os

import pandas as pd
import pytest
from threadpoolctl import threadpool_info

from ndvimon.baseline import BaselineByLocation
from ndvimon.checkpoint import CheckpointStore, UnitOutcome
from ndvimon.errors import CheckpointWriteFailure, FailureKind, FitFailure
from ndvimon.fitting import ModelSpec
from ndvimon.scheduler import (
    ExitStatus,
    RunSummary,
    cap_workers,
    limit_internal_threads,
    make_batches,
    run_units,
    worst_status,
)


class _EvenOddTask:
    """Even units succeed, odd units are InsufficientData."""

    stage = "toy"

    def __init__(self):
        self.calls = []

    def run(self, unit_id: str) -> UnitOutcome:
        self.calls.append(unit_id)
        n = int(unit_id.split(":")[1])
        if n % 2:
            return UnitOutcome(unit_id, failure=FitFailure(FailureKind.INSUFFICIENT_DATA, "odd", 0))
        return UnitOutcome(unit_id, records=pd.DataFrame({"location_id": [n], "norm_mean": [0.5]}))


class _Boom(Exception):
    pass


class _CrashAfter(_EvenOddTask):
    def __init__(self, limit: int):
        super().__init__()
        self.limit = limit

    def run(self, unit_id: str) -> UnitOutcome:
        if len(self.calls) >= self.limit:
            raise _Boom(unit_id)
        return super().run(unit_id)


def test_cap_workers():
    assert cap_workers(16, reserve_cores=2, max_core_fraction=0.75, cpu_count=8) == 6
    assert cap_workers(4, reserve_cores=2, max_core_fraction=0.75, cpu_count=8) == 4
    assert cap_workers(8, reserve_cores=2, max_core_fraction=0.5, cpu_count=8) == 4
    assert cap_workers(8, reserve_cores=4, max_core_fraction=0.75, cpu_count=2) == 1


def test_make_batches():
    assert make_batches(["a", "b", "c", "d", "e"], 2) == [["a", "b"], ["c", "d"], ["e"]]
    assert make_batches([], 3) == []


def test_summary_exit_status():
    assert RunSummary("s", total=3, succeeded=3).exit_status is ExitStatus.SUCCESS
    assert RunSummary("s", total=3, succeeded=2, convergence_failure=1).exit_status is ExitStatus.PARTIAL
    assert RunSummary("s", total=3, succeeded=1).exit_status is ExitStatus.ABORTED
    assert worst_status([ExitStatus.SUCCESS, ExitStatus.PARTIAL]) is ExitStatus.PARTIAL
    assert worst_status([]) is ExitStatus.SUCCESS


def test_run_units_counts_outcomes(tmp_path):
    task = _EvenOddTask()
    units = [f"n:{i}" for i in range(10)]
    store = CheckpointStore(tmp_path / "toy")
    s = run_units(task, units, store, workers=1, checkpoint_every=3, progress=False)
    assert (s.total, s.succeeded, s.insufficient_data, s.convergence_failure) == (10, 5, 5, 0)
    assert s.exit_status is ExitStatus.PARTIAL
    assert len(store.manifests()) == 4


def test_run_units_resumes_without_reprocessing(tmp_path):
    units = [f"n:{i}" for i in range(10)]
    store = CheckpointStore(tmp_path / "toy")

    crashing = _CrashAfter(limit=4)
    with pytest.raises(_Boom):
        run_units(crashing, units, store, workers=1, checkpoint_every=2, progress=False)
    assert store.completed_units() == {"n:0", "n:1", "n:2", "n:3"}

    task = _EvenOddTask()
    s = run_units(task, units, store, workers=1, checkpoint_every=2, progress=False)
    assert task.calls == [f"n:{i}" for i in range(4, 10)]
    assert s.resumed == 4
    assert s.total == 10 and s.succeeded == 5


def test_retries_are_counted(tmp_path):
    task = _EvenOddTask()
    store = CheckpointStore(tmp_path / "toy")
    run_units(task, ["n:1"], store, workers=1, max_retries=2, progress=False)
    assert task.calls == ["n:1"] * 3
    assert store.outcomes()["n:1"]["attempts"] == 3


def test_checkpoint_write_failure_aborts(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(CheckpointWriteFailure):
        run_units(_EvenOddTask(), ["n:0"], CheckpointStore(blocker / "toy"), workers=1, progress=False)


class _ThreadCountTask:
    """Records the BLAS/OpenMP pool sizes seen by the process running each unit."""

    stage = "threads"

    def run(self, unit_id: str) -> UnitOutcome:
        pools = threadpool_info()
        stats = {
            "pid": float(os.getpid()),
            "max_threads": float(max((p["num_threads"] for p in pools), default=1)),
        }
        n = int(unit_id.split(":")[1])
        return UnitOutcome(unit_id, records=pd.DataFrame({"location_id": [n]}), stats=stats)


def test_limit_internal_threads_inline():
    with limit_internal_threads(1):
        assert all(p["num_threads"] == 1 for p in threadpool_info())


@pytest.mark.skipif((os.cpu_count() or 1) < 2, reason="needs two cores for a worker pool")
def test_spawned_workers_run_single_threaded(tmp_path):
    store = CheckpointStore(tmp_path / "threads", stage="threads")
    units = [f"n:{i}" for i in range(4)]
    summary = run_units(_ThreadCountTask(), units, store, workers=2, checkpoint_every=1,
                        max_internal_threads=1, reserve_cores=0, max_core_fraction=1.0, progress=False)
    assert summary.succeeded == 4

    stats = [entry["stats"] for entry in store.outcomes().values()]
    assert all(s["pid"] != os.getpid() for s in stats)
    assert all(s["max_threads"] == 1 for s in stats)


def test_process_pool_matches_inline(tmp_path, observations):
    obs = observations[observations["location_id"] <= 4]
    task = BaselineByLocation(obs, ModelSpec.seasonal_cyclic(7), doys=tuple(range(1, 31)))
    units = task.units()

    inline = CheckpointStore(tmp_path / "inline")
    pooled = CheckpointStore(tmp_path / "pooled")
    run_units(task, units, inline, workers=1, checkpoint_every=1, progress=False)
    s = run_units(task, units, pooled, workers=2, checkpoint_every=1, reserve_cores=0,
                  max_core_fraction=1.0, progress=False)
    assert s.succeeded == 4

    key = ["location_id", "day_of_year"]
    a = inline.load_records().sort_values(key).reset_index(drop=True)
    b = pooled.load_records().sort_values(key).reset_index(drop=True)
    pd.testing.assert_frame_equal(a, b)
