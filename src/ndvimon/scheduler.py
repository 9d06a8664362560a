#!/usr/bin/env python3
"""ndvimon.scheduler

Parallel batch scheduler.

Work is a flat list of unit ids (a location, a day of year, a (year, day)
pair...). The scheduler:
1. asks the checkpoint store which units are already complete
2. groups the remaining units into batches of `checkpoint_every`
3. hands each batch to exactly one worker, which fits every unit, collects the
   outcomes in a ResultArena and writes one checkpoint shard
4. summarizes outcomes from the store, so resumed units are counted too

Each worker process receives the task once (pool initializer) and pins the
numeric libraries to `max_internal_threads` threads, otherwise
workers x BLAS threads oversubscribes the machine.

A task is any picklable object with:
    stage: str
    run(unit_id) -> UnitOutcome      (never raises for per-unit data problems)
"""

from __future__ import annotations

import contextlib
import logging
import math
import multiprocessing as mp
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from threadpoolctl import threadpool_limits
from tqdm import tqdm

from ndvimon.checkpoint import CheckpointStore, ResultArena, UnitOutcome
from ndvimon.errors import FailureKind, FitFailure

logger = logging.getLogger(__name__)

_THREAD_ENV_VARS = (
    "OMP_NUM_THREADS",
    "OPENBLAS_NUM_THREADS",
    "MKL_NUM_THREADS",
    "VECLIB_MAXIMUM_THREADS",
    "NUMEXPR_NUM_THREADS",
)


# -----------------------------------------------------------------------------
# Run outcome
# -----------------------------------------------------------------------------

class ExitStatus(IntEnum):
    SUCCESS = 0
    PARTIAL = 1
    ABORTED = 2


@dataclass
class RunSummary:
    stage: str
    total: int = 0
    succeeded: int = 0
    insufficient_data: int = 0
    convergence_failure: int = 0
    resumed: int = 0

    @property
    def failed(self) -> int:
        return self.insufficient_data + self.convergence_failure

    @property
    def pending(self) -> int:
        return self.total - self.succeeded - self.failed

    @property
    def exit_status(self) -> ExitStatus:
        if self.pending > 0:
            return ExitStatus.ABORTED
        return ExitStatus.PARTIAL if self.failed else ExitStatus.SUCCESS

    def add_entry(self, entry: dict) -> None:
        if entry["ok"]:
            self.succeeded += 1
        elif FitFailure.from_dict(entry["failure"]).kind is FailureKind.INSUFFICIENT_DATA:
            self.insufficient_data += 1
        else:
            self.convergence_failure += 1

    @classmethod
    def from_entries(cls, stage: str, total: int, entries: Iterable[dict]) -> "RunSummary":
        s = cls(stage=stage, total=total)
        for entry in entries:
            s.add_entry(entry)
        return s

    def to_dict(self) -> Dict[str, int]:
        d = asdict(self)
        d["failed"] = self.failed
        return d

    def format(self) -> str:
        return (
            f"{self.stage}: {self.succeeded}/{self.total} succeeded, "
            f"{self.insufficient_data} InsufficientData, "
            f"{self.convergence_failure} ConvergenceFailure"
            + (f", {self.resumed} resumed from checkpoint" if self.resumed else "")
        )


def worst_status(statuses: Iterable[ExitStatus]) -> ExitStatus:
    return max(statuses, default=ExitStatus.SUCCESS)


# -----------------------------------------------------------------------------
# Resource limits
# -----------------------------------------------------------------------------

def cap_workers(
    requested: int,
    *,
    reserve_cores: int = 2,
    max_core_fraction: float = 0.75,
    cpu_count: Optional[int] = None,
) -> int:
    """min(requested, cpus - reserve_cores, floor(cpus * max_core_fraction)), at least 1."""
    cpus = cpu_count or os.cpu_count() or 1
    cap = min(int(requested), cpus - int(reserve_cores), int(math.floor(cpus * max_core_fraction)))
    return max(1, cap)


def limit_internal_threads(n_threads: int) -> threadpool_limits:
    """Pin BLAS/OpenMP pools in this process to n_threads. Usable as a context manager."""
    return threadpool_limits(limits=int(n_threads))


@contextlib.contextmanager
def _thread_env(n_threads: int) -> Iterator[None]:
    # Spawned workers read these before numpy loads its BLAS.
    saved = {k: os.environ.get(k) for k in _THREAD_ENV_VARS}
    os.environ.update({k: str(n_threads) for k in _THREAD_ENV_VARS})
    try:
        yield
    finally:
        for k, v in saved.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


# -----------------------------------------------------------------------------
# Batch execution
# -----------------------------------------------------------------------------

def run_unit(task, unit_id: str, max_retries: int = 0) -> UnitOutcome:
    attempts = 0
    while True:
        attempts += 1
        outcome = task.run(unit_id)
        if outcome.ok or attempts > max_retries:
            break
    outcome.attempts = attempts
    if not outcome.ok:
        logger.debug("%s %s: %s (%s)", task.stage, unit_id, outcome.failure.kind.value, outcome.failure.message)
    return outcome


def process_batch(task, store: CheckpointStore, batch: Sequence[str], max_retries: int = 0) -> List[dict]:
    """Fit every unit in `batch` and write them as one checkpoint shard."""
    arena = ResultArena()
    for unit_id in batch:
        arena.append(run_unit(task, unit_id, max_retries))
    outcomes = arena.drain()
    store.write_shard(outcomes)
    return [o.manifest_entry() for o in outcomes]


# Per-worker state, set once by the pool initializer.
_WORKER_TASK = None
_WORKER_LIMITS = None


def _init_worker(task, n_threads: int) -> None:
    global _WORKER_TASK, _WORKER_LIMITS
    _WORKER_TASK = task
    _WORKER_LIMITS = limit_internal_threads(n_threads)


def _run_batch_in_worker(store_root: str, stage: str, batch: List[str], max_retries: int) -> List[dict]:
    return process_batch(_WORKER_TASK, CheckpointStore(store_root, stage), batch, max_retries)


def make_batches(units: Sequence[str], size: int) -> List[List[str]]:
    return [list(units[i:i + size]) for i in range(0, len(units), size)]


def run_units(
    task,
    units: Sequence[str],
    store: CheckpointStore,
    *,
    workers: int = 1,
    checkpoint_every: int = 100,
    max_internal_threads: int = 1,
    max_retries: int = 0,
    reserve_cores: int = 2,
    max_core_fraction: float = 0.75,
    progress: bool = True,
) -> RunSummary:
    """Run `task` over every unit not yet complete in `store`.

    Fatal errors (CheckpointWriteFailure, bugs) propagate after outstanding
    batches are cancelled; shards that were already written stay valid.
    """
    units = list(units)
    remaining = store.remaining(units)
    resumed = len(units) - len(remaining)
    if resumed:
        logger.info("%s: %d of %d units already complete, resuming", task.stage, resumed, len(units))

    batches = make_batches(remaining, max(1, int(checkpoint_every)))
    n_workers = min(
        cap_workers(workers, reserve_cores=reserve_cores, max_core_fraction=max_core_fraction),
        max(1, len(batches)),
    )

    if batches:
        logger.info("%s: %d units in %d batches on %d worker(s)", task.stage, len(remaining), len(batches), n_workers)
    bar = tqdm(total=len(remaining), desc=task.stage, unit="unit", disable=not progress or not batches)

    if n_workers == 1:
        with limit_internal_threads(max_internal_threads):
            for batch in batches:
                process_batch(task, store, batch, max_retries)
                bar.update(len(batch))
    else:
        ctx = mp.get_context("spawn")
        with _thread_env(max_internal_threads), ProcessPoolExecutor(
            max_workers=n_workers,
            mp_context=ctx,
            initializer=_init_worker,
            initargs=(task, max_internal_threads),
        ) as executor:
            futures = {
                executor.submit(_run_batch_in_worker, str(store.root), store.stage, batch, max_retries): batch
                for batch in batches
            }
            try:
                for fut in as_completed(futures):
                    fut.result()
                    bar.update(len(futures[fut]))
            except BaseException:
                executor.shutdown(wait=True, cancel_futures=True)
                raise
    bar.close()

    recorded = store.outcomes()
    summary = RunSummary.from_entries(task.stage, len(units), (recorded[u] for u in units if u in recorded))
    summary.resumed = resumed
    logger.info(summary.format())
    return summary
