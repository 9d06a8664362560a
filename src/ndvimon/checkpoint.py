#!/usr/bin/env python3
"""ndvimon.checkpoint

Checkpoint/resume manager.

Layout on disk (one directory per stage partition, e.g. baseline/ or years/2019/):

    shard-<hash>.records.parquet   fitted rows for the units in this shard
    shard-<hash>.draws.parquet     posterior draws (only when retained)
    shard-<hash>.json              manifest: unit ids, outcome, fit stats

The manifest is written last and is the commit marker: a shard without a
manifest is ignored, so a crash mid-write never produces a half-trusted shard.
Shards are independent; deleting one only re-queues the units it listed.

The store is queryable by unit id and knows nothing about how units are
scheduled. Accumulation between flushes goes through ResultArena, an
append-only list that is concatenated exactly once per flush.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set

import pandas as pd

from ndvimon.errors import CheckpointWriteFailure, FitFailure, UpstreamDataMissing

logger = logging.getLogger(__name__)


KEY_COLUMNS = ("location_id", "year", "day_of_year")


class UnitStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"


# -----------------------------------------------------------------------------
# Unit ids
# -----------------------------------------------------------------------------
# "loc:17", "doy:045", "year:2019:doy:045", "loc:17:year:2019"

def make_unit_id(**parts: int) -> str:
    out = []
    for name, value in parts.items():
        out += [name, f"{int(value):03d}" if name == "doy" else str(int(value))]
    return ":".join(out)


def parse_unit_id(unit_id: str) -> Dict[str, int]:
    tokens = unit_id.split(":")
    if len(tokens) % 2:
        raise ValueError(f"Malformed unit id: {unit_id!r}")
    return {name: int(value) for name, value in zip(tokens[::2], tokens[1::2])}


# -----------------------------------------------------------------------------
# Unit outcomes and the append-only arena
# -----------------------------------------------------------------------------

@dataclass
class UnitOutcome:
    """Result of processing one unit of work: records, or a failure."""

    unit_id: str
    records: Optional[pd.DataFrame] = None
    draws: Optional[pd.DataFrame] = None
    failure: Optional[FitFailure] = None
    stats: Dict[str, float] = field(default_factory=dict)
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def from_fit(cls, unit_id: str, result, id_name: str, prefix: str, stats=None, **keys) -> "UnitOutcome":
        """Wrap a fit() result as an outcome with keyed, prefixed columns.

        `id_name` names the fit's target_id column; `keys` are constant key
        columns for this unit (e.g. location_id=7, year=2019). Columns come out
        as location_id, year, day_of_year, <prefix>_mean/_se/_lower/_upper.
        """
        extra = dict(stats or {})
        if isinstance(result, FitFailure):
            return cls(unit_id, failure=result, stats={"n_obs": float(result.n_obs), **extra})

        records = result.to_frame(id_name).rename(
            columns={c: f"{prefix}_{c}" for c in ("mean", "se", "lower", "upper")}
        )
        draws = result.draws_frame(id_name)
        for k, v in keys.items():
            records[k] = v
            if draws is not None:
                draws[k] = v

        def ordered(df: pd.DataFrame) -> pd.DataFrame:
            head = [k for k in KEY_COLUMNS if k in df.columns]
            return df[head + [c for c in df.columns if c not in head]].reset_index(drop=True)

        return cls(
            unit_id,
            records=ordered(records),
            draws=None if draws is None else ordered(draws),
            stats={**result.stats, **extra},
        )

    def manifest_entry(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "status": UnitStatus.COMPLETE.value,
            "ok": self.ok,
            "n_records": 0 if self.records is None else int(len(self.records)),
            "failure": None if self.failure is None else self.failure.to_dict(),
            "stats": {k: float(v) for k, v in self.stats.items()},
            "attempts": int(self.attempts),
        }


class ResultArena:
    """Append-only accumulator of UnitOutcome objects.

    append() is O(1); frames are concatenated once, when the arena is flushed.
    """

    def __init__(self) -> None:
        self._outcomes: List[UnitOutcome] = []

    def append(self, outcome: UnitOutcome) -> None:
        self._outcomes.append(outcome)

    def __len__(self) -> int:
        return len(self._outcomes)

    def __iter__(self) -> Iterator[UnitOutcome]:
        return iter(self._outcomes)

    def drain(self) -> List[UnitOutcome]:
        out, self._outcomes = self._outcomes, []
        return out


def concat_frames(frames: Sequence[Optional[pd.DataFrame]]) -> Optional[pd.DataFrame]:
    frames = [f for f in frames if f is not None and not f.empty]
    if not frames:
        return None
    return pd.concat(frames, ignore_index=True)


# -----------------------------------------------------------------------------
# Atomic writes
# -----------------------------------------------------------------------------

def write_parquet_atomic(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    df.to_parquet(tmp, index=False)
    os.replace(tmp, path)


def write_text_atomic(text: str, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------

def shard_name(unit_ids: Sequence[str]) -> str:
    digest = hashlib.sha1("\n".join(sorted(unit_ids)).encode("utf-8")).hexdigest()
    return f"shard-{digest[:16]}"


class CheckpointStore:
    """Checkpoint state for one stage partition, keyed by unit id."""

    def __init__(self, root: Path, stage: str = "") -> None:
        self.root = Path(root)
        self.stage = stage or self.root.name

    def __repr__(self) -> str:
        return f"CheckpointStore({str(self.root)!r})"

    def exists(self) -> bool:
        return self.root.exists() and any(self.root.glob("shard-*.json"))

    # --- writing ---

    def write_shard(self, outcomes: Sequence[UnitOutcome]) -> Path:
        """Persist a batch of outcomes as one shard. Raises CheckpointWriteFailure."""
        if not outcomes:
            raise ValueError("write_shard called with no outcomes")
        name = shard_name([o.unit_id for o in outcomes])
        records = concat_frames([o.records for o in outcomes if o.ok])
        draws = concat_frames([o.draws for o in outcomes if o.ok])

        manifest = {
            "stage": self.stage,
            "written_at": datetime.now(timezone.utc).isoformat(),
            "records": None,
            "draws": None,
            "units": [o.manifest_entry() for o in outcomes],
        }
        try:
            if records is not None:
                manifest["records"] = f"{name}.records.parquet"
                write_parquet_atomic(records, self.root / manifest["records"])
            if draws is not None:
                manifest["draws"] = f"{name}.draws.parquet"
                write_parquet_atomic(draws, self.root / manifest["draws"])
            path = self.root / f"{name}.json"
            write_text_atomic(json.dumps(manifest), path)
        except OSError as e:
            raise CheckpointWriteFailure(f"Could not write checkpoint shard {name} under {self.root}: {e}") from e

        logger.debug("Checkpoint %s: %d units -> %s", self.stage, len(outcomes), path.name)
        return path

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)

    # --- reading ---

    def manifests(self) -> List[dict]:
        if not self.root.exists():
            return []
        out = []
        for path in sorted(self.root.glob("shard-*.json")):
            try:
                out.append(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                raise UpstreamDataMissing(f"Checkpoint manifest unreadable: {path}: {e}") from e
        return out

    def outcomes(self) -> Dict[str, dict]:
        """unit_id -> manifest entry for every unit recorded in any shard."""
        entries: Dict[str, dict] = {}
        for m in self.manifests():
            for entry in m["units"]:
                entries[entry["unit_id"]] = entry
        return entries

    def completed_units(self) -> Set[str]:
        return set(self.outcomes())

    def status(self, unit_id: str) -> UnitStatus:
        return UnitStatus.COMPLETE if unit_id in self.completed_units() else UnitStatus.PENDING

    def remaining(self, units: Sequence[str]) -> List[str]:
        done = self.completed_units()
        return [u for u in units if u not in done]

    def _load(self, key: str) -> Optional[pd.DataFrame]:
        frames = []
        for m in self.manifests():
            fname = m.get(key)
            if not fname:
                continue
            path = self.root / fname
            try:
                frames.append(pd.read_parquet(path))
            except (OSError, ValueError) as e:
                raise UpstreamDataMissing(f"Checkpoint shard unreadable: {path}: {e}") from e
        return concat_frames(frames)

    def load_records(self) -> Optional[pd.DataFrame]:
        return self._load("records")

    def load_draws(self) -> Optional[pd.DataFrame]:
        return self._load("draws")
