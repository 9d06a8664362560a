#!/usr/bin/env python3
"""ndvimon.errors

Error taxonomy for the fitting pipeline.

Two families live here:
- Fatal errors (PipelineError and subclasses). These propagate to the CLI,
  which turns them into an "aborted" exit status.
- Per-unit failures (FitFailure). These are plain values returned by the
  fitter and recorded in the checkpoint. One bad location never unwinds a batch.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


# -----------------------------------------------------------------------------
# Fatal errors
# -----------------------------------------------------------------------------

class PipelineError(Exception):
    """Base class for errors that abort a run."""


class UpstreamDataMissing(PipelineError):
    """A required input (observations, baseline, checkpoint) is absent or unreadable."""


class CheckpointWriteFailure(PipelineError):
    """A checkpoint shard could not be persisted."""


# -----------------------------------------------------------------------------
# Per-unit failures
# -----------------------------------------------------------------------------

class FailureKind(str, Enum):
    INSUFFICIENT_DATA = "InsufficientData"
    CONVERGENCE = "ConvergenceFailure"


@dataclass(frozen=True)
class FitFailure:
    """Structured record of a fit that produced no result."""

    kind: FailureKind
    message: str = ""
    n_obs: int = 0

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "n_obs": int(self.n_obs)}

    @classmethod
    def from_dict(cls, d: dict) -> "FitFailure":
        return cls(kind=FailureKind(d["kind"]), message=d.get("message", ""), n_obs=int(d.get("n_obs", 0)))
