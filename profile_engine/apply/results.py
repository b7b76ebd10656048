"""
Outcome and status types for application runs.

The string values of these enums are written to run journals. Treat them as a
stable external contract.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from profile_engine.data_models import ProfileState


class Outcome(str, Enum):
    """Outcome of one operation, and (worst-of) of one target."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {Outcome.SUCCESS: 0, Outcome.SKIPPED: 1, Outcome.FAILED: 2}


def worst_outcome(outcomes: Iterable[Outcome]) -> Outcome:
    """Return the dominant outcome (failed > skipped > success); success when empty."""
    return max(outcomes, key=lambda o: o.severity, default=Outcome.SUCCESS)


class RunStatus(str, Enum):
    """Lifecycle status of an application run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"
    FATAL = "fatal"

    @property
    def is_terminal(self) -> bool:
        return self not in {RunStatus.PENDING, RunStatus.RUNNING}


@dataclass(frozen=True, slots=True)
class OperationResult:
    """
    Result of executing (or intentionally skipping) one operation for one target.

    Attributes
    ----------
    operation_index:
        Index into the profile's operation list.
    kind:
        Operation kind.
    outcome:
        Outcome of the operation.
    message:
        Human-readable detail (failure reason, skip reason); safe to print/log.
    """

    operation_index: int
    kind: str
    outcome: Outcome
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_index": self.operation_index,
            "kind": self.kind,
            "outcome": self.outcome.value,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class TargetResult:
    """
    Result of running a profile's operations against one target.

    Attributes
    ----------
    target:
        Target identifier.
    outcome:
        Worst outcome among `operations`.
    operations:
        Per-operation results in execution order. Operations not attempted
        because of a fail-fast failure are absent.
    attempts:
        Number of times the target was run (greater than 1 after retries).
    """

    target: str
    outcome: Outcome
    operations: tuple[OperationResult, ...] = ()
    attempts: int = 1

    @property
    def failures(self) -> tuple[OperationResult, ...]:
        return tuple(r for r in self.operations if r.outcome is Outcome.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "operations": [r.to_dict() for r in self.operations],
        }


def freeze_outcomes(outcomes: Mapping[str, TargetResult]) -> Mapping[str, TargetResult]:
    """Return a read-only copy of an outcome map, preserving insertion order."""
    return MappingProxyType(dict(outcomes))


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """
    Immutable view of a run's progress, published after each target completes.

    Attributes
    ----------
    run_id:
        Run identifier.
    profile_name:
        Profile being applied.
    requested_state:
        Toggle state being applied.
    status:
        Run status at the time of the snapshot.
    targets_completed:
        Targets with a recorded outcome.
    targets_total:
        Targets in the resolved target set.
    outcomes:
        Read-only ``target -> TargetResult`` map at the time of the snapshot.
    """

    run_id: str
    profile_name: str
    requested_state: ProfileState
    status: RunStatus
    targets_completed: int
    targets_total: int
    outcomes: Mapping[str, TargetResult] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True, slots=True)
class RunResult:
    """
    Terminal result of an application run.

    Attributes
    ----------
    run_id:
        Run identifier.
    profile_name:
        Profile that was applied.
    requested_state:
        Toggle state that was applied.
    status:
        Terminal run status.
    outcomes:
        Read-only ``target -> TargetResult`` map. Targets never started are absent.
    targets_total:
        Targets in the resolved target set (0 if resolution failed).
    started_at_utc:
        Run start time.
    finished_at_utc:
        Run end time.
    fatal_reason:
        Reason for a fatal status; None otherwise.
    """

    run_id: str
    profile_name: str
    requested_state: ProfileState
    status: RunStatus
    outcomes: Mapping[str, TargetResult]
    targets_total: int
    started_at_utc: str
    finished_at_utc: str
    fatal_reason: str | None = None

    @property
    def succeeded_count(self) -> int:
        return sum(1 for r in self.outcomes.values() if r.outcome is not Outcome.FAILED)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.outcomes.values() if r.outcome is Outcome.FAILED)

    def summary_line(self) -> str:
        """Aggregate outcome for display, e.g. ``"2/3 targets succeeded (completed_with_errors)"``."""
        line = f"{self.succeeded_count}/{self.targets_total} targets succeeded ({self.status.value})"
        if self.fatal_reason:
            line += f": {self.fatal_reason}"
        return line

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "profile_name": self.profile_name,
            "requested_state": self.requested_state.value,
            "status": self.status.value,
            "targets_total": self.targets_total,
            "started_at_utc": self.started_at_utc,
            "finished_at_utc": self.finished_at_utc,
            "fatal_reason": self.fatal_reason,
            "outcomes": [r.to_dict() for r in self.outcomes.values()],
        }
