"""Data models for the profile engine.

This module defines the canonical, typed in-memory representation of a profile.
Profile documents on disk are the source of truth; instances of these models are
detached copies handed to callers, who change them with `dataclasses.replace`
and persist them with an explicit save.

The models are intentionally standard-library-only (dataclasses) to keep the
core engine lightweight and deterministic.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Mapping, Self

CURRENT_SCHEMA_VERSION = 2


class ProfileState(str, Enum):
    """Toggle state of a profile. Persisted verbatim; treat as a stable contract."""

    ON = "ON"
    OFF = "OFF"

    @classmethod
    def parse(cls, value: object) -> Self:
        """
        Parse a user- or document-supplied state value (case-insensitive).

        Raises
        ------
        ValueError
            If the value is not 'on' or 'off'.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise ValueError(f"Profile state must be 'ON' or 'OFF', got {value!r}")


class IssueSeverity(str, Enum):
    """Severity of a validation issue."""

    ERROR = "error"
    WARNING = "warning"


UNKNOWN_OPERATION_KIND = "UnknownOperationKind"


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """
    A single validation finding.

    Attributes
    ----------
    field:
        Dotted path of the offending field, e.g. ``operations[2].params.mode``.
    reason:
        Human-readable explanation (safe to print).
    severity:
        Errors block saving; warnings are informational.
    """

    field: str
    reason: str
    severity: IssueSeverity = IssueSeverity.ERROR

    @property
    def is_error(self) -> bool:
        return self.severity is IssueSeverity.ERROR


@dataclass(frozen=True, slots=True)
class OperationDescriptor:
    """
    One entry in a profile's ordered operation list.

    Attributes
    ----------
    kind:
        Operation kind name, resolved against the operation registry at apply time.
    params:
        Kind-specific parameters (JSON-compatible values).
    fail_fast:
        If True, a failure of this operation stops the remaining operations for
        the same target. Other targets are never affected.
    unsupported:
        Set when the kind is unknown to the registry. Unsupported operations are
        kept in the document but recorded as skipped at apply time. Never persisted.
    """

    kind: str
    params: Mapping[str, Any] = field(default_factory=dict)
    fail_fast: bool = False
    unsupported: bool = False

    def detached(self) -> "OperationDescriptor":
        """Return a deep copy whose params share no state with this descriptor."""
        return replace(self, params=copy.deepcopy(dict(self.params)))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the document representation."""
        payload: dict[str, Any] = {
            "kind": self.kind,
            "params": copy.deepcopy(dict(self.params)),
        }
        if self.fail_fast:
            payload["fail_fast"] = True
        return payload


@dataclass(frozen=True, slots=True)
class Profile:
    """
    A named, reusable bundle of operations applied across a set of targets.

    Attributes
    ----------
    name:
        Unique identifier; also the storage key and filename stem.
    targets:
        Ordered set of target identifiers (duplicates are dropped, first wins).
        Empty means the target set is resolved dynamically at apply time.
    operations:
        Ordered operation descriptors. Order is significant.
    state:
        Last-applied toggle state.
    schema_version:
        Schema version the document was read at (written back at the current version).
    extras:
        Unknown top-level document fields, preserved for round-trip fidelity.
    """

    name: str
    targets: tuple[str, ...] = ()
    operations: tuple[OperationDescriptor, ...] = ()
    state: ProfileState = ProfileState.OFF
    schema_version: int = CURRENT_SCHEMA_VERSION
    extras: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "targets", dedupe_targets(self.targets))
        object.__setattr__(self, "operations", tuple(self.operations or ()))

    def detached(self) -> "Profile":
        """Return a deep copy sharing no mutable state with this profile."""
        return replace(
            self,
            operations=tuple(op.detached() for op in self.operations),
            extras=copy.deepcopy(dict(self.extras)),
        )

    def renamed(self, name: str) -> "Profile":
        """Return a detached copy under a new name with the same state."""
        return replace(self.detached(), name=name)


def dedupe_targets(targets: Iterable[str] | None) -> tuple[str, ...]:
    """Deduplicate targets while preserving first-occurrence order."""
    return tuple(dict.fromkeys(targets or ()))
