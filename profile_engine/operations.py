"""
Operation kind catalog.

Concrete device operations (permission grants, component toggles, freezing an
app, ...) are not part of the engine. They are supplied by callers as handlers
registered under a kind name. The registry is resolved once at startup; the
engine dispatches through it instead of branching on kind names.

Handler contract
----------------
A handler is called as ``handler(target, params, state)``:

- returning normally records Success,
- raising `OperationSkipped` records Skipped,
- raising anything else records Failed with ``str(exc)`` as the reason.

Plug-ins
--------
Installed distributions may expose a `RegisteredOperation` under the
``appprof.operations`` entry point group; `OperationRegistry.from_entry_points`
loads them.
"""

from __future__ import annotations

import importlib.metadata
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from profile_engine.data_models import ProfileState

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "appprof.operations"

BOTH_STATES: frozenset[ProfileState] = frozenset({ProfileState.ON, ProfileState.OFF})

ParamType = type | tuple[type, ...]


class OperationHandler(Protocol):
    """Callable that performs one operation against one target."""

    def __call__(self, target: str, params: Mapping[str, Any], state: ProfileState) -> None: ...


@dataclass(frozen=True, slots=True)
class OperationKindSpec:
    """
    Parameter schema and applicability of an operation kind.

    Attributes
    ----------
    name:
        Kind name as it appears in profile documents.
    required_params:
        Parameter name to accepted Python type(s).
    optional_params:
        Parameter name to accepted Python type(s); may be absent.
    applies_to:
        Toggle states this kind runs for. Symmetric kinds run for both; ON-only
        or OFF-only kinds are recorded as skipped for the other state.
    """

    name: str
    required_params: Mapping[str, ParamType] = field(default_factory=dict)
    optional_params: Mapping[str, ParamType] = field(default_factory=dict)
    applies_to: frozenset[ProfileState] = BOTH_STATES

    def check_params(self, params: Mapping[str, Any]) -> list[tuple[str, str]]:
        """
        Check params against this schema.

        Returns
        -------
        list[tuple[str, str]]
            ``(param_name, reason)`` pairs, empty when params are valid.
        """
        problems: list[tuple[str, str]] = []
        for key, expected in self.required_params.items():
            if key not in params:
                problems.append((key, "missing required parameter"))
            elif not _matches(params[key], expected):
                problems.append((key, f"expected {_type_label(expected)}"))
        for key, value in params.items():
            if key in self.required_params:
                continue
            if key not in self.optional_params:
                problems.append((key, "unknown parameter"))
            elif not _matches(value, self.optional_params[key]):
                problems.append((key, f"expected {_type_label(self.optional_params[key])}"))
        return problems


@dataclass(frozen=True, slots=True)
class RegisteredOperation:
    """A kind schema bound to the handler that executes it."""

    spec: OperationKindSpec
    handler: OperationHandler


class OperationRegistry:
    """
    Mapping of kind name to registered operation.

    Registration is expected during startup; lookups are safe from any thread.
    """

    def __init__(self, operations: list[RegisteredOperation] | None = None) -> None:
        self._lock = threading.Lock()
        self._operations: dict[str, RegisteredOperation] = {}
        for operation in operations or []:
            self.add(operation)

    @classmethod
    def from_entry_points(cls, group: str = ENTRY_POINT_GROUP) -> "OperationRegistry":
        """
        Build a registry from installed entry points.

        Entry points that fail to load, or that do not resolve to a
        `RegisteredOperation`, are logged and skipped so one broken plug-in does
        not disable the rest.
        """
        registry = cls()
        for entry_point in importlib.metadata.entry_points(group=group):
            try:
                loaded = entry_point.load()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to load operation plug-in %r", entry_point.name)
                continue
            if not isinstance(loaded, RegisteredOperation):
                logger.warning(
                    "Ignoring operation plug-in %r: expected RegisteredOperation, got %s",
                    entry_point.name,
                    type(loaded).__name__,
                )
                continue
            registry.add(loaded)
        return registry

    def add(self, operation: RegisteredOperation) -> None:
        """
        Register an operation.

        Raises
        ------
        ValueError
            If the kind name is already registered.
        """
        with self._lock:
            if operation.spec.name in self._operations:
                raise ValueError(f"Operation kind already registered: {operation.spec.name!r}")
            self._operations[operation.spec.name] = operation

    def register(
        self,
        name: str,
        handler: OperationHandler,
        *,
        required_params: Mapping[str, ParamType] | None = None,
        optional_params: Mapping[str, ParamType] | None = None,
        applies_to: frozenset[ProfileState] = BOTH_STATES,
    ) -> RegisteredOperation:
        """Build and register an operation in one call."""
        operation = RegisteredOperation(
            spec=OperationKindSpec(
                name=name,
                required_params=dict(required_params or {}),
                optional_params=dict(optional_params or {}),
                applies_to=frozenset(applies_to),
            ),
            handler=handler,
        )
        self.add(operation)
        return operation

    def get(self, kind: str) -> RegisteredOperation | None:
        with self._lock:
            return self._operations.get(kind)

    def __contains__(self, kind: object) -> bool:
        with self._lock:
            return kind in self._operations

    def kinds(self) -> tuple[str, ...]:
        """Return registered kind names in sorted order."""
        with self._lock:
            return tuple(sorted(self._operations))


def _matches(value: Any, expected: ParamType) -> bool:
    # bool is an int subclass; only accept it where bool is asked for.
    expected_types = expected if isinstance(expected, tuple) else (expected,)
    if isinstance(value, bool) and bool not in expected_types:
        return False
    return isinstance(value, expected_types)


def _type_label(expected: ParamType) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__
