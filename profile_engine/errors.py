"""
Domain exceptions for the profile engine.

Notes
-----
Core engine logic avoids raising generic exceptions. Every expected failure
mode maps to a domain exception with a clear meaning, so callers (the CLI, a
GUI adapter) can decide whether to prompt, retry under another name, or report.

Per-operation failures are never raised; they are recorded in run results.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from profile_engine.data_models import ValidationIssue


class ProfileEngineError(RuntimeError):
    """Base exception for all profile engine domain failures."""


class ProfileNotFoundError(ProfileEngineError):
    """Raised when a named profile does not exist in the store."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Profile not found: {name!r}")
        self.name = name


class ProfileExistsError(ProfileEngineError):
    """Raised when a create, clone, or import would overwrite an existing profile."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Profile already exists: {name!r}")
        self.name = name


class ProfileAlreadyRunningError(ProfileEngineError):
    """Raised when an apply is requested for a profile that already has a run in flight."""

    def __init__(self, name: str, detail: str | None = None) -> None:
        message = f"Profile is already being applied: {name!r}"
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(message)
        self.name = name


class ProfileParseError(ProfileEngineError):
    """Raised when a profile document cannot be decoded into a Profile."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Malformed profile document: {reason}")
        self.reason = reason


class ProfileValidationError(ProfileEngineError):
    """
    Raised when a profile has one or more error-severity validation issues.

    Attributes
    ----------
    issues:
        All issues found, including warnings, in document order.
    """

    def __init__(self, issues: Sequence["ValidationIssue"]) -> None:
        self.issues = tuple(issues)
        rendered = "; ".join(f"{i.field}: {i.reason}" for i in self.issues) or "invalid profile"
        super().__init__(f"Profile validation failed: {rendered}")


class InvalidProfileNameError(ProfileValidationError):
    """Raised when a profile name is not a safe filename stem."""


class ProfileStoreIOError(ProfileEngineError):
    """Raised when a profile document cannot be read or written durably."""


class FatalRunError(ProfileEngineError):
    """
    Raised inside a run worker when further progress is meaningless.

    The worker converts this into a fatal run status; it never reaches callers.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class RunLockError(ProfileEngineError):
    """Raised when a run lock file cannot be acquired, released, or broken."""


class RunHandleError(ProfileEngineError):
    """Raised on misuse of a RunHandle (e.g., consuming progress twice)."""


class SettingsError(ProfileEngineError):
    """Raised when engine settings are invalid in strict mode."""


class OperationSkipped(Exception):
    """
    Raised by an operation handler to record a Skipped outcome.

    Handlers raise this when the operation does not apply to a particular
    target (for example, the target is not installed). It is a control-flow
    signal, not a failure.
    """
