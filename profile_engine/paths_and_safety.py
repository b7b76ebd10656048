"""
Filesystem path policy and safety gates.

This module is the single choke point for determining where the profile engine
is allowed to read and write data:

- Runtime data lives under a data root (default: %LOCALAPPDATA%\\appprof on
  Windows, $XDG_DATA_HOME/appprof elsewhere).
- Profile documents, run journals, and run locks each live in their own folder
  under that root.
- Profile names double as filename stems, so they are validated here before any
  path is built from them.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from profile_engine.data_models import ValidationIssue
from profile_engine.errors import InvalidProfileNameError

DATA_ROOT_ENV_VAR = "APPPROF_DATA_ROOT"

PROFILE_NAME_PATTERN = re.compile(r"[\w.-]+")


@dataclass(frozen=True, slots=True)
class StorePaths:
    """
    Concrete resolved paths for a profile data root.

    Attributes
    ----------
    data_root:
        Root directory for all runtime data.
    profiles_root:
        Canonical profile documents, one `<name>.json` per profile.
    runs_root:
        Append-only JSONL journals, one folder per profile.
    locks_root:
        Run lock files, one `<name>.lock` per profile with a run in flight.
    settings_path:
        Engine settings document.
    """

    data_root: Path
    profiles_root: Path
    runs_root: Path
    locks_root: Path
    settings_path: Path


class SafetyViolationError(RuntimeError):
    """Raised when an operation is blocked by path safety policy."""


def default_data_root() -> Path:
    """
    Resolve the default data root.

    Preference order:
    1) $APPPROF_DATA_ROOT if set
    2) %LOCALAPPDATA% if set
    3) %APPDATA% (Roaming)
    4) $XDG_DATA_HOME
    5) ~/.local/share
    """
    override = os.environ.get(DATA_ROOT_ENV_VAR)
    if override:
        return Path(override).expanduser()

    local = os.environ.get("LOCALAPPDATA")
    if local:
        return Path(local) / "appprof"

    roaming = os.environ.get("APPDATA")
    if roaming:
        return Path(roaming) / "appprof"

    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "appprof"

    return Path.home() / ".local" / "share" / "appprof"


def resolve_store_paths(data_root: Path | None = None) -> StorePaths:
    """
    Resolve all filesystem paths under a data root.

    Parameters
    ----------
    data_root:
        Optional override for the data root.

    Returns
    -------
    StorePaths
        Resolved paths. Nothing is created on disk.
    """
    root = (data_root or default_data_root()).expanduser().resolve()
    paths = StorePaths(
        data_root=root,
        profiles_root=root / "profiles",
        runs_root=root / "runs",
        locks_root=root / "locks",
        settings_path=root / "settings.json",
    )
    for candidate in (paths.profiles_root, paths.runs_root, paths.locks_root):
        _assert_within(root, candidate, purpose="store directory")
    return paths


def ensure_store_directories(paths: StorePaths) -> None:
    """
    Create the directory structure for a data root if it does not already exist.

    Notes
    -----
    This function creates directories only. It performs no deletion.
    """
    for directory in (paths.profiles_root, paths.runs_root, paths.locks_root):
        directory.mkdir(parents=True, exist_ok=True)


def profile_name_issues(name: object) -> list[ValidationIssue]:
    """
    Check a profile name against the safe-filename rules.

    Returns
    -------
    list[ValidationIssue]
        Error-severity issues; empty when the name is acceptable.
    """
    if not isinstance(name, str) or not name:
        return [ValidationIssue("name", "Profile name must be a non-empty string.")]
    if name in {".", ".."}:
        return [ValidationIssue("name", "Profile name must not be '.' or '..'.")]
    if not PROFILE_NAME_PATTERN.fullmatch(name):
        return [
            ValidationIssue(
                "name",
                f"Profile name may only contain letters, digits, '_', '.', '-': {name!r}",
            )
        ]
    return []


def validate_profile_name(name: str) -> str:
    """
    Validate and return a profile name.

    Raises
    ------
    InvalidProfileNameError
        If the name is empty, '.'/'..', or contains unsafe characters.
    """
    issues = profile_name_issues(name)
    if issues:
        raise InvalidProfileNameError(issues)
    return name


def profile_document_path(paths: StorePaths, name: str) -> Path:
    """Return the document path for a validated profile name."""
    validate_profile_name(name)
    candidate = paths.profiles_root / f"{name}.json"
    _assert_within(paths.profiles_root, candidate, purpose="profile document")
    return candidate


def _assert_within(base: Path, candidate: Path, purpose: str) -> None:
    """Ensure candidate is within base after resolution."""
    try:
        candidate.resolve().relative_to(base.resolve())
    except ValueError as exc:
        raise SafetyViolationError(
            f"Unsafe path for {purpose}: {candidate} is not within {base}"
        ) from exc
