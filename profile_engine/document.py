"""
Profile document codec.

Design constraints
------------------
- Documents are UTF-8 JSON objects carrying a ``schema_version``.
- Older documents are migrated forward one version at a time before any model
  is built; newer documents are read as-is (forward compatibility).
- Unknown top-level fields are kept in ``Profile.extras`` and written back.
- Serialization is deterministic for a given in-memory profile.
- Parsing never consults the operation registry; unknown kinds are a
  validation concern, not a parse failure.
"""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any, Callable, Mapping

from profile_engine.data_models import (
    CURRENT_SCHEMA_VERSION,
    UNKNOWN_OPERATION_KIND,
    IssueSeverity,
    OperationDescriptor,
    Profile,
    ProfileState,
    ValidationIssue,
)
from profile_engine.errors import ProfileParseError, ProfileValidationError
from profile_engine.operations import OperationRegistry
from profile_engine.paths_and_safety import profile_name_issues

KNOWN_FIELDS = frozenset({"schema_version", "name", "state", "targets", "operations"})
REQUIRED_FIELDS = ("name", "state", "operations")


def _migrate_v1_to_v2(payload: dict[str, Any]) -> dict[str, Any]:
    # v1 kept targets under "packages" and wrote the state in lower case.
    if "packages" in payload and "targets" not in payload:
        payload["targets"] = payload.pop("packages")
    state = payload.get("state")
    if isinstance(state, str):
        payload["state"] = state.upper()
    payload["schema_version"] = 2
    return payload


MIGRATIONS: Mapping[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1_to_v2,
}


def parse(data: bytes) -> Profile:
    """
    Decode a profile document.

    Parameters
    ----------
    data:
        Raw UTF-8 JSON bytes.

    Returns
    -------
    Profile
        A fresh profile. Unknown kinds are not flagged here; see `mark_unsupported`.

    Raises
    ------
    ProfileParseError
        If the bytes are not a JSON object, a required field is missing
        (reason ``missing field: <name>``), or a field has the wrong type.
    """
    try:
        payload = json.loads(data.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise ProfileParseError(f"not UTF-8 ({exc.reason})") from exc
    except json.JSONDecodeError as exc:
        raise ProfileParseError(f"invalid JSON at line {exc.lineno} column {exc.colno}") from exc
    if not isinstance(payload, dict):
        raise ProfileParseError("document root must be a JSON object")
    return profile_from_dict(payload)


def profile_from_dict(payload: Mapping[str, Any]) -> Profile:
    """Build a profile from an already-decoded document mapping."""
    document = migrate(dict(payload))

    for key in REQUIRED_FIELDS:
        if key not in document:
            raise ProfileParseError(f"missing field: {key}")

    name = document["name"]
    if not isinstance(name, str):
        raise ProfileParseError("field 'name' must be a string")

    try:
        state = ProfileState.parse(document["state"])
    except ValueError as exc:
        raise ProfileParseError(str(exc)) from exc

    raw_targets = document.get("targets", [])
    if not isinstance(raw_targets, list) or not all(isinstance(t, str) for t in raw_targets):
        raise ProfileParseError("field 'targets' must be a list of strings")

    raw_operations = document["operations"]
    if not isinstance(raw_operations, list):
        raise ProfileParseError("field 'operations' must be a list")
    operations = tuple(
        _operation_from_dict(index, raw) for index, raw in enumerate(raw_operations)
    )

    extras = {k: v for k, v in document.items() if k not in KNOWN_FIELDS}
    return Profile(
        name=name,
        targets=tuple(raw_targets),
        operations=operations,
        state=state,
        schema_version=int(document["schema_version"]),
        extras=extras,
    )


def migrate(document: dict[str, Any]) -> dict[str, Any]:
    """
    Apply forward migrations until the document reaches the current schema version.

    Documents without a version are treated as version 1. Documents newer than
    the current version are returned unchanged.
    """
    version = document.get("schema_version", 1)
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ProfileParseError(f"field 'schema_version' must be a positive integer, got {version!r}")
    document["schema_version"] = version
    while version < CURRENT_SCHEMA_VERSION:
        document = MIGRATIONS[version](document)
        version = document["schema_version"]
    return document


def _operation_from_dict(index: int, raw: object) -> OperationDescriptor:
    if not isinstance(raw, dict):
        raise ProfileParseError(f"operations[{index}] must be an object")
    if "kind" not in raw:
        raise ProfileParseError(f"missing field: operations[{index}].kind")
    kind = raw["kind"]
    if not isinstance(kind, str) or not kind:
        raise ProfileParseError(f"operations[{index}].kind must be a non-empty string")
    params = raw.get("params", {})
    if not isinstance(params, dict):
        raise ProfileParseError(f"operations[{index}].params must be an object")
    fail_fast = raw.get("fail_fast", False)
    if not isinstance(fail_fast, bool):
        raise ProfileParseError(f"operations[{index}].fail_fast must be a boolean")
    return OperationDescriptor(kind=kind, params=params, fail_fast=fail_fast)


def profile_to_dict(profile: Profile) -> dict[str, Any]:
    """Convert a profile to its document mapping at the current schema version."""
    payload: dict[str, Any] = dict(profile.extras)
    payload.update(
        {
            "schema_version": CURRENT_SCHEMA_VERSION,
            "name": profile.name,
            "state": profile.state.value,
            "targets": list(profile.targets),
            "operations": [op.to_dict() for op in profile.operations],
        }
    )
    return payload


def serialize(profile: Profile) -> bytes:
    """Encode a profile as deterministic, pretty-printed UTF-8 JSON."""
    text = json.dumps(profile_to_dict(profile), indent=2, sort_keys=True, ensure_ascii=False)
    return (text + "\n").encode("utf-8")


def validate(profile: Profile, registry: OperationRegistry | None = None) -> list[ValidationIssue]:
    """
    Validate a profile.

    Parameters
    ----------
    profile:
        Profile to check.
    registry:
        Operation registry used to check kinds and parameters. When omitted,
        operation kinds are not checked.

    Returns
    -------
    list[ValidationIssue]
        Issues in document order. Unknown operation kinds produce warnings
        (reason ``UnknownOperationKind``); everything else is an error.
    """
    issues = list(profile_name_issues(profile.name))

    for index, target in enumerate(profile.targets):
        if not target.strip():
            issues.append(ValidationIssue(f"targets[{index}]", "Target identifier must not be empty."))

    if registry is None:
        return issues

    for index, operation in enumerate(profile.operations):
        registered = registry.get(operation.kind)
        if registered is None:
            issues.append(
                ValidationIssue(
                    f"operations[{index}].kind",
                    UNKNOWN_OPERATION_KIND,
                    IssueSeverity.WARNING,
                )
            )
            continue
        for key, reason in registered.spec.check_params(operation.params):
            issues.append(ValidationIssue(f"operations[{index}].params.{key}", reason))
    return issues


def ensure_valid(issues: list[ValidationIssue]) -> None:
    """
    Raise if any issue is an error.

    Raises
    ------
    ProfileValidationError
        Carrying every issue (warnings included) when at least one is an error.
    """
    if any(issue.is_error for issue in issues):
        raise ProfileValidationError(issues)


def mark_unsupported(profile: Profile, registry: OperationRegistry) -> Profile:
    """Return a copy with every operation of an unregistered kind flagged unsupported."""
    operations = tuple(
        replace(op, unsupported=op.kind not in registry) for op in profile.operations
    )
    return replace(profile, operations=operations)
