from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from profile_engine.errors import ProfileStoreIOError, SettingsError
from profile_engine.paths_and_safety import resolve_store_paths
from profile_engine.profile_store.file_store import write_bytes_atomic

logger = logging.getLogger(__name__)

EXPORT_COMPRESSIONS = frozenset({"none", "zstd"})


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """
    Persisted engine settings.

    Attributes
    ----------
    retry_failed_targets:
        Extra passes over failed targets at the end of a run (0 disables retries).
    journal_runs:
        Whether each run appends a JSONL journal under the runs directory.
    export_compression:
        Default export encoding: "none" (plain JSON) or "zstd".
    """

    retry_failed_targets: int = 0
    journal_runs: bool = True
    export_compression: str = "none"

    @staticmethod
    def defaults() -> "EngineSettings":
        return EngineSettings()

    def problems(self) -> list[str]:
        """Return human-readable problems with these values; empty when valid."""
        found: list[str] = []
        if not _is_int(self.retry_failed_targets) or self.retry_failed_targets < 0:
            found.append("retry_failed_targets must be a non-negative integer")
        if not isinstance(self.journal_runs, bool):
            found.append("journal_runs must be a boolean")
        compression = self.export_compression
        if not isinstance(compression, str) or compression not in EXPORT_COMPRESSIONS:
            found.append(f"export_compression must be one of {sorted(EXPORT_COMPRESSIONS)}")
        return found


def settings_path(data_root: Path | None) -> Path:
    return resolve_store_paths(data_root).settings_path


def settings_from_mapping(payload: Mapping[str, Any], *, strict: bool = False) -> EngineSettings:
    """
    Build settings from a decoded mapping.

    Unknown keys are ignored. In non-strict mode each invalid value falls back to
    its default; in strict mode any invalid value raises.

    Raises
    ------
    SettingsError
        In strict mode, if any value is invalid.
    """
    defaults = EngineSettings.defaults()
    values: dict[str, Any] = {}
    errors: list[str] = []
    for f in fields(EngineSettings):
        if f.name not in payload:
            continue
        candidate = EngineSettings(**{f.name: payload[f.name]})
        problems = candidate.problems()
        if problems:
            errors.extend(problems)
            continue
        values[f.name] = payload[f.name]

    if errors:
        if strict:
            raise SettingsError("Invalid settings: " + "; ".join(errors))
        logger.warning("Ignoring invalid settings (using defaults): %s", "; ".join(errors))
    return EngineSettings(**{**asdict(defaults), **values})


def load_settings(*, data_root: Path | None, strict: bool = False) -> EngineSettings:
    """
    Load engine settings from disk.

    Parameters
    ----------
    data_root:
        Data root. If None, the default data root is used.
    strict:
        Raise on invalid content instead of falling back to defaults.

    Returns
    -------
    EngineSettings
        Loaded settings, or defaults if the file is missing.

    Raises
    ------
    SettingsError
        In strict mode, if the file is unreadable, not a JSON object, or holds
        invalid values.
    """
    path = settings_path(data_root)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return EngineSettings.defaults()
    except (OSError, json.JSONDecodeError) as exc:
        if strict:
            raise SettingsError(f"Unreadable settings file: {path} ({exc!s})") from exc
        logger.warning("Unreadable settings file %s; using defaults", path)
        return EngineSettings.defaults()

    if not isinstance(payload, dict):
        if strict:
            raise SettingsError(f"Settings file must hold a JSON object: {path}")
        return EngineSettings.defaults()
    return settings_from_mapping(payload, strict=strict)


def save_settings(*, data_root: Path | None, settings: EngineSettings) -> None:
    """
    Save engine settings atomically.

    Raises
    ------
    SettingsError
        If the settings are invalid or cannot be written.
    """
    problems = settings.problems()
    if problems:
        raise SettingsError("Invalid settings: " + "; ".join(problems))
    text = json.dumps(asdict(settings), indent=2, sort_keys=True) + "\n"
    try:
        write_bytes_atomic(settings_path(data_root), text.encode("utf-8"))
    except ProfileStoreIOError as exc:
        raise SettingsError(str(exc)) from exc


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
