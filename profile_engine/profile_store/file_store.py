"""
File-backed implementation of ProfileStore.

This module owns the on-disk persistence format: one UTF-8 JSON document per
profile, stored as ``<profiles_root>/<name>.json``.

Design constraints
------------------
- Writes are atomic (temp file + fsync + replace). A crash mid-write leaves the
  previously committed document readable and never a truncated one.
- Leftover temp files are invisible to `list` and `load`.
- Writes are serialized per name within the process; different names never
  block each other. Reads take no lock.
- The file name is the storage key. If a document's embedded name disagrees
  with its file name, the file name wins.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import BinaryIO, Sequence

from profile_engine.data_models import Profile, ProfileState
from profile_engine.document import (
    ensure_valid,
    mark_unsupported,
    migrate,
    parse,
    serialize,
    validate,
)
from profile_engine.errors import (
    ProfileExistsError,
    ProfileNotFoundError,
    ProfileParseError,
    ProfileStoreIOError,
)
from profile_engine.operations import OperationRegistry
from profile_engine.paths_and_safety import (
    StorePaths,
    ensure_store_directories,
    profile_document_path,
    resolve_store_paths,
    validate_profile_name,
)

from .api import ProfileStore, ProfileSummary
from .locks import KeyedLock

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """
    Write bytes atomically to disk.

    Parameters
    ----------
    path:
        Final document path.
    data:
        Full document contents.

    Raises
    ------
    ProfileStoreIOError
        If the temp file cannot be written or moved into place. The temp file is
        removed on failure; the previous document is untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + TEMP_SUFFIX)

    try:
        with temp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except OSError as exc:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise ProfileStoreIOError(f"Failed to write profile document: {path} ({exc!s})") from exc


@dataclass(slots=True)
class FileProfileStore(ProfileStore):
    """
    Directory-backed ProfileStore.

    Parameters
    ----------
    paths:
        Resolved store paths; the profiles directory is created if absent.
    registry:
        Optional operation registry. When given, imports are validated against
        it and loaded profiles have unknown kinds flagged unsupported.
    """

    paths: StorePaths
    registry: OperationRegistry | None = None
    _locks: KeyedLock = field(default_factory=KeyedLock, init=False, repr=False)

    def __post_init__(self) -> None:
        ensure_store_directories(self.paths)

    @classmethod
    def open(
        cls, data_root: Path | None = None, registry: OperationRegistry | None = None
    ) -> "FileProfileStore":
        """Open (creating if needed) the store under a data root."""
        return cls(paths=resolve_store_paths(data_root), registry=registry)

    def list(self) -> Sequence[str]:
        """See ProfileStore.list."""
        names: list[str] = []
        try:
            candidates = sorted(self.paths.profiles_root.glob("*" + DOCUMENT_SUFFIX))
        except OSError as exc:
            raise ProfileStoreIOError(f"Failed to list profiles: {exc!s}") from exc
        for path in candidates:
            if path.is_file():
                names.append(path.name[: -len(DOCUMENT_SUFFIX)])
        return names

    def exists(self, name: str) -> bool:
        """See ProfileStore.exists."""
        return self._path(name).is_file()

    def load(self, name: str) -> Profile:
        """See ProfileStore.load."""
        profile = parse(self._read(name))
        if profile.name != name:
            logger.debug("Document name %r differs from key %r; using key", profile.name, name)
            profile = replace(profile, name=name)
        if self.registry is not None:
            profile = mark_unsupported(profile, self.registry)
        return profile

    def load_summary(self, name: str) -> ProfileSummary:
        """See ProfileStore.load_summary."""
        try:
            payload = json.loads(self._read(name).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProfileParseError(f"{name}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ProfileParseError(f"{name}: document root must be a JSON object")
        document = migrate(payload)
        if "state" not in document:
            raise ProfileParseError("missing field: state")
        try:
            state = ProfileState.parse(document["state"])
        except ValueError as exc:
            raise ProfileParseError(str(exc)) from exc
        targets = document.get("targets", [])
        if not isinstance(targets, list) or not all(isinstance(t, str) for t in targets):
            raise ProfileParseError("field 'targets' must be a list of strings")
        return ProfileSummary(name=name, target_count=len(dict.fromkeys(targets)), state=state)

    def save(self, profile: Profile) -> None:
        """See ProfileStore.save."""
        ensure_valid(validate(profile))
        with self._locks.hold(profile.name):
            self._write(profile)

    def create(self, profile: Profile) -> None:
        """See ProfileStore.create."""
        ensure_valid(validate(profile))
        with self._locks.hold(profile.name):
            if self.exists(profile.name):
                raise ProfileExistsError(profile.name)
            self._write(profile)

    def delete(self, name: str) -> bool:
        """See ProfileStore.delete."""
        path = self._path(name)
        with self._locks.hold(name):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise ProfileStoreIOError(f"Failed to delete profile: {path} ({exc!s})") from exc
        logger.info("Deleted profile %r", name)
        return True

    def clone(self, source_name: str, new_name: str) -> Profile:
        """See ProfileStore.clone."""
        validate_profile_name(new_name)
        with self._locks.hold_many(source_name, new_name):
            if self.exists(new_name):
                raise ProfileExistsError(new_name)
            clone = self.load(source_name).renamed(new_name)
            self._write(clone)
        logger.info("Cloned profile %r as %r", source_name, new_name)
        return clone.detached()

    def update_state(self, name: str, state: ProfileState) -> Profile:
        """See ProfileStore.update_state."""
        with self._locks.hold(name):
            updated = replace(self.load(name), state=state)
            self._write(updated)
        return updated.detached()

    def import_from(self, stream: BinaryIO, suggested_name: str | None = None) -> Profile:
        """See ProfileStore.import_from."""
        profile = parse(stream.read())
        if suggested_name:
            profile = replace(profile, name=suggested_name)
        ensure_valid(validate(profile, self.registry))
        self.create(profile)
        logger.info("Imported profile %r", profile.name)
        if self.registry is not None:
            profile = mark_unsupported(profile, self.registry)
        return profile.detached()

    def export_to(self, name: str, stream: BinaryIO) -> None:
        """See ProfileStore.export_to."""
        stream.write(serialize(self.load(name)))

    def _path(self, name: str) -> Path:
        return profile_document_path(self.paths, name)

    def _read(self, name: str) -> bytes:
        path = self._path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ProfileNotFoundError(name) from exc
        except OSError as exc:
            raise ProfileStoreIOError(f"Failed to read profile document: {path} ({exc!s})") from exc

    def _write(self, profile: Profile) -> None:
        write_bytes_atomic(self._path(profile.name), serialize(profile))
        logger.debug("Saved profile %r", profile.name)
