"""
ProfileStore public API.

This module defines the engine-owned persistence surface. Callers (the manager
facade, the registry, a GUI adapter) speak only in typed domain objects and must
not depend on the on-disk layout.

Notes
-----
- Every Profile returned by a store is a detached copy. Mutating it has no effect
  until it is saved.
- Writes for the same name never interleave; writes for different names proceed
  independently.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO, Protocol, Sequence

from profile_engine.data_models import Profile, ProfileState


@dataclass(frozen=True, slots=True)
class ProfileSummary:
    """
    Lightweight description of a profile for catalog listings.

    Attributes
    ----------
    name:
        Profile name.
    target_count:
        Number of static targets (0 means "resolved at apply time").
    state:
        Last-applied toggle state.
    """

    name: str
    target_count: int
    state: ProfileState

    def summary_text(self) -> str:
        """Render a short human-readable summary, e.g. ``"3 targets, ON"``."""
        if self.target_count == 0:
            targets = "all targets"
        elif self.target_count == 1:
            targets = "1 target"
        else:
            targets = f"{self.target_count} targets"
        return f"{targets}, {self.state.value}"


class ProfileStore(Protocol):
    """
    Durable, named-document persistence for profiles.

    Implementations are engine-owned. Long-latency callers should invoke these
    methods off any interactive thread.
    """

    def list(self) -> Sequence[str]:
        """
        Return the names of all stored profiles in sorted order.

        Notes
        -----
        Re-scans the backing location on every call; no caching.
        """
        raise NotImplementedError

    def exists(self, name: str) -> bool:
        """Return True if a document is stored under `name`."""
        raise NotImplementedError

    def load(self, name: str) -> Profile:
        """
        Load a profile.

        Raises
        ------
        ProfileNotFoundError
            If no document exists under `name`.
        ProfileParseError
            If the stored document is malformed.
        """
        raise NotImplementedError

    def load_summary(self, name: str) -> ProfileSummary:
        """
        Load a lightweight summary without building the operation list.

        Raises
        ------
        ProfileNotFoundError
            If no document exists under `name`.
        ProfileParseError
            If the stored document is malformed.
        """
        raise NotImplementedError

    def save(self, profile: Profile) -> None:
        """
        Persist a profile atomically, overwriting any existing document.

        Raises
        ------
        ProfileValidationError
            If the profile has error-severity issues.
        ProfileStoreIOError
            If the document cannot be written.
        """
        raise NotImplementedError

    def create(self, profile: Profile) -> None:
        """
        Persist a new profile.

        Raises
        ------
        ProfileExistsError
            If a document already exists under the profile's name.
        """
        raise NotImplementedError

    def delete(self, name: str) -> bool:
        """Remove a profile. Returns whether a document existed and was removed."""
        raise NotImplementedError

    def clone(self, source_name: str, new_name: str) -> Profile:
        """
        Copy a profile under a new name, keeping its state.

        Raises
        ------
        ProfileNotFoundError
            If `source_name` does not exist.
        ProfileExistsError
            If `new_name` already exists.
        """
        raise NotImplementedError

    def update_state(self, name: str, state: ProfileState) -> Profile:
        """
        Persist a new toggle state for an existing profile.

        Raises
        ------
        ProfileNotFoundError
            If the profile no longer exists.
        """
        raise NotImplementedError

    def import_from(self, stream: BinaryIO, suggested_name: str | None = None) -> Profile:
        """
        Parse, validate, and save a document read from `stream`.

        Raises
        ------
        ProfileParseError
            If the stream does not hold a valid document.
        ProfileValidationError
            If the profile has error-severity issues.
        ProfileExistsError
            If the resulting name is already taken.
        """
        raise NotImplementedError

    def export_to(self, name: str, stream: BinaryIO) -> None:
        """
        Serialize a stored profile into `stream`.

        Raises
        ------
        ProfileNotFoundError
            If the profile does not exist.
        """
        raise NotImplementedError
