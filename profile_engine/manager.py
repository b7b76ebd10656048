"""
Profile manager facade.

This is the invocation surface consumed by front ends (the CLI, a GUI adapter,
a scheduler). It owns one store, one catalog registry, and one application
engine for a data root, and keeps the catalog in step with every mutation by
scheduling a background refresh.

Front ends should not reach past this facade into store or engine internals.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Iterable, Sequence

from profile_engine.apply.plan import TargetResolver
from profile_engine.apply.results import RunResult
from profile_engine.apply.service import ApplicationEngine, RunHandle
from profile_engine.clock import Clock, SystemClock
from profile_engine.data_models import OperationDescriptor, Profile, ProfileState, ValidationIssue
from profile_engine.document import ensure_valid, mark_unsupported, validate
from profile_engine.operations import OperationRegistry
from profile_engine.paths_and_safety import resolve_store_paths
from profile_engine.profile_store.file_store import FileProfileStore
from profile_engine.registry import CatalogSnapshot, ProfileRegistry
from profile_engine.settings import EngineSettings, load_settings
from profile_engine.transfer import ImportResult, export_profile, import_profile

logger = logging.getLogger(__name__)


class ProfileManager:
    """
    Facade over the store, catalog registry, and application engine.

    Parameters
    ----------
    data_root:
        Data root; the default data root is used when None.
    registry:
        Operation registry. Defaults to the installed entry-point plug-ins.
    resolver:
        Resolves targets for profiles with an empty target set.
    settings:
        Engine settings. Loaded from the data root when None.
    clock:
        Injectable clock.
    """

    def __init__(
        self,
        *,
        data_root: Path | None = None,
        registry: OperationRegistry | None = None,
        resolver: TargetResolver | None = None,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.paths = resolve_store_paths(data_root)
        self.settings = settings or load_settings(data_root=self.paths.data_root)
        self.operations = registry if registry is not None else OperationRegistry.from_entry_points()
        self._clock = clock or SystemClock()
        self.store = FileProfileStore(paths=self.paths, registry=self.operations)
        self.catalog_registry = ProfileRegistry(self.store, clock=self._clock)
        self.engine = ApplicationEngine(
            self.store,
            self.operations,
            resolver=resolver,
            paths=self.paths,
            settings=self.settings,
            clock=self._clock,
            on_run_finished=self._on_run_finished,
        )

    def close(self) -> None:
        """Wait for running applies and pending catalog refreshes, then stop the pool."""
        self.engine.join()
        self.catalog_registry.close()

    def __enter__(self) -> "ProfileManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Catalog

    def catalog(self) -> CatalogSnapshot:
        """Return the latest published catalog snapshot."""
        return self.catalog_registry.snapshot

    def refresh_catalog(self) -> CatalogSnapshot:
        """Rebuild the catalog synchronously."""
        return self.catalog_registry.refresh()

    def list_profiles(self) -> Sequence[str]:
        return self.store.list()

    # Documents

    def load_profile(self, name: str) -> Profile:
        return self.store.load(name)

    def validate_profile(self, profile: Profile) -> list[ValidationIssue]:
        return validate(profile, self.operations)

    def save_profile(self, profile: Profile) -> list[ValidationIssue]:
        """
        Validate and save a profile, overwriting any stored document.

        Returns
        -------
        list[ValidationIssue]
            Warnings (errors raise `ProfileValidationError`).
        """
        issues = self.validate_profile(profile)
        ensure_valid(issues)
        self.store.save(profile)
        self._schedule_refresh()
        return issues

    def create_profile(
        self,
        name: str,
        *,
        targets: Iterable[str] = (),
        operations: Iterable[OperationDescriptor] = (),
        state: ProfileState = ProfileState.OFF,
    ) -> Profile:
        """
        Create a new profile.

        Raises
        ------
        ProfileExistsError
            If the name is taken.
        ProfileValidationError
            If the name or contents are invalid.
        """
        profile = Profile(name=name, targets=tuple(targets), operations=tuple(operations), state=state)
        ensure_valid(self.validate_profile(profile))
        self.store.create(profile)
        self._schedule_refresh()
        return mark_unsupported(profile, self.operations)

    def clone_profile(self, source: str, new_name: str) -> Profile:
        """Clone a profile. Raises `ProfileExistsError` / `ProfileNotFoundError`."""
        profile = self.store.clone(source, new_name)
        self._schedule_refresh()
        return profile

    def delete_profile(self, name: str) -> bool:
        """Delete a profile; returns whether it existed."""
        removed = self.store.delete(name)
        if removed:
            self._schedule_refresh()
        return removed

    # Transfer

    def import_profile(self, stream: BinaryIO, suggested_name: str | None = None) -> ImportResult:
        """Import a profile document; see `profile_engine.transfer.import_profile`."""
        result = import_profile(
            self.store, stream, suggested_name=suggested_name, registry=self.operations
        )
        for warning in result.warnings:
            logger.warning("Imported profile %r: %s %s", result.profile.name, warning.field, warning.reason)
        self._schedule_refresh()
        return result

    def export_compression(self, compress: bool | None = None) -> bool:
        """Return `compress`, or the configured default when it is None."""
        if compress is None:
            return self.settings.export_compression == "zstd"
        return compress

    def export_profile(self, name: str, stream: BinaryIO, *, compress: bool | None = None) -> None:
        """Export a profile document; compression defaults to the configured setting."""
        export_profile(self.store, name, stream, compress=self.export_compression(compress))

    # Runs

    def apply_profile(
        self,
        name: str,
        state: ProfileState | str,
        *,
        force: bool = False,
        break_lock: bool = False,
    ) -> RunHandle:
        """Start applying a profile; see `ApplicationEngine.apply`."""
        return self.engine.apply(name, state, force=force, break_lock=break_lock)

    def _on_run_finished(self, result: RunResult) -> None:
        self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        try:
            self.catalog_registry.refresh_async()
        except RuntimeError:
            # Pool already shut down during close().
            logger.debug("Catalog refresh skipped; registry is closed")
