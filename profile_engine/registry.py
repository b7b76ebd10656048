"""
Process-wide profile catalog.

The registry keeps a cached ``name -> summary`` view of the store for list
screens and other observers.

Threading model
---------------
- `refresh` reads the store (never in-flight run state), builds a new immutable
  snapshot, swaps it in, then publishes it to subscribers.
- Snapshots are never mutated; observers always see a whole catalog.
- `refresh_async` runs refreshes on a single background thread so interactive
  callers never block on store I/O. Refreshes run one at a time.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Mapping

from profile_engine.clock import Clock, SystemClock, format_utc
from profile_engine.errors import ProfileEngineError
from profile_engine.profile_store.api import ProfileStore, ProfileSummary

logger = logging.getLogger(__name__)

CatalogObserver = Callable[["CatalogSnapshot"], None]


@dataclass(frozen=True, slots=True)
class CatalogSnapshot:
    """
    Immutable catalog of profile summaries.

    Attributes
    ----------
    entries:
        Read-only mapping of profile name to summary.
    generated_at_utc:
        When the snapshot was built ('' for the initial empty snapshot).
    """

    entries: Mapping[str, ProfileSummary] = field(default_factory=lambda: MappingProxyType({}))
    generated_at_utc: str = ""

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self.entries))

    def summary_texts(self) -> dict[str, str]:
        """Return ``name -> summary text`` for display."""
        return {name: summary.summary_text() for name, summary in self.entries.items()}

    def filter(self, query: str) -> "CatalogSnapshot":
        """Return a snapshot restricted to names containing `query` (case-insensitive)."""
        needle = query.strip().lower()
        if not needle:
            return self
        kept = {name: s for name, s in self.entries.items() if needle in name.lower()}
        return CatalogSnapshot(entries=MappingProxyType(kept), generated_at_utc=self.generated_at_utc)

    def __len__(self) -> int:
        return len(self.entries)


class ProfileRegistry:
    """Lifecycle-scoped cache of profile summaries with snapshot publication."""

    def __init__(
        self,
        store: ProfileStore,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._snapshot = CatalogSnapshot()
        self._observers: list[CatalogObserver] = []
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="appprof-catalog")

    @property
    def snapshot(self) -> CatalogSnapshot:
        """The most recently published snapshot."""
        with self._lock:
            return self._snapshot

    def subscribe(self, observer: CatalogObserver) -> Callable[[], None]:
        """
        Register an observer for future snapshots.

        Returns
        -------
        Callable[[], None]
            Call to unsubscribe. Calling it more than once is harmless.
        """
        with self._lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def refresh(self) -> CatalogSnapshot:
        """
        Rebuild the catalog from the store and publish it.

        Documents that fail to load are left out and logged; they do not fail
        the refresh.

        Returns
        -------
        CatalogSnapshot
            The newly published snapshot.
        """
        # Serialize refreshes so snapshots are published in build order.
        with self._refresh_lock:
            entries: dict[str, ProfileSummary] = {}
            for name in self._store.list():
                try:
                    entries[name] = self._store.load_summary(name)
                except ProfileEngineError as exc:
                    logger.warning("Skipping profile %r in catalog: %s", name, exc)
            snapshot = CatalogSnapshot(
                entries=MappingProxyType(entries),
                generated_at_utc=format_utc(self._now()),
            )
            with self._lock:
                self._snapshot = snapshot
                observers = list(self._observers)
            for observer in observers:
                try:
                    observer(snapshot)
                except Exception:  # noqa: BLE001
                    logger.exception("Catalog observer failed")
        return snapshot

    def refresh_async(self) -> "Future[CatalogSnapshot]":
        """Schedule `refresh` on a background thread."""
        return self._executor.submit(self.refresh)

    def close(self) -> None:
        """Stop the background pool, waiting for queued refreshes."""
        self._executor.shutdown(wait=True)

    def _now(self) -> datetime:
        return self._clock.now()
