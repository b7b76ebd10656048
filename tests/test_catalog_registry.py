from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from profile_engine.clock import FixedClock
from profile_engine.data_models import Profile, ProfileState
from profile_engine.profile_store.file_store import FileProfileStore
from profile_engine.registry import CatalogSnapshot, ProfileRegistry


def _clock() -> FixedClock:
    return FixedClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


def test_initial_snapshot_is_empty(tmp_path: Path) -> None:
    registry = ProfileRegistry(FileProfileStore.open(tmp_path), clock=_clock())
    try:
        assert len(registry.snapshot) == 0
        assert registry.snapshot.generated_at_utc == ""
    finally:
        registry.close()


def test_refresh_publishes_summaries_to_subscribers(tmp_path: Path) -> None:
    store = FileProfileStore.open(tmp_path)
    store.save(Profile(name="Work", targets=("a", "b", "c"), state=ProfileState.ON))
    store.save(Profile(name="gaming", targets=("a",)))
    registry = ProfileRegistry(store, clock=_clock())
    seen: list[CatalogSnapshot] = []
    unsubscribe = registry.subscribe(seen.append)

    try:
        snapshot = registry.refresh()

        assert seen == [snapshot]
        assert registry.snapshot is snapshot
        assert snapshot.generated_at_utc == "2026-01-01T12:00:00Z"
        assert snapshot.summary_texts() == {"Work": "3 targets, ON", "gaming": "1 target, OFF"}

        unsubscribe()
        unsubscribe()
        registry.refresh()
        assert len(seen) == 1
    finally:
        registry.close()


def test_refresh_skips_unreadable_documents(tmp_path: Path) -> None:
    store = FileProfileStore.open(tmp_path)
    store.save(Profile(name="good", targets=("a",)))
    (store.paths.profiles_root / "broken.json").write_text("{oops", encoding="utf-8")
    registry = ProfileRegistry(store, clock=_clock())

    try:
        assert registry.refresh().names() == ("good",)
    finally:
        registry.close()


def test_failing_observer_does_not_block_others(tmp_path: Path) -> None:
    registry = ProfileRegistry(FileProfileStore.open(tmp_path), clock=_clock())
    seen: list[CatalogSnapshot] = []

    def _boom(snapshot: CatalogSnapshot) -> None:
        raise RuntimeError("observer bug")

    registry.subscribe(_boom)
    registry.subscribe(seen.append)
    try:
        registry.refresh()
        assert len(seen) == 1
    finally:
        registry.close()


def test_refresh_async_and_filter(tmp_path: Path) -> None:
    store = FileProfileStore.open(tmp_path)
    for name in ("Work", "workshop", "gaming"):
        store.save(Profile(name=name))
    registry = ProfileRegistry(store, clock=_clock())

    try:
        snapshot = registry.refresh_async().result(timeout=5)
        assert snapshot.filter("WORK").names() == ("Work", "workshop")
        assert snapshot.filter("  ").names() == ("Work", "gaming", "workshop")
    finally:
        registry.close()


def test_refresh_skips_documents_with_non_string_targets(tmp_path: Path) -> None:
    store = FileProfileStore.open(tmp_path)
    store.save(Profile(name="good", targets=("a",)))
    (store.paths.profiles_root / "nested.json").write_text(
        json.dumps({"schema_version": 2, "name": "nested", "state": "ON", "targets": [["x"]], "operations": []}),
        encoding="utf-8",
    )
    registry = ProfileRegistry(store, clock=_clock())

    try:
        assert registry.refresh().names() == ("good",)
    finally:
        registry.close()
