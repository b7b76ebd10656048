from __future__ import annotations

import io
import json
import os
import platform
import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping

import pytest

from profile_engine.apply.journal import read_journal
from profile_engine.apply.results import Outcome, RunStatus
from profile_engine.clock import FixedClock
from profile_engine.data_models import OperationDescriptor, Profile, ProfileState
from profile_engine.errors import (
    FatalRunError,
    ProfileAlreadyRunningError,
    ProfileNotFoundError,
    ProfileValidationError,
    RunHandleError,
)
from profile_engine.manager import ProfileManager
from profile_engine.operations import OperationRegistry
from profile_engine.settings import EngineSettings


class _Recorder:
    """Operation handler that records calls and fails for chosen targets."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.calls: list[tuple[str, ProfileState]] = []
        self.failing = failing or set()
        self._lock = threading.Lock()

    def __call__(self, target: str, params: Mapping[str, Any], state: ProfileState) -> None:
        with self._lock:
            self.calls.append((target, state))
        if target in self.failing:
            raise RuntimeError(f"cannot touch {target}")


def _manager(
    tmp_path: Path,
    registry: OperationRegistry,
    settings: EngineSettings | None = None,
) -> ProfileManager:
    return ProfileManager(
        data_root=tmp_path,
        registry=registry,
        settings=settings or EngineSettings.defaults(),
        clock=FixedClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)),
    )


@pytest.fixture
def recorder() -> _Recorder:
    return _Recorder()


@pytest.fixture
def manager(tmp_path: Path, recorder: _Recorder) -> Iterator[ProfileManager]:
    registry = OperationRegistry()
    registry.register("toggle", recorder)
    with _manager(tmp_path, registry) as mgr:
        yield mgr


def _create(manager: ProfileManager, name: str, *targets: str, kinds: tuple[str, ...] = ("toggle",)) -> None:
    manager.create_profile(
        name,
        targets=targets,
        operations=[OperationDescriptor(kind) for kind in kinds],
    )


def test_apply_runs_every_target_and_persists_state(manager: ProfileManager, recorder: _Recorder) -> None:
    _create(manager, "work", "a", "b", "c")

    result = manager.apply_profile("work", "on").wait(timeout=10)

    assert result.status is RunStatus.COMPLETED
    assert list(result.outcomes) == ["a", "b", "c"]
    assert recorder.calls == [("a", ProfileState.ON), ("b", ProfileState.ON), ("c", ProfileState.ON)]
    assert manager.load_profile("work").state is ProfileState.ON
    assert result.summary_line() == "3/3 targets succeeded (completed)"


def test_applying_same_state_twice_is_idempotent(manager: ProfileManager, recorder: _Recorder) -> None:
    _create(manager, "work", "a", "b")

    first = manager.apply_profile("work", ProfileState.ON).wait(timeout=10)
    second = manager.apply_profile("work", ProfileState.ON).wait(timeout=10)

    assert first.status is second.status is RunStatus.COMPLETED
    assert Counter(target for target, _ in recorder.calls) == {"a": 2, "b": 2}
    assert manager.load_profile("work").state is ProfileState.ON


def test_failed_target_does_not_stop_others(tmp_path: Path) -> None:
    recorder = _Recorder(failing={"b"})
    registry = OperationRegistry()
    registry.register("toggle", recorder)

    with _manager(tmp_path, registry) as manager:
        _create(manager, "work", "a", "b", "c")
        result = manager.apply_profile("work", "on").wait(timeout=10)

        assert result.status is RunStatus.COMPLETED_WITH_ERRORS
        assert [r.outcome for r in result.outcomes.values()] == [
            Outcome.SUCCESS,
            Outcome.FAILED,
            Outcome.SUCCESS,
        ]
        assert result.outcomes["b"].failures[0].message == "cannot touch b"
        assert result.failed_count == 1
        assert result.succeeded_count == 2
        assert manager.load_profile("work").state is ProfileState.ON
        assert result.summary_line() == "2/3 targets succeeded (completed_with_errors)"


def test_fail_fast_stops_remaining_operations_for_that_target_only(tmp_path: Path) -> None:
    first = _Recorder(failing={"a"})
    second = _Recorder()
    registry = OperationRegistry()
    registry.register("first", first)
    registry.register("second", second)

    with _manager(tmp_path, registry) as manager:
        manager.create_profile(
            "work",
            targets=("a", "b"),
            operations=[OperationDescriptor("first", fail_fast=True), OperationDescriptor("second")],
        )
        result = manager.apply_profile("work", "off").wait(timeout=10)

    assert [op.kind for op in result.outcomes["a"].operations] == ["first"]
    assert [op.kind for op in result.outcomes["b"].operations] == ["first", "second"]
    assert second.calls == [("b", ProfileState.OFF)]


def test_state_specific_kind_is_skipped_for_other_state(tmp_path: Path) -> None:
    recorder = _Recorder()
    registry = OperationRegistry()
    registry.register("unfreeze", recorder, applies_to=frozenset({ProfileState.OFF}))

    with _manager(tmp_path, registry) as manager:
        _create(manager, "work", "a", kinds=("unfreeze",))
        result = manager.apply_profile("work", "on").wait(timeout=10)

    assert result.status is RunStatus.COMPLETED
    assert result.outcomes["a"].outcome is Outcome.SKIPPED
    assert recorder.calls == []


def test_second_apply_of_running_profile_is_rejected(tmp_path: Path) -> None:
    entered = threading.Event()
    release = threading.Event()

    def _blocking(target: str, params: Mapping[str, Any], state: ProfileState) -> None:
        entered.set()
        assert release.wait(timeout=10)

    registry = OperationRegistry()
    registry.register("toggle", _blocking)

    with _manager(tmp_path, registry) as manager:
        _create(manager, "work", "a")
        _create(manager, "other", "a")
        handle = manager.apply_profile("work", "on")
        assert entered.wait(timeout=10)

        with pytest.raises(ProfileAlreadyRunningError):
            manager.apply_profile("work", "off")
        assert manager.engine.is_running("work")

        release.set()
        assert handle.wait(timeout=10).status is RunStatus.COMPLETED
        assert not manager.engine.is_running("work")
        assert manager.apply_profile("work", "off").wait(timeout=10).status is RunStatus.COMPLETED
        assert manager.apply_profile("other", "on").wait(timeout=10).status is RunStatus.COMPLETED


def test_cancel_stops_before_next_target_and_keeps_state(tmp_path: Path) -> None:
    reached = threading.Event()
    proceed = threading.Event()
    recorder = _Recorder()

    def _pausing(target: str, params: Mapping[str, Any], state: ProfileState) -> None:
        recorder(target, params, state)
        if target == "t3":
            reached.set()
            assert proceed.wait(timeout=10)

    registry = OperationRegistry()
    registry.register("toggle", _pausing)

    with _manager(tmp_path, registry) as manager:
        _create(manager, "work", "t1", "t2", "t3", "t4", "t5")
        handle = manager.apply_profile("work", "on")
        assert reached.wait(timeout=10)
        handle.cancel()
        proceed.set()
        result = handle.wait(timeout=10)

        assert result.status is RunStatus.CANCELLED
        assert list(result.outcomes) == ["t1", "t2", "t3"]
        assert [target for target, _ in recorder.calls] == ["t1", "t2", "t3"]
        assert manager.load_profile("work").state is ProfileState.OFF


def test_deleted_document_makes_run_fatal(tmp_path: Path) -> None:
    holder: dict[str, ProfileManager] = {}

    def _deleting(target: str, params: Mapping[str, Any], state: ProfileState) -> None:
        holder["manager"].store.delete("work")

    registry = OperationRegistry()
    registry.register("toggle", _deleting)

    with _manager(tmp_path, registry) as manager:
        holder["manager"] = manager
        _create(manager, "work", "a", "b")
        result = manager.apply_profile("work", "on").wait(timeout=10)

    assert result.status is RunStatus.FATAL
    assert list(result.outcomes) == ["a"]
    assert result.fatal_reason is not None
    assert "disappeared" in result.fatal_reason


def test_handler_fatal_error_aborts_run_without_persisting(tmp_path: Path) -> None:
    def _fatal(target: str, params: Mapping[str, Any], state: ProfileState) -> None:
        raise FatalRunError("device disconnected")

    registry = OperationRegistry()
    registry.register("toggle", _fatal)

    with _manager(tmp_path, registry) as manager:
        _create(manager, "work", "a", "b")
        result = manager.apply_profile("work", "on").wait(timeout=10)

        assert result.status is RunStatus.FATAL
        assert result.fatal_reason == "device disconnected"
        assert manager.load_profile("work").state is ProfileState.OFF


def test_failed_targets_are_retried_when_configured(tmp_path: Path) -> None:
    attempts: Counter[str] = Counter()

    def _flaky(target: str, params: Mapping[str, Any], state: ProfileState) -> None:
        attempts[target] += 1
        if target == "b" and attempts[target] == 1:
            raise RuntimeError("busy")

    registry = OperationRegistry()
    registry.register("toggle", _flaky)

    with _manager(tmp_path, registry, EngineSettings(retry_failed_targets=2)) as manager:
        _create(manager, "work", "a", "b", "c")
        result = manager.apply_profile("work", "on").wait(timeout=10)

    assert result.status is RunStatus.COMPLETED
    assert list(result.outcomes) == ["a", "b", "c"]
    assert result.outcomes["b"].attempts == 2
    assert attempts == {"a": 1, "b": 2, "c": 1}


def test_apply_missing_profile_fails_fast(manager: ProfileManager) -> None:
    with pytest.raises(ProfileNotFoundError):
        manager.apply_profile("nope", "on")
    assert not manager.engine.is_running("nope")


def test_empty_target_set_uses_resolver(tmp_path: Path, recorder: _Recorder) -> None:
    registry = OperationRegistry()
    registry.register("toggle", recorder)

    with ProfileManager(
        data_root=tmp_path,
        registry=registry,
        resolver=lambda profile: ["x", "y", "x"],
        settings=EngineSettings.defaults(),
    ) as manager:
        _create(manager, "everything")
        result = manager.apply_profile("everything", "off").wait(timeout=10)

    assert list(result.outcomes) == ["x", "y"]
    assert result.targets_total == 2


def test_progress_stream_ends_with_terminal_snapshot(manager: ProfileManager) -> None:
    _create(manager, "work", "a", "b")
    handle = manager.apply_profile("work", "on")

    snapshots = list(handle.progress())

    assert [s.targets_completed for s in snapshots] == [1, 2, 2]
    assert snapshots[-1].status is RunStatus.COMPLETED
    assert all(s.targets_total == 2 for s in snapshots)
    with pytest.raises(RunHandleError):
        handle.progress()


def test_run_journal_records_lifecycle(manager: ProfileManager) -> None:
    _create(manager, "work", "a")
    result = manager.apply_profile("work", "on").wait(timeout=10)

    journal_path = manager.paths.runs_root / "work" / f"{result.run_id}.jsonl"
    events = [record["event"] for record in read_journal(journal_path)]

    assert events == ["run_started", "target_completed", "run_finished"]
    assert not (manager.paths.locks_root / "work.lock").exists()


def test_cross_process_lock_blocks_apply(manager: ProfileManager) -> None:
    _create(manager, "work", "a")
    lock_path = manager.paths.locks_root / "work.lock"
    lock_path.write_text(
        json.dumps({"profile_name": "work", "hostname": platform.node(), "pid": os.getpid()}),
        encoding="utf-8",
    )

    with pytest.raises(ProfileAlreadyRunningError):
        manager.apply_profile("work", "on")
    assert not manager.engine.is_running("work")

    result = manager.apply_profile("work", "on", break_lock=True).wait(timeout=10)
    assert result.status is RunStatus.COMPLETED


def test_legacy_import_skips_unknown_kind_for_every_target(tmp_path: Path) -> None:
    grant = _Recorder()
    revoke = _Recorder()
    registry = OperationRegistry()
    registry.register("grant_permission", grant, required_params={"permission": str})
    registry.register("revoke_permission", revoke, required_params={"permission": str})
    document = {
        "schema_version": 2,
        "name": "legacy",
        "state": "OFF",
        "targets": ["a", "b", "c"],
        "operations": [
            {"kind": "grant_permission", "params": {"permission": "CAMERA"}},
            {"kind": "legacy_foo", "params": {"whatever": 1}},
            {"kind": "revoke_permission", "params": {"permission": "SMS"}},
        ],
    }

    with _manager(tmp_path, registry) as manager:
        imported = manager.import_profile(io.BytesIO(json.dumps(document).encode("utf-8")))
        assert len(imported.warnings) == 1
        assert imported.warnings[0].field == "operations[1].kind"

        result = manager.apply_profile("legacy", "on").wait(timeout=10)

    assert result.status is RunStatus.COMPLETED
    for target_result in result.outcomes.values():
        assert [op.outcome for op in target_result.operations] == [
            Outcome.SUCCESS,
            Outcome.SKIPPED,
            Outcome.SUCCESS,
        ]
    assert len(grant.calls) == len(revoke.calls) == 3


def test_catalog_tracks_mutations_and_runs(manager: ProfileManager) -> None:
    _create(manager, "work", "a", "b")
    manager.apply_profile("work", "on").wait(timeout=10)
    manager.engine.join(timeout=10)

    snapshot = manager.refresh_catalog()
    assert snapshot.summary_texts() == {"work": "2 targets, ON"}

    manager.save_profile(replace(manager.load_profile("work"), targets=("a",)))
    assert manager.refresh_catalog().summary_texts() == {"work": "1 target, ON"}


def test_create_rejects_invalid_params(manager: ProfileManager) -> None:
    manager.operations.register("grant_permission", lambda *a: None, required_params={"permission": str})

    with pytest.raises(ProfileValidationError) as excinfo:
        manager.create_profile("work", operations=[OperationDescriptor("grant_permission", {})])

    assert "operations[0].params.permission" in str(excinfo.value)
    assert manager.list_profiles() == []


def test_save_profile_keeps_unsupported_operations(manager: ProfileManager) -> None:
    manager.store.save(
        Profile(name="work", targets=("a",), operations=(OperationDescriptor("legacy_foo"),))
    )

    loaded = manager.load_profile("work")
    assert loaded.operations[0].unsupported is True

    warnings = manager.save_profile(replace(loaded, targets=("a", "b")))
    assert [w.field for w in warnings] == ["operations[0].kind"]
    assert manager.load_profile("work").operations[0].kind == "legacy_foo"
