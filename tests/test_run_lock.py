from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping, cast

import pytest

from profile_engine.errors import ProfileAlreadyRunningError, RunLockError
from profile_engine.run_lock import LOCK_SCHEMA_VERSION, RunLock, build_run_lock_path


def _write_raw(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _load_json(path: Path) -> Mapping[str, Any]:
    return cast(Mapping[str, Any], json.loads(path.read_text(encoding="utf-8")))


def _foreign_payload(**overrides: Any) -> str:
    payload: dict[str, Any] = {
        "schema_version": LOCK_SCHEMA_VERSION,
        "profile_name": "p",
        "created_at_utc": "2026-01-01T00:00:00Z",
        "hostname": "HOST",
        "pid": 1234,
        "run_id": "OTHER",
    }
    payload.update(overrides)
    return json.dumps(payload) + "\n"


def _lock(lock_path: Path, *, run_id: str | None = None, force: bool = False, break_lock: bool = False) -> RunLock:
    return RunLock(
        lock_path=lock_path,
        profile_name="p",
        run_id=run_id,
        force=force,
        break_lock=break_lock,
    )


def test_acquire_creates_and_release_removes_lock(tmp_path: Path) -> None:
    lock_path = build_run_lock_path(locks_root=tmp_path, profile_name="p")
    assert lock_path.name == "p.lock"

    lock = _lock(lock_path, run_id="RID")
    lock.acquire()

    assert lock.held
    assert lock.path == lock_path
    payload = _load_json(lock_path)
    assert payload["profile_name"] == "p"
    assert payload["run_id"] == "RID"
    assert payload["schema_version"] == LOCK_SCHEMA_VERSION

    lock.release()
    assert not lock.held
    assert not lock_path.exists()


def test_second_holder_is_rejected_until_release(tmp_path: Path) -> None:
    lock = _lock(tmp_path / "p.lock")
    lock.acquire()

    second = _lock(tmp_path / "p.lock")
    with pytest.raises(ProfileAlreadyRunningError):
        second.acquire()

    lock.release()
    lock.release()
    second.acquire()
    second.release()


def test_acquiring_twice_on_one_handle_is_an_error(tmp_path: Path) -> None:
    lock = _lock(tmp_path / "p.lock")
    lock.acquire()
    try:
        with pytest.raises(RunLockError):
            lock.acquire()
    finally:
        lock.release()


def test_existing_unreadable_lock_blocks_without_break_lock(tmp_path: Path) -> None:
    lock_path = build_run_lock_path(locks_root=tmp_path, profile_name="p")
    _write_raw(lock_path, "not json\n")

    with pytest.raises(ProfileAlreadyRunningError) as excinfo:
        _lock(lock_path).acquire()

    assert "could not be read" in str(excinfo.value)
    assert lock_path.exists()


def test_existing_unreadable_lock_can_be_broken_with_break_lock(tmp_path: Path) -> None:
    lock_path = build_run_lock_path(locks_root=tmp_path, profile_name="p")
    _write_raw(lock_path, "not json\n")

    lock = _lock(lock_path, break_lock=True)
    lock.acquire()
    assert lock_path.exists()

    lock.release()
    assert not lock_path.exists()


def test_provably_stale_lock_requires_force(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("profile_engine.run_lock.platform.node", lambda: "HOST")
    monkeypatch.setattr("profile_engine.run_lock.is_pid_running", lambda _pid: False)

    lock_path = build_run_lock_path(locks_root=tmp_path, profile_name="p")
    _write_raw(lock_path, _foreign_payload())

    with pytest.raises(ProfileAlreadyRunningError) as excinfo:
        _lock(lock_path).acquire()

    assert "Re-run with --force" in str(excinfo.value)

    lock = _lock(lock_path, run_id="RID", force=True)
    lock.acquire()
    assert _load_json(lock_path)["run_id"] == "RID"

    lock.release()
    assert not lock_path.exists()


def test_not_provably_stale_lock_blocks_even_with_force(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("profile_engine.run_lock.platform.node", lambda: "HOST")
    monkeypatch.setattr("profile_engine.run_lock.is_pid_running", lambda _pid: None)

    lock_path = build_run_lock_path(locks_root=tmp_path, profile_name="p")
    _write_raw(lock_path, _foreign_payload())

    with pytest.raises(ProfileAlreadyRunningError) as excinfo:
        _lock(lock_path, force=True).acquire()

    assert "not provably stale" in str(excinfo.value)
    assert lock_path.exists()


def test_lock_on_other_host_is_never_stale(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("profile_engine.run_lock.platform.node", lambda: "HOST")
    monkeypatch.setattr("profile_engine.run_lock.is_pid_running", lambda _pid: False)

    lock_path = build_run_lock_path(locks_root=tmp_path, profile_name="p")
    _write_raw(lock_path, _foreign_payload(hostname="ELSEWHERE"))

    with pytest.raises(ProfileAlreadyRunningError):
        _lock(lock_path, force=True).acquire()


def test_release_leaves_foreign_lock_alone(tmp_path: Path) -> None:
    lock_path = build_run_lock_path(locks_root=tmp_path, profile_name="p")
    lock = _lock(lock_path)
    lock.acquire()

    _write_raw(lock_path, _foreign_payload(hostname="ELSEWHERE"))
    lock.release()

    assert lock_path.exists()
