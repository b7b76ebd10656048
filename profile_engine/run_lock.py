"""
Cross-process run locking for profiles.

This module provides a conservative file lock used to prevent two processes
(for example, a scheduler and an interactive CLI) from applying the same
profile at the same time. Within one process, the application engine keeps its
own in-memory set of running names; this lock extends the guarantee across
processes.

Design goals
------------
- Deterministic and inspectable: locks are plain JSON files.
- Safe by default: existing locks block unless explicitly overridden.
- Conservative stale detection: a lock is provably stale only when we can prove
  the recorded PID is not running on the same host.

Notes
-----
This uses exclusive file creation and explicit lock breaking rules, which keeps
behavior predictable across filesystems without third-party dependencies.
"""

from __future__ import annotations

import json
import os
import platform
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from profile_engine.errors import ProfileAlreadyRunningError, RunLockError

LOCK_SCHEMA_VERSION = "appprof_run_lock_v1"


@dataclass(frozen=True, slots=True)
class RunLockInfo:
    """
    Metadata recorded in a run lock file.

    Attributes
    ----------
    schema_version:
        Schema identifier for the lock JSON.
    profile_name:
        Profile name the lock applies to.
    created_at_utc:
        Lock acquisition time in UTC (ISO 8601 with 'Z').
    hostname:
        Hostname where the lock was created.
    pid:
        Process ID of the creating process.
    run_id:
        Identifier of the run holding the lock.
    """

    schema_version: str
    profile_name: str
    created_at_utc: str
    hostname: str
    pid: int
    run_id: str | None = None


def build_run_lock_path(*, locks_root: Path, profile_name: str) -> Path:
    """Return the lock file path for a profile."""
    return locks_root / f"{profile_name}.lock"


class RunLock:
    """
    A held-or-not run lock for one profile.

    `acquire` and `release` are separate so a lock can be taken on the caller's
    thread (failing fast) and released later by the worker thread that runs the
    profile.
    """

    def __init__(
        self,
        *,
        lock_path: Path,
        profile_name: str,
        run_id: str | None,
        force: bool = False,
        break_lock: bool = False,
    ) -> None:
        self._lock_path = lock_path.expanduser()
        self._profile_name = profile_name
        self._run_id = run_id
        self._force = force
        self._break_lock = break_lock
        self._info: RunLockInfo | None = None

    @property
    def path(self) -> Path:
        return self._lock_path

    @property
    def held(self) -> bool:
        return self._info is not None

    def acquire(self) -> None:
        """
        Acquire the lock.

        Raises
        ------
        ProfileAlreadyRunningError
            If the lock is held and cannot be broken under the configured flags.
        RunLockError
            If the lock file cannot be created or an existing lock cannot be removed.
        """
        if self._info is not None:
            raise RunLockError(f"Run lock already held by this handle: {self._lock_path}")
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        info = _build_lock_info(profile_name=self._profile_name, run_id=self._run_id)

        # Fast path: exclusive create.
        try:
            _write_lock_exclusive(self._lock_path, info)
            self._info = info
            return
        except FileExistsError:
            pass

        existing = _try_read_lock(self._lock_path)
        decision = _evaluate_existing_lock(
            existing=existing, force=self._force, break_lock=self._break_lock
        )
        if not decision.allow_break:
            raise ProfileAlreadyRunningError(self._profile_name, decision.message)

        try:
            self._lock_path.unlink(missing_ok=True)
        except OSError as exc:
            raise RunLockError(f"Failed to remove existing lock: {self._lock_path} ({exc})") from exc

        try:
            _write_lock_exclusive(self._lock_path, info)
        except FileExistsError:
            # Someone else acquired between unlink and create.
            raise ProfileAlreadyRunningError(
                self._profile_name, f"Lock was taken concurrently: {self._lock_path}"
            )
        self._info = info

    def release(self) -> None:
        """
        Release the lock if it still appears to be held by this process.

        Notes
        -----
        Best-effort ownership check: the file is read and its PID/hostname are
        compared before unlinking. Unreadable lock content is removed anyway so
        a dead lock is not left behind after a completed run.
        """
        info = self._info
        if info is None:
            return
        self._info = None
        try:
            existing = _try_read_lock(self._lock_path)
            if existing is not None:
                same_owner = (
                    str(existing.get("pid")) == str(info.pid)
                    and str(existing.get("hostname", "")).lower() == info.hostname.lower()
                )
                if not same_owner:
                    return
            self._lock_path.unlink(missing_ok=True)
        except OSError as exc:
            raise RunLockError(f"Failed to release lock: {self._lock_path} ({exc})") from exc


def _build_lock_info(*, profile_name: str, run_id: str | None) -> RunLockInfo:
    created = datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return RunLockInfo(
        schema_version=LOCK_SCHEMA_VERSION,
        profile_name=profile_name,
        created_at_utc=created,
        hostname=platform.node(),
        pid=os.getpid(),
        run_id=run_id,
    )


def _write_lock_exclusive(lock_path: Path, info: RunLockInfo) -> None:
    payload = json.dumps(asdict(info), sort_keys=True) + "\n"
    with lock_path.open("x", encoding="utf-8", newline="\n") as f:
        f.write(payload)


def _try_read_lock(lock_path: Path) -> Mapping[str, object] | None:
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return data


@dataclass(frozen=True, slots=True)
class _BreakDecision:
    allow_break: bool
    message: str


def _evaluate_existing_lock(
    *,
    existing: Mapping[str, object] | None,
    force: bool,
    break_lock: bool,
) -> _BreakDecision:
    details = _format_lock_details(existing)
    if existing is None:
        if break_lock:
            return _BreakDecision(True, "Breaking lock with unreadable metadata.")
        return _BreakDecision(
            False,
            "Lock exists but could not be read. Inspect the lock file and re-run with --break-lock if necessary.\n"
            + details,
        )

    if _is_provably_stale(existing):
        if force:
            return _BreakDecision(True, "Breaking provably stale lock due to --force.")
        return _BreakDecision(
            False, "Lock appears to be stale. Re-run with --force to break it.\n" + details
        )

    if break_lock:
        return _BreakDecision(True, "Breaking lock due to --break-lock.")
    return _BreakDecision(
        False,
        "Lock is held and is not provably stale. Re-run with --break-lock to override.\n" + details,
    )


def _format_lock_details(existing: Mapping[str, object] | None) -> str:
    if not existing:
        return ""
    fields = ["profile_name", "created_at_utc", "hostname", "pid", "run_id"]
    parts = [f"{name}={existing.get(name)!r}" for name in fields if name in existing]
    return "Lock details: " + ", ".join(parts) if parts else ""


def _is_provably_stale(existing: Mapping[str, object]) -> bool:
    host = existing.get("hostname")
    pid = existing.get("pid")

    if not isinstance(host, str):
        return False
    if not isinstance(pid, int) or isinstance(pid, bool):
        return False
    if host.lower() != platform.node().lower():
        return False

    return is_pid_running(pid) is False


def is_pid_running(pid: int) -> bool | None:
    """
    Determine whether a process is running on this host.

    Returns
    -------
    bool | None
        True if running, False if not running, None if indeterminate.
    """
    if pid <= 0:
        return None
    if os.name == "nt":
        return _is_pid_running_windows(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    except OSError:
        return None
    return True


def _is_pid_running_windows(pid: int) -> bool | None:
    """
    Check whether a process is running on Windows using the Win32 API.

    Notes
    -----
    If the process state cannot be determined (for example, access denied),
    this returns None rather than guessing.
    """
    import ctypes
    from ctypes import wintypes

    PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    STILL_ACTIVE = 259

    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)

    open_process = kernel32.OpenProcess
    open_process.argtypes = [wintypes.DWORD, wintypes.BOOL, wintypes.DWORD]
    open_process.restype = wintypes.HANDLE

    get_exit_code_process = kernel32.GetExitCodeProcess
    get_exit_code_process.argtypes = [wintypes.HANDLE, ctypes.POINTER(wintypes.DWORD)]
    get_exit_code_process.restype = wintypes.BOOL

    close_handle = kernel32.CloseHandle
    close_handle.argtypes = [wintypes.HANDLE]
    close_handle.restype = wintypes.BOOL

    handle = open_process(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        return None

    try:
        exit_code = wintypes.DWORD()
        if not get_exit_code_process(handle, ctypes.byref(exit_code)):
            return None
        return exit_code.value == STILL_ACTIVE
    finally:
        close_handle(handle)
