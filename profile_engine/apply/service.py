"""
Application engine orchestration.

This module coordinates one application run per `apply` call:

- loading a detached copy of the profile (fails fast when absent)
- same-name exclusion (in-process set plus a cross-process run lock file)
- planning (effective target set, operation snapshot)
- the target loop on a dedicated worker thread
- persisting the new toggle state exactly once, after the loop
- progress publication and an optional JSONL run journal

State posture
-------------
- The stored state is updated only for COMPLETED and COMPLETED_WITH_ERRORS runs.
- CANCELLED and FATAL runs never touch the stored profile.
- The store's per-name lock is held only for the final state update, never
  across the target loop.
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections.abc import Iterator
from datetime import timezone
from types import MappingProxyType
from typing import Callable, Mapping

from profile_engine.clock import Clock, SystemClock, format_utc
from profile_engine.data_models import Profile, ProfileState
from profile_engine.document import mark_unsupported
from profile_engine.errors import (
    FatalRunError,
    ProfileAlreadyRunningError,
    ProfileEngineError,
    RunHandleError,
)
from profile_engine.operations import OperationRegistry
from profile_engine.paths_and_safety import StorePaths
from profile_engine.profile_store.api import ProfileStore
from profile_engine.run_lock import RunLock, build_run_lock_path
from profile_engine.settings import EngineSettings

from .execute import LoopOutcome, run_apply_plan
from .journal import RunJournal, build_run_journal_path
from .plan import ApplyPlan, TargetResolver, build_apply_plan
from .results import ProgressSnapshot, RunResult, RunStatus, TargetResult, freeze_outcomes

logger = logging.getLogger(__name__)

_END_OF_PROGRESS = object()


class RunHandle:
    """
    Caller-side view of one application run.

    Notes
    -----
    - Only the engine's worker thread changes a handle's state.
    - `progress()` may be consumed once; it ends after the terminal snapshot.
    """

    def __init__(self, *, run_id: str, profile_name: str, requested_state: ProfileState) -> None:
        self.run_id = run_id
        self.profile_name = profile_name
        self.requested_state = requested_state
        self._lock = threading.Lock()
        self._status = RunStatus.PENDING
        self._targets_total = 0
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()
        self._progress: queue.Queue[object] = queue.Queue()
        self._progress_taken = False
        self._result: RunResult | None = None

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._status

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Request cancellation. Takes effect before the next target starts."""
        self._cancel_event.set()

    def done(self) -> bool:
        return self._done_event.is_set()

    def wait(self, timeout: float | None = None) -> RunResult:
        """
        Block until the run is terminal.

        Raises
        ------
        TimeoutError
            If `timeout` elapses first.
        """
        if not self._done_event.wait(timeout):
            raise TimeoutError(f"Run {self.run_id} did not finish within {timeout} seconds")
        assert self._result is not None
        return self._result

    def progress(self) -> Iterator[ProgressSnapshot]:
        """
        Return the run's progress stream.

        The stream yields one snapshot per finished target, then a final snapshot
        carrying the terminal status, and then ends.

        Raises
        ------
        RunHandleError
            If the stream was already requested.
        """
        with self._lock:
            if self._progress_taken:
                raise RunHandleError(f"Progress for run {self.run_id} was already consumed")
            self._progress_taken = True
        return self._iter_progress()

    def _iter_progress(self) -> Iterator[ProgressSnapshot]:
        while True:
            item = self._progress.get()
            if item is _END_OF_PROGRESS:
                return
            assert isinstance(item, ProgressSnapshot)
            yield item

    def _set_running(self, targets_total: int) -> None:
        with self._lock:
            self._status = RunStatus.RUNNING
            self._targets_total = targets_total

    def _publish(self, outcomes: Mapping[str, TargetResult]) -> None:
        with self._lock:
            snapshot = ProgressSnapshot(
                run_id=self.run_id,
                profile_name=self.profile_name,
                requested_state=self.requested_state,
                status=self._status,
                targets_completed=len(outcomes),
                targets_total=self._targets_total,
                outcomes=outcomes,
            )
        self._progress.put(snapshot)

    def _finish(self, result: RunResult) -> None:
        with self._lock:
            self._status = result.status
            self._targets_total = result.targets_total
            self._result = result
        self._publish(result.outcomes)
        self._progress.put(_END_OF_PROGRESS)
        self._done_event.set()


class ApplicationEngine:
    """
    Applies profiles to their targets.

    Parameters
    ----------
    store:
        Profile store; read at apply time and written once per successful run.
    registry:
        Operation registry used for dispatch.
    resolver:
        Resolves targets for profiles with an empty target set.
    paths:
        Store paths. When given, runs take a cross-process lock under
        ``locks_root`` and (if enabled) journal under ``runs_root``.
    settings:
        Engine settings (retries, journaling).
    clock:
        Injectable clock for run identifiers and timestamps.
    on_run_finished:
        Called on the worker thread with each terminal result.
    """

    def __init__(
        self,
        store: ProfileStore,
        registry: OperationRegistry,
        *,
        resolver: TargetResolver | None = None,
        paths: StorePaths | None = None,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        on_run_finished: Callable[[RunResult], None] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._resolver = resolver
        self._paths = paths
        self._settings = settings or EngineSettings.defaults()
        self._clock = clock or SystemClock()
        self._on_run_finished = on_run_finished
        self._lock = threading.Lock()
        self._running: set[str] = set()
        self._threads: dict[str, threading.Thread] = {}

    def is_running(self, name: str) -> bool:
        with self._lock:
            return name in self._running

    def apply(
        self,
        name: str,
        state: ProfileState | str,
        *,
        force: bool = False,
        break_lock: bool = False,
    ) -> RunHandle:
        """
        Start applying a profile asynchronously.

        Parameters
        ----------
        name:
            Profile to apply.
        state:
            Toggle state to apply ('ON'/'OFF', case-insensitive).
        force:
            Break a provably stale cross-process run lock.
        break_lock:
            Break any existing cross-process run lock.

        Returns
        -------
        RunHandle
            Handle for progress, cancellation, and the terminal result.

        Raises
        ------
        ProfileNotFoundError
            If the profile does not exist.
        ProfileAlreadyRunningError
            If the profile already has a run in flight.
        """
        requested = ProfileState.parse(state)

        with self._lock:
            if name in self._running:
                raise ProfileAlreadyRunningError(name)
            self._running.add(name)

        run_id = self._new_run_id()
        run_lock: RunLock | None = None
        try:
            profile = mark_unsupported(self._store.load(name), self._registry)
            if self._paths is not None:
                run_lock = RunLock(
                    lock_path=build_run_lock_path(locks_root=self._paths.locks_root, profile_name=name),
                    profile_name=name,
                    run_id=run_id,
                    force=force,
                    break_lock=break_lock,
                )
                run_lock.acquire()
        except BaseException:
            with self._lock:
                self._running.discard(name)
            raise

        handle = RunHandle(run_id=run_id, profile_name=name, requested_state=requested)
        thread = threading.Thread(
            target=self._run,
            args=(handle, profile, run_lock),
            name=f"appprof-apply-{name}",
            daemon=True,
        )
        with self._lock:
            self._threads[run_id] = thread
        logger.info("Applying profile %r (%s), run %s", name, requested.value, run_id)
        thread.start()
        return handle

    def join(self, timeout: float | None = None) -> None:
        """Wait for every worker thread started so far."""
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    def _run(self, handle: RunHandle, profile: Profile, run_lock: RunLock | None) -> None:
        started_at = format_utc(self._clock.now())
        journal = self._open_journal(handle)
        targets_total = 0
        loop = LoopOutcome(RunStatus.FATAL, MappingProxyType({}), "Run did not start")

        try:
            try:
                plan = build_apply_plan(profile, handle.requested_state, self._resolver)
            except FatalRunError as exc:
                loop = LoopOutcome(RunStatus.FATAL, MappingProxyType({}), exc.reason)
            else:
                targets_total = len(plan.targets)
                handle._set_running(targets_total)
                self._journal(journal, "run_started", _plan_payload(plan, started_at))
                loop = run_apply_plan(
                    plan=plan,
                    registry=self._registry,
                    cancel_event=handle.cancel_event,
                    publish=lambda outcomes: self._on_target(handle, journal, outcomes),
                    document_exists=lambda: self._store.exists(profile.name),
                    retry_passes=self._settings.retry_failed_targets,
                )
                loop = self._persist_state(profile.name, handle.requested_state, loop)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Run %s for profile %r failed unexpectedly", handle.run_id, profile.name)
            loop = LoopOutcome(RunStatus.FATAL, freeze_outcomes(loop.outcomes), f"Unexpected error: {exc}")

        result = RunResult(
            run_id=handle.run_id,
            profile_name=profile.name,
            requested_state=handle.requested_state,
            status=loop.status,
            outcomes=loop.outcomes,
            targets_total=targets_total,
            started_at_utc=started_at,
            finished_at_utc=format_utc(self._clock.now()),
            fatal_reason=loop.fatal_reason,
        )
        self._journal(journal, "run_finished", result.to_dict())
        logger.info("Run %s for profile %r: %s", handle.run_id, profile.name, result.summary_line())

        try:
            if run_lock is not None:
                run_lock.release()
        except ProfileEngineError:
            logger.exception("Failed to release run lock for profile %r", profile.name)
        finally:
            with self._lock:
                self._running.discard(profile.name)

        handle._finish(result)
        if self._on_run_finished is not None:
            try:
                self._on_run_finished(result)
            except Exception:  # noqa: BLE001
                logger.exception("Run-finished callback failed for run %s", handle.run_id)
        with self._lock:
            self._threads.pop(handle.run_id, None)

    def _persist_state(self, name: str, state: ProfileState, loop: LoopOutcome) -> LoopOutcome:
        if loop.status not in {RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ERRORS}:
            return loop
        try:
            self._store.update_state(name, state)
        except ProfileEngineError as exc:
            return LoopOutcome(RunStatus.FATAL, loop.outcomes, f"Failed to persist profile state: {exc}")
        return loop

    def _on_target(
        self,
        handle: RunHandle,
        journal: RunJournal | None,
        outcomes: Mapping[str, TargetResult],
    ) -> None:
        handle._publish(outcomes)
        latest = next(reversed(outcomes.values()))
        self._journal(journal, "target_completed", latest.to_dict())

    def _open_journal(self, handle: RunHandle) -> RunJournal | None:
        if self._paths is None or not self._settings.journal_runs:
            return None
        path = build_run_journal_path(
            runs_root=self._paths.runs_root,
            profile_name=handle.profile_name,
            run_id=handle.run_id,
        )
        try:
            return RunJournal(path, clock=self._clock)
        except OSError:
            logger.warning("Cannot create run journal at %s; continuing without it", path)
            return None

    def _journal(self, journal: RunJournal | None, event: str, data: Mapping[str, object]) -> None:
        if journal is None:
            return
        try:
            journal.append(event, data)
        except OSError:
            logger.warning("Failed to append %r to run journal %s", event, journal.path)

    def _new_run_id(self) -> str:
        stamp = self._clock.now().astimezone(timezone.utc).strftime("%Y%m%d_%H%M%SZ")
        return f"{stamp}_{uuid.uuid4().hex[:8]}"


def _plan_payload(plan: ApplyPlan, started_at: str) -> dict[str, object]:
    return {
        "profile_name": plan.profile_name,
        "requested_state": plan.requested_state.value,
        "targets": list(plan.targets),
        "dynamic_targets": plan.dynamic_targets,
        "operations": [op.kind for op in plan.operations],
        "started_at_utc": started_at,
    }
