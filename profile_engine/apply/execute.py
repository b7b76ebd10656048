"""
Target-loop execution for application runs.

This module runs an `ApplyPlan`: every operation, in order, against every
target, in order, dispatching through the operation registry.

Failure posture
---------------
- A failed operation never stops other targets.
- A failed operation stops the rest of its own target only when it is fail-fast.
- Unsupported kinds, and kinds that do not apply to the requested state, are
  recorded as skipped.
- Cancellation is observed before each target starts, never mid-operation.
  Nothing already applied is rolled back.
- Fatal conditions (the profile document vanished, a handler reported an
  infrastructure failure) stop the loop but keep recorded outcomes.

Design notes
------------
- This module performs no persistence. The service decides what to save.
- Outcomes preserve plan target order exactly; retries replace a target's
  outcome in place and run in plan order.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, MutableSequence, TypeVar

from profile_engine.data_models import OperationDescriptor, ProfileState
from profile_engine.errors import FatalRunError, OperationSkipped
from profile_engine.operations import OperationRegistry

from .plan import ApplyPlan
from .results import Outcome, OperationResult, RunStatus, TargetResult, freeze_outcomes, worst_outcome

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressPublisher = Callable[[Mapping[str, TargetResult]], None]


@dataclass(frozen=True, slots=True)
class LoopOutcome:
    """
    Result of the target loop, before any state is persisted.

    Attributes
    ----------
    status:
        One of COMPLETED, COMPLETED_WITH_ERRORS, CANCELLED, FATAL.
    outcomes:
        Read-only ``target -> TargetResult`` map in plan order.
    fatal_reason:
        Reason for a FATAL status; None otherwise.
    """

    status: RunStatus
    outcomes: Mapping[str, TargetResult]
    fatal_reason: str | None = None


def execute_operation(
    *,
    operation_index: int,
    operation: OperationDescriptor,
    target: str,
    requested_state: ProfileState,
    registry: OperationRegistry,
) -> OperationResult:
    """
    Execute a single operation against a single target.

    Raises
    ------
    FatalRunError
        Only if the handler itself raises it.
    """
    registered = None if operation.unsupported else registry.get(operation.kind)
    if registered is None:
        return OperationResult(
            operation_index=operation_index,
            kind=operation.kind,
            outcome=Outcome.SKIPPED,
            message=f"Unsupported operation kind: {operation.kind!r}",
        )

    if requested_state not in registered.spec.applies_to:
        return OperationResult(
            operation_index=operation_index,
            kind=operation.kind,
            outcome=Outcome.SKIPPED,
            message=f"Not applicable when turning the profile {requested_state.value}.",
        )

    try:
        registered.handler(target, dict(operation.params), requested_state)
    except FatalRunError:
        raise
    except OperationSkipped as exc:
        return OperationResult(
            operation_index=operation_index,
            kind=operation.kind,
            outcome=Outcome.SKIPPED,
            message=str(exc) or "Skipped by handler.",
        )
    except Exception as exc:  # noqa: BLE001
        return OperationResult(
            operation_index=operation_index,
            kind=operation.kind,
            outcome=Outcome.FAILED,
            message=str(exc) or type(exc).__name__,
        )
    return OperationResult(
        operation_index=operation_index,
        kind=operation.kind,
        outcome=Outcome.SUCCESS,
    )


def execute_target(
    *,
    target: str,
    operations: tuple[OperationDescriptor, ...],
    requested_state: ProfileState,
    registry: OperationRegistry,
    attempts: int = 1,
) -> TargetResult:
    """Run every operation for one target, in order, honoring fail-fast."""
    results: list[OperationResult] = []
    for index, operation in enumerate(operations):
        result = execute_operation(
            operation_index=index,
            operation=operation,
            target=target,
            requested_state=requested_state,
            registry=registry,
        )
        results.append(result)
        if result.outcome is Outcome.FAILED:
            logger.warning("Operation %s failed for %s: %s", operation.kind, target, result.message)
            if operation.fail_fast:
                break
    return TargetResult(
        target=target,
        outcome=worst_outcome(r.outcome for r in results),
        operations=tuple(results),
        attempts=attempts,
    )


def run_apply_plan(
    *,
    plan: ApplyPlan,
    registry: OperationRegistry,
    cancel_event: threading.Event,
    publish: ProgressPublisher,
    document_exists: Callable[[], bool] | None = None,
    retry_passes: int = 0,
) -> LoopOutcome:
    """
    Run the target loop for a plan.

    Parameters
    ----------
    plan:
        Immutable plan to execute.
    registry:
        Operation registry used for dispatch.
    cancel_event:
        Cooperative cancellation signal, checked before each target.
    publish:
        Called with a read-only outcome map after each target finishes.
    document_exists:
        Checked before each target; returning False makes the run fatal.
    retry_passes:
        Extra passes over targets whose outcome is FAILED.

    Returns
    -------
    LoopOutcome
        Status and outcomes. Never raises for per-operation or per-target failures.
    """
    outcomes: dict[str, TargetResult] = {}

    def _run_one(target: str, attempts: int) -> None:
        if document_exists is not None and not document_exists():
            raise FatalRunError(f"Profile document disappeared mid-run: {plan.profile_name!r}")
        outcomes[target] = execute_target(
            target=target,
            operations=plan.operations,
            requested_state=plan.requested_state,
            registry=registry,
            attempts=attempts,
        )
        publish(freeze_outcomes(outcomes))

    try:
        for target in plan.targets:
            if cancel_event.is_set():
                return LoopOutcome(RunStatus.CANCELLED, freeze_outcomes(outcomes))
            _run_one(target, attempts=1)

        plan_index = {target: index for index, target in enumerate(plan.targets)}
        retry_queue = [t for t, r in outcomes.items() if r.outcome is Outcome.FAILED]
        for _ in range(retry_passes):
            if not retry_queue:
                break
            # Removals reorder the queue; run it in plan order.
            for target in sorted(retry_queue, key=plan_index.__getitem__):
                if cancel_event.is_set():
                    return LoopOutcome(RunStatus.CANCELLED, freeze_outcomes(outcomes))
                _run_one(target, attempts=outcomes[target].attempts + 1)
            remove_unstable(retry_queue, lambda t: outcomes[t].outcome is not Outcome.FAILED)
    except FatalRunError as exc:
        return LoopOutcome(RunStatus.FATAL, freeze_outcomes(outcomes), fatal_reason=exc.reason)

    if any(r.outcome is Outcome.FAILED for r in outcomes.values()):
        status = RunStatus.COMPLETED_WITH_ERRORS
    else:
        status = RunStatus.COMPLETED
    return LoopOutcome(status, freeze_outcomes(outcomes))


def remove_unstable(items: MutableSequence[T], predicate: Callable[[T], bool]) -> int:
    """
    Remove matching items in place without preserving order.

    Each match is overwritten by the current last live element, and the tail is
    truncated once at the end.

    Returns
    -------
    int
        Number of removed items.
    """
    size = len(items)
    index = 0
    while index < size:
        if predicate(items[index]):
            size -= 1
            items[index] = items[size]
        else:
            index += 1
    removed = len(items) - size
    del items[size:]
    return removed
