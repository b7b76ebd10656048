"""
Apply planning.

Planning is side-effect free apart from target resolution: it fixes the
effective target set and the operation list for one run, so the target loop
works from an immutable plan and never observes later edits to the profile.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from profile_engine.data_models import OperationDescriptor, Profile, ProfileState, dedupe_targets
from profile_engine.errors import FatalRunError


class TargetResolver(Protocol):
    """Resolves the dynamic target set for profiles that list no targets."""

    def __call__(self, profile: Profile) -> Sequence[str]: ...


@dataclass(frozen=True, slots=True)
class ApplyPlan:
    """
    Immutable input to a run's target loop.

    Attributes
    ----------
    profile_name:
        Profile being applied.
    requested_state:
        Toggle state being applied.
    targets:
        Effective targets in execution order.
    operations:
        Operations in execution order.
    dynamic_targets:
        True if `targets` came from the resolver rather than the profile.
    """

    profile_name: str
    requested_state: ProfileState
    targets: tuple[str, ...]
    operations: tuple[OperationDescriptor, ...]
    dynamic_targets: bool = False


def build_apply_plan(
    profile: Profile,
    requested_state: ProfileState,
    resolver: TargetResolver | None = None,
) -> ApplyPlan:
    """
    Build the plan for one run.

    Parameters
    ----------
    profile:
        Detached profile; the plan keeps detached copies of its operations.
    requested_state:
        Toggle state to apply.
    resolver:
        Used only when the profile has no static targets. Without a resolver an
        empty target set yields an empty plan.

    Raises
    ------
    FatalRunError
        If the resolver fails or returns something other than target strings.
    """
    operations = tuple(op.detached() for op in profile.operations)
    if profile.targets:
        return ApplyPlan(
            profile_name=profile.name,
            requested_state=requested_state,
            targets=profile.targets,
            operations=operations,
        )

    if resolver is None:
        targets: tuple[str, ...] = ()
    else:
        try:
            resolved = list(resolver(profile))
        except Exception as exc:  # noqa: BLE001
            raise FatalRunError(f"Target resolution failed: {exc}") from exc
        if not all(isinstance(t, str) and t for t in resolved):
            raise FatalRunError("Target resolver returned a non-string or empty target.")
        targets = dedupe_targets(resolved)

    return ApplyPlan(
        profile_name=profile.name,
        requested_state=requested_state,
        targets=targets,
        operations=operations,
        dynamic_targets=True,
    )
