"""
Plan comparison rules.

classify() decides which lifecycle transition a change of plan reference
represents. describe_difference() is the presentation-side counterpart
used to label a candidate plan ("upgrade", "downgrade", "start_trial").

Both are pure functions: no I/O, no model access.

Tier ordering:
    classify() compares plan identifiers and assumes they were assigned in
    tier order (a higher id is a higher tier). Nothing enforces that when
    plans are created; catalogues that add a cheaper plan later will see
    it classified as an upgrade. describe_difference() compares prices
    instead (see Plan.is_upgrade_from).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from billing.exceptions import PlanOrderingError
from billing.states import PlanDifference, TransitionKind

if TYPE_CHECKING:
    from billing.models import Plan


def classify(old_plan_id: Any | None, new_plan_id: Any | None) -> TransitionKind:
    """
    Classify a change of plan reference.

    Args:
        old_plan_id: Plan id before the change (None = no plan)
        new_plan_id: Plan id after the change (None = no plan)

    Returns:
        The TransitionKind for the change

    Raises:
        PlanOrderingError: If both ids are present but cannot be ordered

    Example:
        classify(None, 2)  # TransitionKind.NEW_SUBSCRIPTION
        classify(2, 1)     # TransitionKind.DOWNGRADE
        classify(2, None)  # TransitionKind.CANCELLATION
    """
    if old_plan_id == new_plan_id:
        return TransitionKind.UNCHANGED
    if old_plan_id is None:
        return TransitionKind.NEW_SUBSCRIPTION
    if new_plan_id is None:
        return TransitionKind.CANCELLATION

    try:
        upgrading = old_plan_id < new_plan_id
    except TypeError as e:
        raise PlanOrderingError(
            f"Cannot order plan ids {old_plan_id!r} and {new_plan_id!r}"
        ) from e

    return TransitionKind.UPGRADE if upgrading else TransitionKind.DOWNGRADE


def describe_difference(
    current_plan: Plan | None,
    candidate_plan: Plan,
    *,
    persisted: bool,
    free_trial: bool,
) -> PlanDifference:
    """
    Describe how a candidate plan relates to the current one.

    Args:
        current_plan: The subscription's current plan, if any
        candidate_plan: The plan being offered
        persisted: Whether the subscription has been saved before
        free_trial: Whether new subscriptions start with a free trial

    Returns:
        PlanDifference.START_TRIAL only for a brand-new subscription with
        no plan while free trials are enabled; otherwise UPGRADE or
        DOWNGRADE by price.
    """
    if current_plan is None:
        if not persisted and free_trial:
            return PlanDifference.START_TRIAL
        return PlanDifference.UPGRADE

    if candidate_plan.is_upgrade_from(current_plan):
        return PlanDifference.UPGRADE
    return PlanDifference.DOWNGRADE
