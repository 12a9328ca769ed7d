"""
State enums for the billing lifecycle.

These are Django TextChoices so they can be stored, logged and compared
as plain strings.

Transition kinds (one classified plan change):
    unchanged | new_subscription | upgrade | downgrade | cancellation

Webhook event statuses:
    pending → processing → processed | failed

Pass states (one orchestration pass):
    idle → classified → provider_mutated → finalized
    idle/classified/provider_mutated → aborted
"""

from django.db import models


class TransitionKind(models.TextChoices):
    """
    Classification of a change of plan reference.

    NEW_SUBSCRIPTION also counts as an upgrade for hook purposes.
    """

    UNCHANGED = "unchanged", "Unchanged"
    NEW_SUBSCRIPTION = "new_subscription", "New Subscription"
    UPGRADE = "upgrade", "Upgrade"
    DOWNGRADE = "downgrade", "Downgrade"
    CANCELLATION = "cancellation", "Cancellation"

    @property
    def is_upgrade(self) -> bool:
        return self in (TransitionKind.NEW_SUBSCRIPTION, TransitionKind.UPGRADE)


class PlanDifference(models.TextChoices):
    """Presentation-only description of a candidate plan."""

    UPGRADE = "upgrade", "Upgrade"
    DOWNGRADE = "downgrade", "Downgrade"
    START_TRIAL = "start_trial", "Start Trial"


class PassState(models.TextChoices):
    """
    States of one orchestration pass.

    Terminal states: FINALIZED, ABORTED
    """

    IDLE = "idle", "Idle"
    CLASSIFIED = "classified", "Classified"
    PROVIDER_MUTATED = "provider_mutated", "Provider Mutated"
    FINALIZED = "finalized", "Finalized"
    ABORTED = "aborted", "Aborted"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status of a stored provider webhook event.

    PENDING → PROCESSING → PROCESSED
                         ↘ FAILED → PROCESSING (retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"
