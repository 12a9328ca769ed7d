"""
Plan model: one purchasable tier in the billing provider's catalogue.
"""

from __future__ import annotations

from decimal import Decimal

from django.db import models

from core.models import BaseModel


class Plan(BaseModel):
    """
    A subscription tier.

    The integer primary key doubles as the tier order used to classify
    upgrades and downgrades: create plans cheapest first.

    Fields:
        name: Display name
        provider_plan_id: Plan (price) id at the billing provider
        price: Price per billing period, zero for free plans
    """

    name = models.CharField(
        max_length=255,
        help_text="Display name of the plan",
    )

    provider_plan_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Plan (price) ID at the billing provider (price_xxx)",
    )

    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Price per billing period, in major currency units",
    )

    class Meta:
        ordering = ["id"]
        verbose_name = "Plan"
        verbose_name_plural = "Plans"

    def __str__(self) -> str:
        return f"Plan({self.name}, {self.price})"

    def is_upgrade_from(self, other: Plan) -> bool:
        """
        Whether moving from other to this plan costs at least as much.
        """
        return self.price >= other.price
