"""
Billing app configuration.

This app keeps a local subscription record in sync with the remote
billing provider:
- Plan catalogue and per-owner Subscription records
- Lifecycle orchestration of plan changes and card updates
- Provider webhook callbacks
"""

from django.apps import AppConfig


class BillingConfig(AppConfig):
    """Configuration for the billing application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Billing"
