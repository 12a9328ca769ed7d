"""
WebhookEvent model for provider webhook tracking.

Events arrive already verified. Each one is stored once, keyed by the
provider's event id, and processed by billing.tasks.process_webhook_event.

Usage:
    event, created = WebhookEvent.objects.get_or_create(
        provider_event_id="evt_123",
        defaults={"event_type": "charge.failed", "payload": payload},
    )
    if created:
        process_webhook_event.delay(str(event.id))
"""

from __future__ import annotations

from typing import Any

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.states import WebhookEventStatus


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    A provider webhook event and its processing status.

    Fields:
        provider_event_id: Provider event ID (evt_xxx), unique
        event_type: Provider event type (e.g. "invoice.payment_succeeded")
        payload: Full event payload
        status: Processing status
        processed_at: When processing succeeded
        error_message: Last processing error
        retry_count: Number of processing attempts
    """

    provider_event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Provider event ID (evt_xxx) - unique for idempotency",
    )

    event_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Provider event type (e.g. 'charge.failed')",
    )

    payload = models.JSONField(
        help_text="Full webhook payload",
    )

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "retry_count"], name="billing_wh_status_retry_idx"),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.provider_event_id}, {self.event_type})"

    @property
    def can_retry(self) -> bool:
        max_retries = getattr(settings, "BILLING_WEBHOOK_MAX_RETRIES", 5)
        return self.status == WebhookEventStatus.FAILED and self.retry_count < max_retries

    # Status changes below do not save; the caller saves.

    def mark_processing(self) -> None:
        self.status = WebhookEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        self.status = WebhookEventStatus.FAILED
        self.error_message = error_message

    @property
    def data_object(self) -> dict[str, Any]:
        """The event's data.object, or an empty dict."""
        data = self.payload.get("data") if isinstance(self.payload, dict) else None
        if not isinstance(data, dict):
            return {}
        obj = data.get("object")
        return obj if isinstance(obj, dict) else {}
