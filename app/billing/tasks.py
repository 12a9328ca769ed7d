"""
Celery tasks for billing webhook processing.

Usage:
    from billing.tasks import process_webhook_event

    event, created = WebhookEvent.objects.get_or_create(
        provider_event_id=event_id,
        defaults={"event_type": event_type, "payload": payload},
    )
    if created:
        process_webhook_event.delay(str(event.id))

retry_failed_webhooks is meant to be scheduled with celery-beat.
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task
from django.conf import settings
from django.db import transaction

from billing.models import WebhookEvent
from billing.states import WebhookEventStatus

logger = logging.getLogger(__name__)

MAX_WEBHOOK_RETRIES = getattr(settings, "BILLING_WEBHOOK_MAX_RETRIES", 5)
RETRY_BATCH_SIZE = 100


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Process one stored webhook event.

    Already-processed events are skipped. A handler that returns a
    failed result marks the event failed without retrying; an exception
    marks it failed and is re-raised so Celery retries with backoff.

    Returns:
        Dict with the processing status
    """
    from billing.webhooks import dispatch_webhook

    if isinstance(webhook_event_id, str):
        webhook_event_id = UUID(webhook_event_id)
    log_context = {"webhook_event_id": str(webhook_event_id)}

    webhook_event = WebhookEvent.objects.filter(id=webhook_event_id).first()
    if webhook_event is None:
        logger.error("WebhookEvent not found", extra=log_context)
        return {"status": "not_found", "webhook_event_id": str(webhook_event_id)}

    log_context.update(
        provider_event_id=webhook_event.provider_event_id,
        event_type=webhook_event.event_type,
    )

    if webhook_event.status == WebhookEventStatus.PROCESSED:
        logger.info("WebhookEvent already processed, skipping", extra=log_context)
        return {"status": "already_processed", "webhook_event_id": str(webhook_event_id)}

    webhook_event.mark_processing()
    webhook_event.save()
    logger.info(
        f"Dispatching webhook: {webhook_event.event_type}",
        extra={**log_context, "retry_count": webhook_event.retry_count},
    )

    try:
        with transaction.atomic():
            result = dispatch_webhook(webhook_event)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        webhook_event.mark_failed(error_msg)
        webhook_event.save()
        logger.exception(
            "Webhook processing failed with exception",
            extra={**log_context, "error": error_msg},
        )
        raise

    if not result.success:
        error_msg = result.error or "Handler returned failure"
        webhook_event.mark_failed(error_msg)
        webhook_event.save()
        logger.warning(
            f"Webhook handler failed: {error_msg}",
            extra={**log_context, "error_code": result.error_code},
        )
        return {
            "status": "handler_failed",
            "webhook_event_id": str(webhook_event_id),
            "error": error_msg,
        }

    webhook_event.mark_processed()
    webhook_event.save()
    logger.info("Webhook processed successfully", extra=log_context)
    return {
        "status": "processed",
        "webhook_event_id": str(webhook_event_id),
        "provider_event_id": webhook_event.provider_event_id,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """Re-queue failed webhook events that have retries left."""
    failed_events = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=MAX_WEBHOOK_RETRIES,
    ).order_by("created_at")[:RETRY_BATCH_SIZE]

    queued_count = 0
    for webhook_event in failed_events:
        process_webhook_event.delay(str(webhook_event.id))
        queued_count += 1
        logger.info(
            "Queued failed webhook for retry",
            extra={
                "webhook_event_id": str(webhook_event.id),
                "provider_event_id": webhook_event.provider_event_id,
                "retry_count": webhook_event.retry_count,
            },
        )

    logger.info(
        f"Queued {queued_count} failed webhooks for retry",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}
