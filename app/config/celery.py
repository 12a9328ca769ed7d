"""
Celery configuration for the billing service.

Celery runs webhook processing (billing.tasks.process_webhook_event) and
the periodic retry of failed webhook events. Redis is both the message
broker and the result backend. Tasks are auto-discovered from installed
apps.

Usage:
    from billing.tasks import process_webhook_event

    process_webhook_event.delay(str(webhook_event.id))
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
