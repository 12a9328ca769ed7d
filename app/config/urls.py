"""
URL configuration for the billing service.

URL Structure:
    /admin/  - Django admin (plans, subscriptions, webhook events)

Webhook delivery and signature verification are handled by the embedding
application, which stores verified events as billing.models.WebhookEvent
and queues billing.tasks.process_webhook_event.
"""

from django.contrib import admin
from django.urls import path

urlpatterns = [
    path("admin/", admin.site.urls),
]

admin.site.site_header = "Billing Admin"
admin.site.site_title = "Billing Admin"
admin.site.index_title = "Subscriptions and plans"
