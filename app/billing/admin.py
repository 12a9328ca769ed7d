"""
Billing admin configuration.

Subscriptions are read-only here: plan changes must go through
SubscriptionService so they run a lifecycle pass under the
subscription's lock.
"""

from django.contrib import admin

from billing.models import Plan, Subscription, WebhookEvent
from billing.states import WebhookEventStatus
from billing.tasks import process_webhook_event

__all__ = [
    "PlanAdmin",
    "SubscriptionAdmin",
    "WebhookEventAdmin",
]


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = ["id", "name", "provider_plan_id", "price", "created_at"]
    search_fields = ["name", "provider_plan_id"]
    readonly_fields = ["created_at", "updated_at"]
    ordering = ["id"]


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Inspection of subscriptions and their provider state."""

    list_display = [
        "id",
        "owner",
        "plan",
        "current_price",
        "provider_customer_id",
        "provider_subscription_id",
        "last_four",
        "created_at",
    ]
    list_filter = ["plan"]
    search_fields = [
        "id",
        "owner__email",
        "provider_customer_id",
        "provider_subscription_id",
    ]
    list_select_related = ["owner", "plan"]
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "owner", "plan", "current_price")}),
        (
            "Provider",
            {"fields": ("provider_customer_id", "provider_subscription_id", "last_four")},
        ),
        (
            "Attribution",
            {"fields": ("referral_id", "tracking_id"), "classes": ("collapse",)},
        ),
        (
            "Metadata",
            {"fields": ("version", "created_at", "updated_at"), "classes": ("collapse",)},
        ),
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = [
        "provider_event_id",
        "event_type",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type"]
    search_fields = ["provider_event_id", "event_type"]
    readonly_fields = [
        "id",
        "provider_event_id",
        "event_type",
        "payload",
        "processed_at",
        "error_message",
        "retry_count",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    actions = ["retry_events"]

    @admin.action(description="Re-process selected events")
    def retry_events(self, request, queryset):
        queued = 0
        for webhook_event in queryset.exclude(status=WebhookEventStatus.PROCESSED):
            process_webhook_event.delay(str(webhook_event.id))
            queued += 1
        self.message_user(request, f"Queued {queued} webhook event(s) for processing.")
