from django.contrib import admin
from .models import MessageLog, EngagementMetric


@admin.register(MessageLog)
class MessageLogAdmin(admin.ModelAdmin):
    list_display = ['created_at', 'restaurant', 'customer', 'campaign', 'status', 'via']
    list_filter = ['status', 'via', 'restaurant', 'created_at']
    search_fields = ['customer__name', 'customer__phone', 'body', 'gateway_message_id']
    raw_id_fields = ['customer', 'campaign']
    readonly_fields = [
        'restaurant', 'customer', 'campaign', 'template_name', 'body', 'media_url',
        'status', 'via', 'gateway_message_id', 'error_message', 'created_at'
    ]

    def has_change_permission(self, request, obj=None):
        # Audit trail: entries are never edited
        return False


@admin.register(EngagementMetric)
class EngagementMetricAdmin(admin.ModelAdmin):
    list_display = ['customer', 'restaurant', 'messages_sent', 'messages_opened', 'orders_after_promo', 'score', 'last_computed']
    list_filter = ['restaurant']
    search_fields = ['customer__name', 'customer__phone']
    raw_id_fields = ['customer']
