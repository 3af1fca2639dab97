from django.contrib import admin
from django.utils.html import format_html
from django.utils.translation import gettext_lazy as _

from .campaign_service import cancel_campaign
from .models import Campaign, CampaignRecipient


@admin.register(Campaign)
class CampaignAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'restaurant', 'scheduled_for', 'audience', 'status',
        'delivery_stats', 'created_by', 'created_at'
    ]
    list_filter = ['status', 'audience', 'scheduled_for']
    search_fields = ['message', 'restaurant__name']
    raw_id_fields = ['restaurant', 'created_by']
    # Status only moves through the processor or the cancel action
    readonly_fields = [
        'status', 'heartbeat_at', 'total_recipients', 'sent_count',
        'failed_count', 'completed_at', 'created_at', 'updated_at'
    ]
    # The recipient snapshot is taken at creation
    snapshot_fields = ['restaurant', 'audience']
    content_fields = ['message', 'media_url', 'template_name', 'scheduled_for', 'delay_seconds']
    actions = ['cancel_selected']

    fieldsets = (
        (_('Content'), {
            'fields': ('restaurant', 'message', 'media_url', 'template_name')
        }),
        (_('Targeting'), {
            'fields': ('audience',)
        }),
        (_('Scheduling'), {
            'fields': ('scheduled_for', 'delay_seconds', 'status', 'heartbeat_at')
        }),
        (_('Statistics'), {
            'fields': (
                'total_recipients', 'sent_count', 'failed_count',
                'completed_at', 'created_at', 'updated_at'
            ),
            'classes': ('collapse',)
        }),
    )

    def delivery_stats(self, obj):
        if obj.processed_count == 0:
            return "-"
        return format_html(
            '<span style="color: green;">{}</span> / '
            '<span style="color: red;">{}</span> / '
            '<span style="color: gray;">{}</span>',
            obj.sent_count,
            obj.failed_count,
            obj.total_recipients
        )
    delivery_stats.short_description = _('Sent/Failed/Total')

    @admin.action(description=_('Cancel selected pending campaigns'))
    def cancel_selected(self, request, queryset):
        cancelled = sum(1 for pk in queryset.values_list('pk', flat=True) if cancel_campaign(pk))
        self.message_user(request, _('%(count)d campaign(s) cancelled.') % {'count': cancelled})

    def has_add_permission(self, request):
        # Campaigns are created through the dashboard, which snapshots the audience
        return False

    def get_readonly_fields(self, request, obj=None):
        fields = list(self.readonly_fields) + self.snapshot_fields
        if obj is not None and obj.status != Campaign.STATUS_PENDING:
            fields += self.content_fields
        return fields


@admin.register(CampaignRecipient)
class CampaignRecipientAdmin(admin.ModelAdmin):
    list_display = ['campaign', 'customer', 'status', 'permanently_failed', 'retry_count', 'last_retry_at', 'sent_at']
    list_filter = ['status', 'permanently_failed']
    search_fields = ['customer__name', 'customer__phone']
    readonly_fields = [
        'status', 'permanently_failed', 'retry_count', 'last_retry_at',
        'error_message', 'gateway_message_id', 'sent_at'
    ]
    raw_id_fields = ['campaign', 'customer']

    def has_add_permission(self, request):
        return False
