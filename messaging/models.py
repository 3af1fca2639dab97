"""
Messaging Models

Append-only log of every physical send attempt and the per-customer
engagement counters it feeds.
"""
from django.db import models
from django.db.models import F
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class MessageLog(models.Model):
    """
    One row per attempted WhatsApp send (campaign or ad-hoc).
    Written once, never updated.
    """

    STATUS_SENT = 'sent'
    STATUS_FAILED = 'failed'

    STATUS_CHOICES = [
        (STATUS_SENT, _('Sent')),
        (STATUS_FAILED, _('Failed')),
    ]

    VIA_EVOLUTION = 'evolution'

    VIA_CHOICES = [
        (VIA_EVOLUTION, _('Evolution API')),
    ]

    restaurant = models.ForeignKey(
        'organizations.Restaurant',
        on_delete=models.CASCADE,
        related_name='message_logs',
        verbose_name=_('Restaurant')
    )
    customer = models.ForeignKey(
        'accounts.Customer',
        on_delete=models.CASCADE,
        related_name='message_logs',
        verbose_name=_('Customer')
    )
    campaign = models.ForeignKey(
        'marketing.Campaign',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='message_logs',
        verbose_name=_('Campaign')
    )
    template_name = models.CharField(
        _('Template'),
        max_length=100,
        blank=True,
        null=True
    )
    body = models.TextField(_('Message Body'))
    media_url = models.URLField(_('Media URL'), max_length=500, blank=True, null=True)
    status = models.CharField(
        _('Status'),
        max_length=20,
        choices=STATUS_CHOICES
    )
    via = models.CharField(
        _('Channel'),
        max_length=20,
        choices=VIA_CHOICES,
        default=VIA_EVOLUTION
    )
    gateway_message_id = models.CharField(
        _('Gateway Message ID'),
        max_length=128,
        blank=True,
        null=True
    )
    error_message = models.TextField(_('Error Message'), blank=True, null=True)
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)

    class Meta:
        verbose_name = _('Message Log')
        verbose_name_plural = _('Message Logs')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['customer', 'created_at'], name='msglog_customer_idx'),
            models.Index(fields=['campaign', 'status'], name='msglog_campaign_idx'),
        ]

    def __str__(self):
        return f"{self.customer_id} [{self.status}] {self.created_at:%Y-%m-%d %H:%M}"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValueError("MessageLog entries are append-only")
        super().save(*args, **kwargs)


class EngagementMetric(models.Model):
    """Per-customer engagement counters"""

    restaurant = models.ForeignKey(
        'organizations.Restaurant',
        on_delete=models.CASCADE,
        related_name='engagement_metrics',
        verbose_name=_('Restaurant')
    )
    customer = models.OneToOneField(
        'accounts.Customer',
        on_delete=models.CASCADE,
        related_name='engagement',
        verbose_name=_('Customer')
    )
    messages_sent = models.PositiveIntegerField(_('Messages Sent'), default=0)
    messages_opened = models.PositiveIntegerField(_('Messages Opened'), default=0)
    orders_after_promo = models.PositiveIntegerField(_('Orders After Promo'), default=0)
    score = models.PositiveSmallIntegerField(_('Score'), default=0)
    last_computed = models.DateTimeField(_('Last Computed'), null=True, blank=True)

    class Meta:
        verbose_name = _('Engagement Metric')
        verbose_name_plural = _('Engagement Metrics')

    def __str__(self):
        return f"{self.customer_id}: {self.messages_sent} sent"

    @classmethod
    def record_send(cls, customer):
        """
        Count one send attempt for the customer.
        Creates the row on first use; the increment itself is a single UPDATE.
        """
        metric, _created = cls.objects.get_or_create(
            customer=customer,
            defaults={'restaurant_id': customer.restaurant_id}
        )
        cls.objects.filter(pk=metric.pk).update(
            messages_sent=F('messages_sent') + 1,
            last_computed=timezone.now()
        )
        return metric
