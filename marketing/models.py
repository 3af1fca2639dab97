"""
Marketing Models for Scheduled WhatsApp Campaigns

A Campaign is one scheduled bulk send; CampaignRecipient rows are the
audience snapshot taken at creation time, each carrying its own delivery
state and retry bookkeeping.
"""
from django.db import models
from django.db.models import Q
from django.contrib.auth.models import User
from django.core.validators import MinValueValidator
from django.utils.translation import gettext_lazy as _

from .exceptions import InvalidTransition


# Attempts per recipient, fixed for every campaign
MAX_RETRIES = 3


class Campaign(models.Model):
    """
    Scheduled bulk WhatsApp message for one restaurant.

    Status flow: pending -> processing -> completed, or pending -> cancelled.
    A campaign completes once no recipient is actionable, however many of
    them failed permanently.
    """

    # Audience choices
    AUDIENCE_ALL = 'all'
    AUDIENCE_RECENT = 'recent'  # Ordered within the activity window
    AUDIENCE_INACTIVE = 'inactive'  # No order, or last order before the window
    AUDIENCE_EXPLICIT = 'explicit'  # Operator-picked customers

    AUDIENCE_CHOICES = [
        (AUDIENCE_ALL, _('All Customers')),
        (AUDIENCE_RECENT, _('Recently Active')),
        (AUDIENCE_INACTIVE, _('Inactive')),
        (AUDIENCE_EXPLICIT, _('Selected Customers')),
    ]

    # Status choices
    STATUS_PENDING = 'pending'
    STATUS_PROCESSING = 'processing'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (STATUS_PENDING, _('Pending')),
        (STATUS_PROCESSING, _('Processing')),
        (STATUS_COMPLETED, _('Completed')),
        (STATUS_CANCELLED, _('Cancelled')),
    ]

    ALLOWED_TRANSITIONS = {
        STATUS_PENDING: {STATUS_PROCESSING, STATUS_CANCELLED},
        STATUS_PROCESSING: {STATUS_PROCESSING, STATUS_COMPLETED},
        STATUS_COMPLETED: set(),
        STATUS_CANCELLED: set(),
    }

    ACTIVE_STATUSES = [STATUS_PENDING, STATUS_PROCESSING]

    restaurant = models.ForeignKey(
        'organizations.Restaurant',
        on_delete=models.CASCADE,
        related_name='campaigns',
        verbose_name=_('Restaurant')
    )
    created_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_campaigns',
        verbose_name=_('Created By')
    )

    # Content
    message = models.TextField(_('Message'))
    media_url = models.URLField(
        _('Media URL'),
        max_length=500,
        blank=True,
        null=True,
        help_text=_('Optional image or document sent with the message')
    )
    template_name = models.CharField(
        _('Template'),
        max_length=100,
        blank=True,
        null=True,
        help_text=_('Optional template tag, kept on every message log entry')
    )
    audience = models.CharField(
        _('Audience'),
        max_length=20,
        choices=AUDIENCE_CHOICES,
        default=AUDIENCE_ALL
    )

    # Scheduling
    scheduled_for = models.DateTimeField(_('Scheduled For'))
    delay_seconds = models.PositiveIntegerField(
        _('Delay Between Messages (seconds)'),
        default=5,
        validators=[MinValueValidator(0)]
    )

    # Status tracking
    status = models.CharField(
        _('Status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING
    )
    heartbeat_at = models.DateTimeField(
        _('Lease Heartbeat'),
        null=True,
        blank=True,
        help_text=_('Set while a processor invocation is working this campaign')
    )

    # Delivery statistics
    total_recipients = models.PositiveIntegerField(_('Total Recipients'), default=0)
    sent_count = models.PositiveIntegerField(_('Sent Count'), default=0)
    failed_count = models.PositiveIntegerField(_('Failed Count'), default=0)

    # Audit fields
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)
    updated_at = models.DateTimeField(_('Updated At'), auto_now=True)
    completed_at = models.DateTimeField(_('Completed At'), null=True, blank=True)

    class Meta:
        verbose_name = _('Campaign')
        verbose_name_plural = _('Campaigns')
        ordering = ['-scheduled_for']
        indexes = [
            models.Index(fields=['status', 'scheduled_for'], name='campaign_due_idx'),
            models.Index(fields=['restaurant', 'scheduled_for'], name='campaign_tenant_idx'),
        ]

    def __str__(self):
        return f"{self.restaurant} @ {self.scheduled_for:%Y-%m-%d %H:%M} ({self.get_status_display()})"

    @classmethod
    def can_transition(cls, current, new):
        return new in cls.ALLOWED_TRANSITIONS.get(current, set())

    def transition(self, new_status, **fields):
        """
        Move to ``new_status`` with a conditional UPDATE on the current status.

        Raises InvalidTransition if the state machine forbids the move.
        Returns False when another writer changed the status first.
        """
        if not self.can_transition(self.status, new_status):
            raise InvalidTransition(
                f"Campaign {self.pk}: {self.status} -> {new_status} is not allowed"
            )
        updated = Campaign.objects.filter(pk=self.pk, status=self.status).update(
            status=new_status, **fields
        )
        if updated:
            self.status = new_status
            for name, value in fields.items():
                setattr(self, name, value)
        return bool(updated)

    @property
    def is_cancellable(self):
        return self.status == self.STATUS_PENDING

    @property
    def is_finished(self):
        return self.status in (self.STATUS_COMPLETED, self.STATUS_CANCELLED)

    @property
    def processed_count(self):
        return self.sent_count + self.failed_count

    @property
    def progress_percentage(self):
        """Share of recipients that reached a terminal state"""
        if self.total_recipients == 0:
            return 0
        return round((self.processed_count / self.total_recipients) * 100, 1)


class CampaignRecipientQuerySet(models.QuerySet):

    def actionable(self):
        """Recipients that may still be attempted (now or after their backoff)"""
        return self.filter(
            Q(status=CampaignRecipient.STATUS_PENDING)
            | Q(
                status=CampaignRecipient.STATUS_FAILED,
                permanently_failed=False,
                retry_count__lt=MAX_RETRIES,
            )
        )

    def retrying(self):
        return self.filter(
            status=CampaignRecipient.STATUS_FAILED,
            permanently_failed=False,
            retry_count__lt=MAX_RETRIES,
        )

    def permanently_failed(self):
        return self.filter(status=CampaignRecipient.STATUS_FAILED).filter(
            Q(permanently_failed=True) | Q(retry_count__gte=MAX_RETRIES)
        )


class CampaignRecipient(models.Model):
    """
    Delivery state of one customer within one campaign.

    pending -> sent (terminal), or pending -> failed. A failed row with
    retry budget left is waiting for its backoff; with permanently_failed
    set (or the budget spent) it is never attempted again.
    """

    MAX_RETRIES = MAX_RETRIES

    STATUS_PENDING = 'pending'
    STATUS_SENT = 'sent'
    STATUS_FAILED = 'failed'

    STATUS_CHOICES = [
        (STATUS_PENDING, _('Pending')),
        (STATUS_SENT, _('Sent')),
        (STATUS_FAILED, _('Failed')),
    ]

    campaign = models.ForeignKey(
        Campaign,
        on_delete=models.CASCADE,
        related_name='recipients',
        verbose_name=_('Campaign')
    )
    customer = models.ForeignKey(
        'accounts.Customer',
        on_delete=models.CASCADE,
        related_name='campaign_receipts',
        verbose_name=_('Customer')
    )
    status = models.CharField(
        _('Status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING
    )
    permanently_failed = models.BooleanField(_('Permanently Failed'), default=False)
    retry_count = models.PositiveSmallIntegerField(_('Attempts'), default=0)
    last_retry_at = models.DateTimeField(_('Last Attempt At'), null=True, blank=True)
    error_message = models.TextField(_('Error Message'), blank=True, null=True)
    gateway_message_id = models.CharField(
        _('Gateway Message ID'),
        max_length=128,
        blank=True,
        null=True
    )
    sent_at = models.DateTimeField(_('Sent At'), null=True, blank=True)

    objects = CampaignRecipientQuerySet.as_manager()

    class Meta:
        verbose_name = _('Campaign Recipient')
        verbose_name_plural = _('Campaign Recipients')
        unique_together = ['campaign', 'customer']
        indexes = [
            models.Index(fields=['campaign', 'status'], name='recipient_status_idx'),
        ]

    def __str__(self):
        return f"Campaign {self.campaign_id} -> {self.customer_id} ({self.status})"

    @property
    def is_permanently_failed(self):
        return self.status == self.STATUS_FAILED and (
            self.permanently_failed or self.retry_count >= self.MAX_RETRIES
        )

    @property
    def is_actionable(self):
        if self.status == self.STATUS_PENDING:
            return True
        return self.status == self.STATUS_FAILED and not self.is_permanently_failed
