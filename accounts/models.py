import logging
from datetime import timedelta

from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

logger = logging.getLogger(__name__)


class Customer(models.Model):
    """Restaurant customer reachable over WhatsApp"""

    # Customers are scoped per restaurant (multi-tenant)
    # The same phone number can be a separate customer at each restaurant
    restaurant = models.ForeignKey(
        'organizations.Restaurant',
        on_delete=models.CASCADE,
        related_name='customers',
        verbose_name=_("Restaurant"),
    )
    name = models.CharField(max_length=100, verbose_name=_("Full Name"))
    phone = models.CharField(
        max_length=30,
        blank=True,
        null=True,
        verbose_name=_("Phone Number"),
        help_text=_("Any format; non-digits are stripped before sending"),
    )
    birthday = models.DateField(blank=True, null=True, verbose_name=_("Birthday"))

    # Order activity, maintained by orders.models signals
    last_order = models.DateTimeField(blank=True, null=True, verbose_name=_("Last Order"))
    total_orders = models.PositiveIntegerField(default=0, verbose_name=_("Total Orders"))

    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Created At"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("Updated At"))

    class Meta:
        verbose_name = _("Customer")
        verbose_name_plural = _("Customers")
        ordering = ["name"]
        indexes = [
            models.Index(fields=['restaurant', 'last_order'], name='customer_last_order_idx'),
        ]

    def __str__(self):
        return f"{self.name} ({self.restaurant.name})"

    @property
    def display_name(self):
        return self.name or f"Customer {self.pk}"

    def is_recently_active(self, now=None, window_days=30):
        """True if the customer ordered within the last ``window_days``"""
        if not self.last_order:
            return False
        now = now or timezone.now()
        return self.last_order >= now - timedelta(days=window_days)
