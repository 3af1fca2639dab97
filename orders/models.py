import logging

from django.db import models
from django.db.models import F, Q
from django.db.models.signals import post_save
from django.dispatch import receiver
from django.utils.translation import gettext_lazy as _

from accounts.models import Customer
from organizations.models import Restaurant

logger = logging.getLogger(__name__)


class Order(models.Model):
    STATUS_CHOICES = (
        ("pending", _("Pending")),  # Order received, not yet confirmed
        ("confirmed", _("Confirmed")),  # Accepted by the restaurant
        ("preparing", _("Preparing")),  # In the kitchen
        ("delivered", _("Delivered")),  # Handed to the customer
        ("cancelled", _("Cancelled")),  # Order cancelled
    )

    SOURCE_CHOICES = (
        ("manual", _("Manual")),
        ("whatsapp", _("WhatsApp")),
        ("menu", _("Online Menu")),
    )

    restaurant = models.ForeignKey(
        Restaurant,
        on_delete=models.CASCADE,
        related_name="orders",
        verbose_name=_("Restaurant"),
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.CASCADE,
        related_name="orders",
        verbose_name=_("Customer"),
    )
    order_number = models.CharField(
        max_length=30, blank=True, null=True, verbose_name=_("Order Number")
    )
    total_amount = models.DecimalField(
        max_digits=10, decimal_places=2, verbose_name=_("Total Amount")
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default="pending",
        verbose_name=_("Status"),
    )
    source = models.CharField(
        max_length=20,
        choices=SOURCE_CHOICES,
        default="manual",
        verbose_name=_("Source"),
    )
    delivery_address = models.TextField(blank=True, null=True, verbose_name=_("Delivery Address"))
    notes = models.TextField(blank=True, null=True, verbose_name=_("Notes"))
    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Created At"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("Updated At"))

    class Meta:
        verbose_name = _("Order")
        verbose_name_plural = _("Orders")
        ordering = ["-created_at"]

    def __str__(self):
        return f"#{self.order_number or self.pk} - {self.customer.name}"

    def save(self, *args, **kwargs):
        # Auto-set restaurant from customer if not set (only on full save)
        if not kwargs.get('update_fields') and not self.restaurant_id and self.customer_id:
            self.restaurant_id = self.customer.restaurant_id
        super().save(*args, **kwargs)


@receiver(post_save, sender=Order)
def track_customer_activity(sender, instance, created, **kwargs):
    """Bump the customer's order counter and move last_order forward (never backward)"""
    if not created:
        return

    Customer.objects.filter(pk=instance.customer_id).update(total_orders=F("total_orders") + 1)
    Customer.objects.filter(pk=instance.customer_id).filter(
        Q(last_order__isnull=True) | Q(last_order__lt=instance.created_at)
    ).update(last_order=instance.created_at)
    logger.debug(f"Order {instance.pk} recorded for customer {instance.customer_id}")
