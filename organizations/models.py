from django.db import models
from django.contrib.auth.models import User
from django.utils.translation import gettext_lazy as _


class Restaurant(models.Model):
    """Restaurant owned by an owner. Every customer, order and campaign belongs to one."""

    name = models.CharField(_("Name"), max_length=200)
    owner = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="owned_restaurants",
        verbose_name=_("Owner"),
    )
    whatsapp_number = models.CharField(
        _("WhatsApp Number"),
        max_length=30,
        blank=True,
        null=True,
        help_text=_("Number connected to the WhatsApp gateway (international format)"),
    )
    # Gateway integration
    evolution_instance_name = models.CharField(
        _("Evolution Instance"),
        max_length=100,
        blank=True,
        null=True,
        help_text=_("Evolution API instance for this restaurant. Falls back to EVOLUTION_INSTANCE_NAME."),
    )
    is_active = models.BooleanField(_("Active"), default=True)
    created_at = models.DateTimeField(_("Created at"), auto_now_add=True)
    updated_at = models.DateTimeField(_("Updated at"), auto_now=True)

    class Meta:
        verbose_name = _("Restaurant")
        verbose_name_plural = _("Restaurants")
        ordering = ["name"]

    def __str__(self):
        return self.name

    @classmethod
    def for_user(cls, user):
        """Restaurants the given dashboard user may operate on"""
        if not user or not user.is_authenticated:
            return cls.objects.none()
        if user.is_superuser:
            return cls.objects.all()
        return cls.objects.filter(owner=user)
