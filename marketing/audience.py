"""
Audience selection for campaigns.

Resolves an audience filter to the restaurant's customers at creation
time. Only customers of that restaurant can ever be selected.
"""
import logging
from datetime import timedelta

from django.db.models import Q
from django.utils import timezone

from accounts.models import Customer
from RestoDash.campaign_config import CampaignConfig
from .exceptions import CampaignValidationError, EmptyAudience
from .models import Campaign

logger = logging.getLogger(__name__)


def _normalize_ids(customer_ids):
    if customer_ids is None:
        return []
    if isinstance(customer_ids, str):
        customer_ids = customer_ids.split(',')

    ids = []
    for raw in customer_ids:
        raw = str(raw).strip()
        if not raw:
            continue
        try:
            ids.append(int(raw))
        except ValueError:
            raise CampaignValidationError(f"Invalid customer id: {raw!r}")
    return ids


def audience_queryset(restaurant, audience, customer_ids=None, now=None, window_days=None):
    """Unevaluated queryset of the customers an audience filter matches"""
    now = now or timezone.now()
    if window_days is None:
        window_days = CampaignConfig.activity_window_days()
    cutoff = now - timedelta(days=window_days)

    queryset = Customer.objects.filter(restaurant=restaurant)

    if audience == Campaign.AUDIENCE_ALL:
        pass
    elif audience == Campaign.AUDIENCE_RECENT:
        queryset = queryset.filter(last_order__gte=cutoff)
    elif audience == Campaign.AUDIENCE_INACTIVE:
        queryset = queryset.filter(Q(last_order__isnull=True) | Q(last_order__lt=cutoff))
    elif audience == Campaign.AUDIENCE_EXPLICIT:
        ids = _normalize_ids(customer_ids)
        if not ids:
            raise EmptyAudience("No customers were selected")
        # Ids of other restaurants' customers simply don't match
        queryset = queryset.filter(pk__in=ids)
    else:
        raise CampaignValidationError(f"Unknown audience: {audience!r}")

    return queryset.order_by('id')


def select_recipients(restaurant, audience, customer_ids=None, now=None, window_days=None):
    """
    Customers a new campaign will be sent to.

    Raises:
        EmptyAudience: the filter matched nobody
        CampaignValidationError: unknown audience or malformed ids
    """
    customers = list(audience_queryset(restaurant, audience, customer_ids, now, window_days))
    if not customers:
        raise EmptyAudience("No customers match the selected audience")

    logger.debug(f"Audience '{audience}' for restaurant {restaurant.pk}: {len(customers)} customers")
    return customers


def count_recipients(restaurant, audience, customer_ids=None, now=None, window_days=None):
    """Preview count for the authoring form (0 instead of EmptyAudience)"""
    try:
        return audience_queryset(restaurant, audience, customer_ids, now, window_days).count()
    except EmptyAudience:
        return 0
