"""
Campaign Authoring Service

Validates and creates scheduled campaigns (with their recipient snapshot),
lists them, cancels them and summarizes recipient outcomes.
"""
import logging
from datetime import datetime

from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_time

from RestoDash.campaign_config import CampaignConfig
from .audience import select_recipients
from .exceptions import CampaignValidationError, InvalidSchedule
from .models import Campaign, CampaignRecipient, MAX_RETRIES

logger = logging.getLogger(__name__)


def parse_schedule(scheduled_date, scheduled_time, now=None):
    """
    Combine a YYYY-MM-DD date and HH:MM[:SS] time into an aware datetime.

    The schedule may not be earlier than the start of the current minute,
    so "now" picked in a minute-resolution form is still accepted.
    """
    if not scheduled_date or not scheduled_time:
        raise InvalidSchedule("Scheduled date and time are required")

    try:
        day = parse_date(str(scheduled_date).strip())
        moment = parse_time(str(scheduled_time).strip())
    except ValueError as e:
        raise InvalidSchedule(f"Invalid scheduled date/time: {e}")

    if day is None or moment is None:
        raise InvalidSchedule(
            f"Invalid scheduled date/time: {scheduled_date!r} {scheduled_time!r}"
        )

    scheduled_for = timezone.make_aware(
        datetime.combine(day, moment.replace(tzinfo=None)),
        timezone.get_current_timezone(),
    )

    now = now or timezone.now()
    if scheduled_for < now.replace(second=0, microsecond=0):
        raise InvalidSchedule("Scheduled time is in the past")

    return scheduled_for


def _parse_delay(delay_seconds):
    if delay_seconds is None or delay_seconds == '':
        return CampaignConfig.default_delay_seconds()
    if isinstance(delay_seconds, bool):
        raise CampaignValidationError("Delay must be a whole number of seconds")
    try:
        delay = int(str(delay_seconds).strip())
    except (TypeError, ValueError):
        raise CampaignValidationError("Delay must be a whole number of seconds")
    if delay < 0:
        raise CampaignValidationError("Delay cannot be negative")
    return delay


def create_campaign(
    restaurant,
    message,
    scheduled_date,
    scheduled_time,
    delay_seconds=None,
    audience=Campaign.AUDIENCE_ALL,
    customer_ids=None,
    media_url=None,
    template_name=None,
    created_by=None,
    now=None,
):
    """
    Validate input, snapshot the audience and persist the campaign.

    Either the campaign and all its recipient rows are written, or nothing is.

    Raises:
        CampaignValidationError: empty message, bad delay, unknown audience
        InvalidSchedule: missing, malformed or past schedule
        EmptyAudience: the audience matched no customers
    """
    now = now or timezone.now()

    message = (message or '').strip()
    if not message:
        raise CampaignValidationError("Message cannot be empty")

    scheduled_for = parse_schedule(scheduled_date, scheduled_time, now=now)
    delay = _parse_delay(delay_seconds)
    audience = audience or Campaign.AUDIENCE_ALL

    customers = select_recipients(restaurant, audience, customer_ids=customer_ids, now=now)

    with transaction.atomic():
        campaign = Campaign.objects.create(
            restaurant=restaurant,
            created_by=created_by,
            message=message,
            media_url=media_url or None,
            template_name=template_name or None,
            audience=audience,
            scheduled_for=scheduled_for,
            delay_seconds=delay,
            total_recipients=len(customers),
        )
        CampaignRecipient.objects.bulk_create([
            CampaignRecipient(campaign=campaign, customer=customer)
            for customer in customers
        ])

    logger.info(
        f"Campaign {campaign.id} created for restaurant {restaurant.pk}: "
        f"{len(customers)} recipients, audience={audience}, scheduled for {scheduled_for.isoformat()}"
    )
    return campaign


def list_campaigns(restaurant):
    """Campaigns of one restaurant, most recently scheduled first"""
    return Campaign.objects.filter(restaurant=restaurant).order_by('-scheduled_for', '-id')


def cancel_campaign(campaign_id, restaurant=None):
    """
    Cancel a campaign that has not started.

    Returns True if it was cancelled, False if it was missing, belonged to
    another restaurant, or had already left ``pending``.
    """
    queryset = Campaign.objects.filter(pk=campaign_id)
    if restaurant is not None:
        queryset = queryset.filter(restaurant=restaurant)

    # Single conditional update, so it can't race a processor claim
    cancelled = queryset.filter(status=Campaign.STATUS_PENDING).update(
        status=Campaign.STATUS_CANCELLED,
        updated_at=timezone.now(),
    )
    if cancelled:
        logger.info(f"Campaign {campaign_id} cancelled")
    else:
        logger.info(f"Campaign {campaign_id} not cancelled (missing or already started)")
    return bool(cancelled)


def recipient_breakdown(campaign):
    """Per-outcome recipient counts for the drill-down view"""
    retry_left = Q(permanently_failed=False, retry_count__lt=MAX_RETRIES)
    counts = CampaignRecipient.objects.filter(campaign=campaign).aggregate(
        total=Count('id'),
        pending=Count('id', filter=Q(status=CampaignRecipient.STATUS_PENDING)),
        sent=Count('id', filter=Q(status=CampaignRecipient.STATUS_SENT)),
        retrying=Count('id', filter=Q(status=CampaignRecipient.STATUS_FAILED) & retry_left),
        permanently_failed=Count(
            'id', filter=Q(status=CampaignRecipient.STATUS_FAILED) & ~retry_left
        ),
    )
    return counts
