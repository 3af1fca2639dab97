"""
Marketing Views for the Dashboard

JSON endpoints for authoring, listing, cancelling and reporting on
scheduled WhatsApp campaigns, plus the token-protected hook an external
scheduler calls to process due campaigns.
"""
import hmac
import logging

from django.contrib.auth.decorators import login_required
from django.core.paginator import Paginator
from django.http import HttpResponse, JsonResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from organizations.models import Restaurant
from RestoDash.campaign_config import CampaignConfig
from .audience import count_recipients
from .campaign_processor import process_due_campaigns
from .campaign_service import (
    create_campaign, list_campaigns, cancel_campaign, recipient_breakdown,
)
from .exceptions import CampaignValidationError
from .export_service import export_campaign_report, report_filename, XLSX_CONTENT_TYPE
from .models import Campaign

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')

CAMPAIGNS_PER_PAGE = 20


def _error(message, status=400):
    return JsonResponse({'success': False, 'error': str(message)}, status=status)


def _resolve_restaurant(request, restaurant_id):
    """
    Restaurant the user asked for, limited to the ones they may operate.
    Without an id, a user with exactly one restaurant gets that one.
    """
    restaurants = Restaurant.for_user(request.user)
    if restaurant_id:
        return get_object_or_404(restaurants, pk=restaurant_id)
    if restaurants.count() == 1:
        return restaurants.first()
    return None


def _get_campaign(request, campaign_id):
    return get_object_or_404(
        Campaign.objects.select_related('restaurant'),
        pk=campaign_id,
        restaurant__in=Restaurant.for_user(request.user),
    )


def campaign_to_dict(campaign):
    return {
        'id': campaign.id,
        'restaurant_id': campaign.restaurant_id,
        'message': campaign.message,
        'media_url': campaign.media_url,
        'template_name': campaign.template_name,
        'audience': campaign.audience,
        'scheduled_for': campaign.scheduled_for.isoformat(),
        'delay_seconds': campaign.delay_seconds,
        'status': campaign.status,
        'total_recipients': campaign.total_recipients,
        'sent_count': campaign.sent_count,
        'failed_count': campaign.failed_count,
        'progress': campaign.progress_percentage,
        'completed_at': campaign.completed_at.isoformat() if campaign.completed_at else None,
        'created_at': campaign.created_at.isoformat() if campaign.created_at else None,
    }


@login_required
@require_GET
def campaign_list(request):
    """Campaigns of one restaurant, most recently scheduled first"""
    restaurant = _resolve_restaurant(request, request.GET.get('restaurant'))
    if restaurant is None:
        return _error("Select a restaurant")

    paginator = Paginator(list_campaigns(restaurant), CAMPAIGNS_PER_PAGE)
    page = paginator.get_page(request.GET.get('page'))

    return JsonResponse({
        'success': True,
        'campaigns': [campaign_to_dict(c) for c in page.object_list],
        'page': page.number,
        'num_pages': paginator.num_pages,
        'total': paginator.count,
    })


@login_required
@require_POST
def campaign_create(request):
    """Schedule a new campaign for the selected audience"""
    restaurant = _resolve_restaurant(request, request.POST.get('restaurant'))
    if restaurant is None:
        return _error("Select a restaurant")

    customer_ids = ','.join(request.POST.getlist('customer_ids'))

    try:
        campaign = create_campaign(
            restaurant,
            message=request.POST.get('message', ''),
            scheduled_date=request.POST.get('scheduled_date'),
            scheduled_time=request.POST.get('scheduled_time'),
            delay_seconds=request.POST.get('delay_seconds'),
            audience=request.POST.get('audience') or Campaign.AUDIENCE_ALL,
            customer_ids=customer_ids or None,
            media_url=request.POST.get('media_url') or None,
            template_name=request.POST.get('template_name') or None,
            created_by=request.user,
        )
    except CampaignValidationError as e:
        return _error(e)

    audit_logger.info(
        f"user={request.user.pk} action=campaign_create campaign={campaign.id} "
        f"restaurant={restaurant.pk} recipients={campaign.total_recipients}"
    )
    return JsonResponse({'success': True, 'campaign': campaign_to_dict(campaign)}, status=201)


@login_required
@require_GET
def campaign_detail(request, campaign_id):
    campaign = _get_campaign(request, campaign_id)
    return JsonResponse({
        'success': True,
        'campaign': campaign_to_dict(campaign),
        'breakdown': recipient_breakdown(campaign),
    })


@login_required
@require_POST
def campaign_cancel(request, campaign_id):
    """Cancel a campaign that has not started yet"""
    campaign = _get_campaign(request, campaign_id)

    if not cancel_campaign(campaign.id, restaurant=campaign.restaurant):
        campaign.refresh_from_db(fields=['status'])
        return _error(f"Only pending campaigns can be cancelled (status: {campaign.status})", status=409)

    audit_logger.info(f"user={request.user.pk} action=campaign_cancel campaign={campaign.id}")
    return JsonResponse({'success': True, 'status': Campaign.STATUS_CANCELLED})


@login_required
@require_GET
def campaign_report(request, campaign_id):
    """Excel delivery report"""
    campaign = _get_campaign(request, campaign_id)
    response = HttpResponse(export_campaign_report(campaign), content_type=XLSX_CONTENT_TYPE)
    response['Content-Disposition'] = f'attachment; filename="{report_filename(campaign)}"'
    return response


@login_required
@require_GET
def api_recipient_count(request):
    """Preview how many customers an audience filter matches"""
    restaurant = _resolve_restaurant(request, request.GET.get('restaurant'))
    if restaurant is None:
        return _error("Select a restaurant")

    try:
        count = count_recipients(
            restaurant,
            request.GET.get('audience') or Campaign.AUDIENCE_ALL,
            customer_ids=request.GET.get('customer_ids'),
        )
    except CampaignValidationError as e:
        return _error(e)
    return JsonResponse({'success': True, 'count': count})


@csrf_exempt
@require_POST
def process_hook(request):
    """Entry point for an external scheduler (cron, uptime pinger...)"""
    expected = CampaignConfig.cron_token()
    if not expected:
        return _error("Process hook is disabled", status=403)

    provided = request.headers.get('X-Cron-Token', '')
    if not hmac.compare_digest(provided, expected):
        logger.warning("Process hook called with an invalid token")
        return _error("Invalid token", status=403)

    summary = process_due_campaigns()
    return JsonResponse({
        'success': True,
        'processed_at': timezone.now().isoformat(),
        'summary': summary.as_dict(),
    })
