"""
Messaging Views

Ad-hoc "send now" of one WhatsApp message to one customer. Uses the same
send path as scheduled campaigns, so it shows up in the message log and
engagement counters the same way.
"""
import logging

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_POST

from accounts.models import Customer
from organizations.models import Restaurant
from .whatsapp_service import send_to_customer

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')


@login_required
@require_POST
def send_message(request):
    """Send one message to one of the user's customers right away"""
    customer = get_object_or_404(
        Customer.objects.select_related('restaurant'),
        pk=request.POST.get('customer_id') or 0,
        restaurant__in=Restaurant.for_user(request.user),
    )

    body = (request.POST.get('message') or '').strip()
    if not body:
        return JsonResponse({'success': False, 'error': 'Message cannot be empty'}, status=400)

    result = send_to_customer(
        customer,
        body,
        media_url=request.POST.get('media_url') or None,
        template_name=request.POST.get('template_name') or None,
    )

    audit_logger.info(
        f"user={request.user.pk} action=message_send customer={customer.pk} "
        f"success={result.success}"
    )

    if not result.success:
        logger.warning(f"Ad-hoc send to customer {customer.pk} failed: {result.error}")
        return JsonResponse({
            'success': False,
            'error': str(result.error),
            'transient': result.error.is_transient,
        }, status=502)

    return JsonResponse({'success': True, 'message_id': result.message_id})
