"""
Campaign Processor

Delivers due campaigns: claims each one, walks its actionable recipients one
by one, sends through the WhatsApp service and records every outcome with a
conditional write. Safe to invoke repeatedly and from overlapping schedulers:
a campaign another invocation is actively working is skipped, and a recipient
outcome only lands if the row still looks the way it did when it was read.

Distinct campaigns run on a thread pool so one campaign's inter-message delay
doesn't hold back another campaign that is also due.
"""
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from django.db import DatabaseError, connections, transaction
from django.db.models import F, Q
from django.utils import timezone

from messaging.whatsapp_service import WhatsAppService, send_to_customer
from RestoDash.campaign_config import CampaignConfig
from .exceptions import StoreWriteError
from .models import Campaign, CampaignRecipient, MAX_RETRIES
from .retry_policy import Decision, decide, next_state

logger = logging.getLogger(__name__)


@dataclass
class CampaignOutcome:
    """What one pass over one campaign did"""
    campaign_id: int
    claimed: bool = False
    attempted: int = 0
    sent: int = 0
    failed: int = 0  # permanently, during this pass
    retrying: int = 0
    deferred: int = 0
    store_errors: int = 0
    errors: int = 0
    completed: bool = False
    budget_exhausted: bool = False


@dataclass
class ProcessingSummary:
    """Result of one processor invocation"""
    campaigns_touched: int = 0
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    retrying: int = 0
    deferred: int = 0
    store_errors: int = 0
    errors: int = 0
    completed: int = 0
    budget_exhausted: bool = False
    duration_seconds: float = 0.0

    def add(self, outcome: CampaignOutcome):
        if not outcome.claimed:
            return
        self.campaigns_touched += 1
        self.attempted += outcome.attempted
        self.sent += outcome.sent
        self.failed += outcome.failed
        self.retrying += outcome.retrying
        self.deferred += outcome.deferred
        self.store_errors += outcome.store_errors
        self.errors += outcome.errors
        self.completed += int(outcome.completed)
        self.budget_exhausted = self.budget_exhausted or outcome.budget_exhausted

    def as_dict(self):
        return {
            'campaigns_touched': self.campaigns_touched,
            'attempted': self.attempted,
            'sent': self.sent,
            'failed': self.failed,
            'retrying': self.retrying,
            'deferred': self.deferred,
            'store_errors': self.store_errors,
            'errors': self.errors,
            'completed': self.completed,
            'budget_exhausted': self.budget_exhausted,
            'duration_seconds': self.duration_seconds,
        }


class CampaignProcessor:
    """
    One invocation of the scheduled-campaign sender.

    clock, sleep and timer are injectable so tests control time without waiting.
    """

    def __init__(
        self,
        channel=None,
        clock=timezone.now,
        sleep=time.sleep,
        budget_seconds: Optional[float] = None,
        max_workers: Optional[int] = None,
        stale_after_minutes: Optional[int] = None,
        timer=time.monotonic,
    ):
        self.channel = channel or WhatsAppService()
        self.clock = clock
        self.sleep = sleep
        self.timer = timer
        self.budget_seconds = (
            budget_seconds if budget_seconds is not None
            else CampaignConfig.invocation_budget_seconds()
        )
        self.max_workers = max(1, max_workers or CampaignConfig.max_workers())
        self.stale_after_minutes = (
            stale_after_minutes if stale_after_minutes is not None
            else CampaignConfig.stale_after_minutes()
        )
        self._started = None

    # =========================================================================
    # Invocation
    # =========================================================================

    def due_campaigns(self, now):
        return Campaign.objects.filter(
            status__in=Campaign.ACTIVE_STATUSES,
            scheduled_for__lte=now,
        ).order_by('scheduled_for', 'id')

    def run(self) -> ProcessingSummary:
        self._started = self.timer()
        summary = ProcessingSummary()

        campaign_ids = list(self.due_campaigns(self.clock()).values_list('id', flat=True))
        if not campaign_ids:
            logger.info("No campaigns due")
            summary.duration_seconds = round(self.timer() - self._started, 2)
            return summary

        logger.info(f"{len(campaign_ids)} campaign(s) due")

        if self.max_workers == 1 or len(campaign_ids) == 1:
            outcomes = [self.process_campaign(campaign_id) for campaign_id in campaign_ids]
        else:
            # Submitted earliest-due first, so they also start first
            with ThreadPoolExecutor(
                max_workers=min(self.max_workers, len(campaign_ids)),
                thread_name_prefix='campaign',
            ) as executor:
                futures = [
                    executor.submit(self._process_in_worker, campaign_id)
                    for campaign_id in campaign_ids
                ]
                outcomes = [future.result() for future in futures]

        for outcome in outcomes:
            summary.add(outcome)

        summary.duration_seconds = round(self.timer() - self._started, 2)
        logger.info(
            f"Processing finished: {summary.campaigns_touched} campaign(s), "
            f"{summary.attempted} attempted, {summary.sent} sent, {summary.retrying} retrying, "
            f"{summary.failed} failed, {summary.deferred} deferred, "
            f"{summary.store_errors} store errors, {summary.errors} errors in {summary.duration_seconds}s"
        )
        return summary

    def _process_in_worker(self, campaign_id):
        try:
            return self.process_campaign(campaign_id)
        finally:
            connections.close_all()

    def budget_exhausted(self, upcoming: float = 0) -> bool:
        """True once elapsed time, plus an upcoming wait, reaches the budget"""
        if self._started is None:
            return False
        return self.timer() - self._started + upcoming >= self.budget_seconds

    # =========================================================================
    # One campaign
    # =========================================================================

    def process_campaign(self, campaign_id) -> CampaignOutcome:
        outcome = CampaignOutcome(campaign_id=campaign_id)

        if not self._claim(campaign_id, self.clock()):
            logger.info(f"Campaign {campaign_id} skipped: leased by another invocation or no longer due")
            return outcome
        outcome.claimed = True

        try:
            campaign = Campaign.objects.select_related('restaurant').get(pk=campaign_id)
            logger.info(f"Campaign {campaign_id} claimed ({campaign.total_recipients} recipients)")
            self._deliver(campaign, outcome)
            outcome.completed = self._complete_if_done(campaign)
        except Exception as e:
            outcome.errors += 1
            logger.exception(f"Campaign {campaign_id} failed during processing: {e}")
        finally:
            self._release(campaign_id)

        logger.info(
            f"Campaign {campaign_id}: {outcome.attempted} attempted, {outcome.sent} sent, "
            f"{outcome.retrying} retrying, {outcome.failed} failed, {outcome.deferred} deferred"
            + (" (completed)" if outcome.completed else "")
        )
        return outcome

    def _claim(self, campaign_id, now) -> bool:
        """Take the lease: pending, or processing with no live heartbeat"""
        stale_before = now - timedelta(minutes=self.stale_after_minutes)
        claimable = Q(status=Campaign.STATUS_PENDING) | (
            Q(status=Campaign.STATUS_PROCESSING)
            & (Q(heartbeat_at__isnull=True) | Q(heartbeat_at__lt=stale_before))
        )
        claimed = Campaign.objects.filter(
            claimable,
            pk=campaign_id,
            scheduled_for__lte=now,
        ).update(status=Campaign.STATUS_PROCESSING, heartbeat_at=now, updated_at=now)
        return claimed == 1

    def _heartbeat(self, campaign_id):
        try:
            Campaign.objects.filter(
                pk=campaign_id, status=Campaign.STATUS_PROCESSING
            ).update(heartbeat_at=self.clock())
        except DatabaseError as e:
            # Lease keeps its previous stamp and ages towards stale
            logger.error(f"Could not refresh lease on campaign {campaign_id}: {e}")

    def _release(self, campaign_id):
        try:
            Campaign.objects.filter(
                pk=campaign_id, status=Campaign.STATUS_PROCESSING
            ).update(heartbeat_at=None)
        except DatabaseError as e:
            # Lease expires on its own after the staleness threshold
            logger.error(f"Could not release lease on campaign {campaign_id}: {e}")

    def _deliver(self, campaign, outcome):
        recipients = list(
            campaign.recipients.actionable()
            .select_related('customer', 'customer__restaurant')
            .order_by('id')
        )
        attempted_before = False

        for recipient in recipients:
            if self.budget_exhausted():
                outcome.budget_exhausted = True
                logger.warning(f"Campaign {campaign.id}: invocation budget used up, leaving the rest for later")
                break

            decision = decide(recipient, self.clock())
            if decision is Decision.DEFER:
                outcome.deferred += 1
                logger.debug(f"Campaign {campaign.id}: recipient {recipient.id} deferred (backoff)")
                continue
            if decision is Decision.EXHAUSTED:
                continue

            if attempted_before and campaign.delay_seconds:
                if self.budget_exhausted(upcoming=campaign.delay_seconds):
                    outcome.budget_exhausted = True
                    logger.warning(f"Campaign {campaign.id}: no budget left for the next delay, leaving the rest for later")
                    break
                self.sleep(campaign.delay_seconds)
            attempted_before = True

            self._attempt(campaign, recipient, outcome)
            self._heartbeat(campaign.id)

    def _attempt(self, campaign, recipient, outcome):
        outcome.attempted += 1
        logger.info(
            f"Campaign {campaign.id}: attempt {recipient.retry_count + 1}/{MAX_RETRIES} "
            f"for customer {recipient.customer_id}"
        )

        try:
            result = send_to_customer(
                recipient.customer,
                campaign.message,
                media_url=campaign.media_url,
                template_name=campaign.template_name,
                campaign=campaign,
                service=self.channel,
            )
        except DatabaseError as e:
            outcome.store_errors += 1
            logger.error(f"Campaign {campaign.id}: could not log send to customer {recipient.customer_id}: {e}")
            return
        except Exception as e:
            outcome.errors += 1
            logger.exception(f"Campaign {campaign.id}: send to customer {recipient.customer_id} crashed: {e}")
            return

        update = next_state(
            recipient,
            None if result.success else result.error,
            self.clock(),
            message_id=result.message_id,
        )

        try:
            recorded = self._record_outcome(campaign, recipient, update)
        except StoreWriteError as e:
            outcome.store_errors += 1
            logger.error(f"Campaign {campaign.id}: {e}")
            return

        if not recorded:
            logger.warning(
                f"Campaign {campaign.id}: recipient {recipient.id} was updated by another "
                f"invocation, outcome discarded"
            )
            return

        if update.is_sent:
            outcome.sent += 1
            logger.info(f"Campaign {campaign.id}: sent to customer {recipient.customer_id}")
        elif update.permanently_failed:
            outcome.failed += 1
            logger.warning(f"Campaign {campaign.id}: customer {recipient.customer_id} failed: {update.error_message}")
        else:
            outcome.retrying += 1
            logger.info(f"Campaign {campaign.id}: customer {recipient.customer_id} will be retried: {update.error_message}")

    def _record_outcome(self, campaign, recipient, update) -> bool:
        try:
            return self._write_outcome(campaign, recipient, update)
        except DatabaseError as e:
            raise StoreWriteError(
                f"Could not record outcome for recipient {recipient.id}: {e}"
            ) from e

    def _write_outcome(self, campaign, recipient, update) -> bool:
        """
        Recipient row and campaign counter in one short transaction.
        Only lands if status and retry_count are unchanged since the read.
        """
        with transaction.atomic():
            updated = CampaignRecipient.objects.filter(
                pk=recipient.pk,
                status=recipient.status,
                retry_count=recipient.retry_count,
            ).update(**update.as_fields())
            if not updated:
                return False

            if update.is_sent:
                Campaign.objects.filter(pk=campaign.pk).update(sent_count=F('sent_count') + 1)
            elif update.permanently_failed:
                Campaign.objects.filter(pk=campaign.pk).update(failed_count=F('failed_count') + 1)
        return True

    def _complete_if_done(self, campaign) -> bool:
        if campaign.recipients.actionable().exists():
            return False
        now = self.clock()
        completed = campaign.transition(
            Campaign.STATUS_COMPLETED,
            completed_at=now,
            heartbeat_at=None,
            updated_at=now,
        )
        if completed:
            logger.info(f"Campaign {campaign.id} completed")
        return completed


def process_due_campaigns(**kwargs) -> ProcessingSummary:
    """Run one invocation with default wiring (cron, management command, HTTP hook)"""
    return CampaignProcessor(**kwargs).run()
