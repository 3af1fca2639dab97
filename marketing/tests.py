"""
Tests for Scheduled Campaigns

Covers:
- Campaign/recipient state machine
- Audience selection and snapshotting
- Retry timing and outcome bookkeeping
- Processor delivery scenarios, leases, budget and store failures
- Authoring validation and cancellation
- Dashboard views, process hook, report export and management command
"""
import io
import threading
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import patch

from django.contrib.auth.models import User
from django.contrib.admin.sites import AdminSite
from django.core.management import call_command
from django.db import DatabaseError
from django.db.models.query import QuerySet
from django.test import TestCase, TransactionTestCase, Client, RequestFactory, override_settings
from django.urls import reverse
from django.utils import timezone
from openpyxl import load_workbook

from accounts.models import Customer
from messaging.models import MessageLog, EngagementMetric
from messaging.whatsapp_service import (
    SendResult, ChannelTransientError, ChannelNonRecoverableError,
)
from organizations.models import Restaurant
from RestoDash.campaign_config import CampaignConfig
from marketing.admin import CampaignAdmin
from marketing.audience import select_recipients, count_recipients
from marketing.campaign_processor import CampaignProcessor, ProcessingSummary
from marketing.campaign_service import (
    create_campaign, list_campaigns, cancel_campaign, recipient_breakdown, parse_schedule,
)
from marketing.exceptions import (
    CampaignValidationError, EmptyAudience, InvalidSchedule, InvalidTransition,
)
from marketing.export_service import export_campaign_report
from marketing.models import Campaign, CampaignRecipient, MAX_RETRIES
from marketing.retry_policy import (
    Decision, backoff, decide, next_state, recipient_state, Pending, Sent, Failed,
)


T0 = datetime(2025, 3, 10, 15, 0, tzinfo=dt_timezone.utc)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def set(self, minutes):
        self.now = T0 + timedelta(minutes=minutes)


class FakeChannel:
    """Gateway stand-in: succeeds unless an outcome was scripted for the phone"""

    VIA = MessageLog.VIA_EVOLUTION

    def __init__(self):
        self.calls = []
        self.script = {}
        self.on_send = None

    def fail(self, phone, *errors):
        self.script.setdefault(phone, []).extend(errors)

    def send(self, phone, body, media_url=None, instance_name=None):
        self.calls.append(phone)
        if self.on_send:
            self.on_send(phone)
        queue = self.script.get(phone)
        if queue:
            return SendResult.failed(queue.pop(0))
        return SendResult.ok(f"wamid-{len(self.calls)}")


class StepTimer:
    """Monotonic timer that advances by ``step`` on every read"""

    def __init__(self, step):
        self.step = step
        self.value = -step

    def __call__(self):
        self.value += self.step
        return self.value


def transient(message="Gateway unreachable"):
    return ChannelTransientError(message, status_code=503)


class CampaignFixtures:
    """Restaurant with three reachable customers, a fake gateway and a fake clock"""

    def setUp(self):
        self.owner = User.objects.create_user('owner', 'owner@example.com', 'password')
        self.restaurant = Restaurant.objects.create(name='Cantina da Nona', owner=self.owner)
        self.customers = [
            Customer.objects.create(restaurant=self.restaurant, name=name, phone=phone)
            for name, phone in [
                ('Ana', '+55 11 91234-5601'),
                ('Bruno', '+55 11 91234-5602'),
                ('Carla', '+55 11 91234-5603'),
            ]
        ]
        self.channel = FakeChannel()
        self.clock = FakeClock()
        self.sleeps = []

    def make_campaign(self, customers=None, scheduled_for=T0, delay_seconds=5, **kwargs):
        customers = self.customers if customers is None else customers
        campaign = Campaign.objects.create(
            restaurant=self.restaurant,
            message='Rodizio de pizza hoje!',
            scheduled_for=scheduled_for,
            delay_seconds=delay_seconds,
            total_recipients=len(customers),
            **kwargs
        )
        CampaignRecipient.objects.bulk_create([
            CampaignRecipient(campaign=campaign, customer=customer) for customer in customers
        ])
        return campaign

    def processor(self, **kwargs):
        kwargs.setdefault('budget_seconds', 1000)
        kwargs.setdefault('max_workers', 1)
        return CampaignProcessor(
            channel=self.channel,
            clock=self.clock,
            sleep=self.sleeps.append,
            **kwargs
        )

    def run_at(self, minutes, **kwargs):
        self.clock.set(minutes)
        return self.processor(**kwargs).run()

    def recipient_for(self, campaign, customer):
        return CampaignRecipient.objects.get(campaign=campaign, customer=customer)


class CampaignTestBase(CampaignFixtures, TestCase):
    pass


class CampaignModelTest(CampaignTestBase):
    """State machine and actionable filter"""

    def test_allowed_transitions(self):
        self.assertTrue(Campaign.can_transition('pending', 'processing'))
        self.assertTrue(Campaign.can_transition('pending', 'cancelled'))
        self.assertTrue(Campaign.can_transition('processing', 'processing'))
        self.assertTrue(Campaign.can_transition('processing', 'completed'))
        self.assertFalse(Campaign.can_transition('pending', 'completed'))
        self.assertFalse(Campaign.can_transition('completed', 'processing'))
        self.assertFalse(Campaign.can_transition('cancelled', 'pending'))

    def test_forbidden_transition_raises(self):
        campaign = self.make_campaign()
        with self.assertRaises(InvalidTransition):
            campaign.transition(Campaign.STATUS_COMPLETED)

        campaign.transition(Campaign.STATUS_CANCELLED)
        with self.assertRaises(InvalidTransition):
            campaign.transition(Campaign.STATUS_PROCESSING)

    def test_transition_loses_to_concurrent_writer(self):
        campaign = self.make_campaign()
        Campaign.objects.filter(pk=campaign.pk).update(status=Campaign.STATUS_PROCESSING)

        # In-memory copy still says pending
        self.assertFalse(campaign.transition(Campaign.STATUS_CANCELLED))
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_PROCESSING)

    def test_actionable_recipients(self):
        campaign = self.make_campaign()
        ana, bruno, carla = [self.recipient_for(campaign, c) for c in self.customers]
        extra = Customer.objects.create(restaurant=self.restaurant, name='Davi', phone='5511912345604')
        davi = CampaignRecipient.objects.create(campaign=campaign, customer=extra)

        CampaignRecipient.objects.filter(pk=ana.pk).update(status='sent')
        CampaignRecipient.objects.filter(pk=bruno.pk).update(status='failed', retry_count=1)
        CampaignRecipient.objects.filter(pk=carla.pk).update(status='failed', retry_count=1, permanently_failed=True)
        CampaignRecipient.objects.filter(pk=davi.pk).update(status='failed', retry_count=MAX_RETRIES)

        actionable = set(campaign.recipients.actionable().values_list('pk', flat=True))
        self.assertEqual(actionable, {bruno.pk})

    def test_progress_percentage(self):
        campaign = self.make_campaign()
        self.assertEqual(campaign.progress_percentage, 0)
        campaign.sent_count = 1
        campaign.failed_count = 1
        self.assertEqual(campaign.progress_percentage, 66.7)


class AudienceTest(CampaignTestBase):
    """Recipient selection (Scenario E)"""

    def setUp(self):
        super().setUp()
        ana, bruno, carla = self.customers
        Customer.objects.filter(pk=ana.pk).update(last_order=T0 - timedelta(days=5))
        Customer.objects.filter(pk=bruno.pk).update(last_order=T0 - timedelta(days=60))
        # carla never ordered

    def names(self, customers):
        return sorted(c.name for c in customers)

    def test_recent_and_inactive_partition_customers(self):
        recent = select_recipients(self.restaurant, 'recent', now=T0)
        inactive = select_recipients(self.restaurant, 'inactive', now=T0)

        self.assertEqual(self.names(recent), ['Ana'])
        self.assertEqual(self.names(inactive), ['Bruno', 'Carla'])

    def test_all_audience(self):
        self.assertEqual(len(select_recipients(self.restaurant, 'all', now=T0)), 3)

    def test_window_boundary_counts_as_recent(self):
        Customer.objects.filter(pk=self.customers[1].pk).update(last_order=T0 - timedelta(days=30))
        recent = select_recipients(self.restaurant, 'recent', now=T0)
        self.assertEqual(self.names(recent), ['Ana', 'Bruno'])

    @override_settings(CAMPAIGN_ACTIVITY_WINDOW_DAYS=90)
    def test_window_comes_from_settings(self):
        recent = select_recipients(self.restaurant, 'recent', now=T0)
        self.assertEqual(self.names(recent), ['Ana', 'Bruno'])

    def test_explicit_ids_limited_to_restaurant(self):
        other_owner = User.objects.create_user('other', 'other@example.com', 'password')
        other = Restaurant.objects.create(name='Sushi Bar', owner=other_owner)
        outsider = Customer.objects.create(restaurant=other, name='Eva', phone='5511900000000')

        selected = select_recipients(
            self.restaurant, 'explicit',
            customer_ids=[self.customers[0].pk, outsider.pk],
        )
        self.assertEqual(self.names(selected), ['Ana'])

    def test_explicit_ids_as_comma_string(self):
        ids = f"{self.customers[0].pk}, {self.customers[2].pk}"
        self.assertEqual(self.names(select_recipients(self.restaurant, 'explicit', customer_ids=ids)), ['Ana', 'Carla'])

    def test_empty_audience(self):
        Customer.objects.update(last_order=None)
        with self.assertRaises(EmptyAudience):
            select_recipients(self.restaurant, 'recent', now=T0)
        with self.assertRaises(EmptyAudience):
            select_recipients(self.restaurant, 'explicit', customer_ids=[])
        self.assertEqual(count_recipients(self.restaurant, 'recent', now=T0), 0)

    def test_unknown_audience(self):
        with self.assertRaises(CampaignValidationError):
            select_recipients(self.restaurant, 'vip')
        with self.assertRaises(CampaignValidationError):
            select_recipients(self.restaurant, 'explicit', customer_ids='1,abc')


class RetryPolicyTest(TestCase):
    """Pure retry decisions, no database"""

    def recipient(self, status='pending', retry_count=0, last_retry_at=None, permanent=False):
        return CampaignRecipient(
            status=status,
            retry_count=retry_count,
            last_retry_at=last_retry_at,
            permanently_failed=permanent,
        )

    def test_backoff_doubles(self):
        self.assertEqual(backoff(1), timedelta(minutes=2))
        self.assertEqual(backoff(2), timedelta(minutes=4))

    def test_pending_is_sent_now(self):
        self.assertEqual(decide(self.recipient(), T0), Decision.SEND_NOW)

    def test_backoff_boundary_is_inclusive(self):
        failed_once = self.recipient('failed', 1, T0)
        self.assertEqual(decide(failed_once, T0 + timedelta(minutes=2) - timedelta(seconds=1)), Decision.DEFER)
        self.assertEqual(decide(failed_once, T0 + timedelta(minutes=2)), Decision.SEND_NOW)

        failed_twice = self.recipient('failed', 2, T0)
        self.assertEqual(decide(failed_twice, T0 + timedelta(minutes=3)), Decision.DEFER)
        self.assertEqual(decide(failed_twice, T0 + timedelta(minutes=4)), Decision.SEND_NOW)

    def test_failed_without_timestamp_is_sent_now(self):
        self.assertEqual(decide(self.recipient('failed', 1, None), T0), Decision.SEND_NOW)

    def test_terminal_records_are_exhausted(self):
        self.assertEqual(decide(self.recipient('sent'), T0), Decision.EXHAUSTED)
        self.assertEqual(decide(self.recipient('failed', 3, T0), T0 + timedelta(days=1)), Decision.EXHAUSTED)
        self.assertEqual(decide(self.recipient('failed', 1, T0, permanent=True), T0 + timedelta(days=1)), Decision.EXHAUSTED)

    def test_state_variants(self):
        self.assertEqual(recipient_state(self.recipient()), Pending())
        self.assertIsInstance(recipient_state(self.recipient('sent')), Sent)
        self.assertEqual(recipient_state(self.recipient('failed', 1, T0)), Failed(retry_count=1, permanent=False))
        self.assertEqual(recipient_state(self.recipient('failed', 3, T0)), Failed(retry_count=3, permanent=True))

    def test_success_keeps_retry_count(self):
        update = next_state(self.recipient('failed', 2, T0), None, T0 + timedelta(minutes=4), message_id='wamid-1')
        self.assertTrue(update.is_sent)
        self.assertEqual(update.retry_count, 2)
        self.assertEqual(update.sent_at, T0 + timedelta(minutes=4))
        self.assertEqual(update.gateway_message_id, 'wamid-1')

    def test_transient_failure_schedules_retry(self):
        update = next_state(self.recipient(), transient(), T0)
        self.assertEqual(update.status, 'failed')
        self.assertEqual(update.retry_count, 1)
        self.assertFalse(update.permanently_failed)
        self.assertEqual(update.last_retry_at, T0)
        self.assertTrue(update.error_message.startswith('[attempt 1/3]'))

    def test_third_transient_failure_is_permanent(self):
        update = next_state(self.recipient('failed', 2, T0), transient(), T0 + timedelta(minutes=4))
        self.assertEqual(update.retry_count, 3)
        self.assertTrue(update.permanently_failed)
        self.assertTrue(update.is_terminal)
        self.assertTrue(update.error_message.startswith('[attempt 3/3] giving up'))

    def test_non_recoverable_failure_is_permanent(self):
        update = next_state(self.recipient(), ChannelNonRecoverableError('Invalid number', 400), T0)
        self.assertEqual(update.retry_count, 1)
        self.assertTrue(update.permanently_failed)
        self.assertIn('non-recoverable', update.error_message)

    def test_terminal_records_reject_new_outcomes(self):
        with self.assertRaises(InvalidTransition):
            next_state(self.recipient('sent'), None, T0)
        with self.assertRaises(InvalidTransition):
            next_state(self.recipient('failed', 1, T0, permanent=True), transient(), T0 + timedelta(hours=1))


class CampaignProcessorTest(CampaignTestBase):
    """End-to-end delivery scenarios"""

    def test_all_recipients_succeed(self):
        """Scenario A"""
        campaign = self.make_campaign(delay_seconds=5)

        summary = self.run_at(0)

        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
        self.assertEqual(campaign.sent_count, 3)
        self.assertEqual(campaign.failed_count, 0)
        self.assertEqual(campaign.completed_at, T0)
        self.assertIsNone(campaign.heartbeat_at)
        self.assertEqual(summary.campaigns_touched, 1)
        self.assertEqual(summary.sent, 3)
        self.assertEqual(summary.completed, 1)
        # Delay between sends, none after the last
        self.assertEqual(self.sleeps, [5, 5])
        self.assertEqual(len(self.channel.calls), 3)
        self.assertEqual(MessageLog.objects.filter(campaign=campaign, status='sent').count(), 3)
        for recipient in campaign.recipients.all():
            self.assertEqual(recipient.status, 'sent')
            self.assertEqual(recipient.retry_count, 0)
            self.assertEqual(recipient.sent_at, T0)
            self.assertTrue(recipient.gateway_message_id.startswith('wamid-'))

    def test_transient_failure_then_success(self):
        """Scenario B"""
        bruno = self.customers[1]
        self.channel.fail(bruno.phone, transient(), transient())
        campaign = self.make_campaign()

        self.run_at(0)
        recipient = self.recipient_for(campaign, bruno)
        self.assertEqual(recipient.status, 'failed')
        self.assertEqual(recipient.retry_count, 1)
        self.assertEqual(recipient.last_retry_at, T0)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_PROCESSING)
        self.assertIsNone(campaign.heartbeat_at)
        self.assertEqual(campaign.sent_count, 2)

        summary = self.run_at(1)
        self.assertEqual(summary.attempted, 0)
        self.assertEqual(summary.deferred, 1)

        self.run_at(2)
        recipient.refresh_from_db()
        self.assertEqual(recipient.retry_count, 2)
        self.assertTrue(recipient.error_message.startswith('[attempt 2/3]'))

        self.run_at(5)
        recipient.refresh_from_db()
        self.assertEqual(recipient.status, 'failed')

        self.run_at(6)
        recipient.refresh_from_db()
        self.assertEqual(recipient.status, 'sent')
        self.assertEqual(recipient.retry_count, 2)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
        self.assertEqual(campaign.sent_count, 3)
        self.assertEqual(campaign.failed_count, 0)
        self.assertEqual(campaign.completed_at, T0 + timedelta(minutes=6))
        # Every attempt is logged and counted against the customer
        self.assertEqual(MessageLog.objects.filter(campaign=campaign, customer=bruno).count(), 3)
        self.assertEqual(EngagementMetric.objects.get(customer=bruno).messages_sent, 3)

    def test_retry_budget_exhausted(self):
        """Scenario C"""
        bruno = self.customers[1]
        self.channel.fail(bruno.phone, transient(), transient(), transient())
        campaign = self.make_campaign()

        for minutes in (0, 2, 6):
            self.run_at(minutes)

        recipient = self.recipient_for(campaign, bruno)
        self.assertEqual(recipient.status, 'failed')
        self.assertEqual(recipient.retry_count, 3)
        self.assertTrue(recipient.permanently_failed)
        self.assertTrue(recipient.error_message.startswith('[attempt 3/3]'))
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
        self.assertEqual(campaign.sent_count, 2)
        self.assertEqual(campaign.failed_count, 1)

        # Exhausted records are never attempted again
        calls = len(self.channel.calls)
        summary = self.run_at(60)
        self.assertEqual(summary.campaigns_touched, 0)
        self.assertEqual(len(self.channel.calls), calls)
        self.assertEqual(self.channel.calls.count(bruno.phone), 3)

    def test_non_recoverable_failure(self):
        """Scenario D"""
        ana = self.customers[0]
        self.channel.fail(ana.phone, ChannelNonRecoverableError('number not on WhatsApp', status_code=400))
        campaign = self.make_campaign()

        summary = self.run_at(0)

        recipient = self.recipient_for(campaign, ana)
        self.assertEqual(recipient.status, 'failed')
        self.assertEqual(recipient.retry_count, 1)
        self.assertTrue(recipient.permanently_failed)
        self.assertIn('number not on WhatsApp', recipient.error_message)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
        self.assertEqual(campaign.failed_count, 1)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(self.channel.calls.count(ana.phone), 1)

    def test_customer_without_phone_fails_without_gateway_call(self):
        nophone = Customer.objects.create(restaurant=self.restaurant, name='Sem Telefone')
        campaign = self.make_campaign(customers=[nophone])

        self.run_at(0)

        recipient = self.recipient_for(campaign, nophone)
        self.assertTrue(recipient.permanently_failed)
        self.assertEqual(self.channel.calls, [])
        self.assertEqual(MessageLog.objects.get(customer=nophone).status, 'failed')

    def test_cancelled_campaign_is_never_sent(self):
        """Scenario F"""
        campaign = self.make_campaign()
        self.assertTrue(cancel_campaign(campaign.pk))

        summary = self.run_at(10)

        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_CANCELLED)
        self.assertEqual(summary.campaigns_touched, 0)
        self.assertEqual(self.channel.calls, [])
        self.assertFalse(campaign.recipients.exclude(status='pending').exists())

    def test_future_campaign_is_not_due(self):
        campaign = self.make_campaign(scheduled_for=T0 + timedelta(hours=1))
        summary = self.run_at(59)
        self.assertEqual(summary.campaigns_touched, 0)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_PENDING)

    def test_second_run_is_idempotent(self):
        campaign = self.make_campaign()
        self.run_at(0)
        summary = self.run_at(1)

        self.assertEqual(summary.attempted, 0)
        self.assertEqual(len(self.channel.calls), 3)
        campaign.refresh_from_db()
        self.assertEqual(campaign.sent_count, 3)
        self.assertEqual(MessageLog.objects.count(), 3)
        self.assertEqual(EngagementMetric.objects.get(customer=self.customers[0]).messages_sent, 1)

    def test_earliest_due_campaign_goes_first(self):
        later = self.make_campaign(customers=[self.customers[0]], scheduled_for=T0 - timedelta(minutes=1))
        earlier = self.make_campaign(customers=[self.customers[1]], scheduled_for=T0 - timedelta(minutes=5))

        self.run_at(0)

        self.assertEqual(self.channel.calls, [self.customers[1].phone, self.customers[0].phone])
        for campaign in (later, earlier):
            campaign.refresh_from_db()
            self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)

    def test_live_lease_is_skipped(self):
        campaign = self.make_campaign()
        Campaign.objects.filter(pk=campaign.pk).update(
            status=Campaign.STATUS_PROCESSING, heartbeat_at=T0 - timedelta(minutes=1)
        )

        summary = self.run_at(0)

        self.assertEqual(summary.campaigns_touched, 0)
        self.assertEqual(self.channel.calls, [])

    def test_stale_lease_is_reclaimed(self):
        campaign = self.make_campaign()
        Campaign.objects.filter(pk=campaign.pk).update(
            status=Campaign.STATUS_PROCESSING, heartbeat_at=T0 - timedelta(minutes=11)
        )

        summary = self.run_at(0, stale_after_minutes=10)

        self.assertEqual(summary.campaigns_touched, 1)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)

    def test_outcome_discarded_when_row_changed_concurrently(self):
        campaign = self.make_campaign(customers=[self.customers[0]])
        recipient = self.recipient_for(campaign, self.customers[0])

        def other_invocation_wins(phone):
            CampaignRecipient.objects.filter(pk=recipient.pk).update(status='sent', sent_at=T0)
        self.channel.on_send = other_invocation_wins

        summary = self.run_at(0)

        self.assertEqual(summary.attempted, 1)
        self.assertEqual(summary.sent, 0)
        campaign.refresh_from_db()
        self.assertEqual(campaign.sent_count, 0)

    def test_budget_exhaustion_leaves_rest_for_next_run(self):
        campaign = self.make_campaign(delay_seconds=0)

        # start=0, then 100 before the first recipient, 200 before the second
        summary = self.run_at(0, budget_seconds=150, timer=StepTimer(100))

        self.assertTrue(summary.budget_exhausted)
        self.assertEqual(summary.attempted, 1)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_PROCESSING)
        self.assertEqual(campaign.recipients.actionable().count(), 2)

        summary = self.run_at(1)
        self.assertFalse(summary.budget_exhausted)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
        self.assertEqual(campaign.sent_count, 3)

    def test_store_failure_keeps_recipient_actionable(self):
        campaign = self.make_campaign(delay_seconds=0)
        first = self.recipient_for(campaign, self.customers[0])
        real_write = CampaignProcessor._write_outcome
        failures = []

        def flaky_write(processor, campaign_, recipient, update):
            if not failures:
                failures.append(recipient.pk)
                raise DatabaseError("database is locked")
            return real_write(processor, campaign_, recipient, update)

        with patch.object(CampaignProcessor, '_write_outcome', autospec=True, side_effect=flaky_write):
            summary = self.run_at(0)

        self.assertEqual(summary.store_errors, 1)
        self.assertEqual(summary.sent, 2)
        first.refresh_from_db()
        self.assertEqual(first.status, 'pending')
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_PROCESSING)

        self.run_at(1)
        first.refresh_from_db()
        self.assertEqual(first.status, 'sent')
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
        self.assertEqual(campaign.sent_count, 3)

    def test_lease_refresh_failure_does_not_stop_the_campaign(self):
        campaign = self.make_campaign(delay_seconds=0)
        real_update = QuerySet.update
        failures = []

        def locked_heartbeat(queryset, **kwargs):
            refreshing = queryset.model is Campaign and set(kwargs) == {'heartbeat_at'}
            if refreshing and kwargs['heartbeat_at'] is not None and not failures:
                failures.append(kwargs['heartbeat_at'])
                raise DatabaseError("database is locked")
            return real_update(queryset, **kwargs)

        with patch.object(QuerySet, 'update', autospec=True, side_effect=locked_heartbeat):
            summary = self.run_at(0)

        self.assertEqual(len(failures), 1)
        self.assertEqual(len(self.channel.calls), 3)
        self.assertEqual(summary.sent, 3)
        self.assertEqual(summary.completed, 1)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)

    def test_no_sleep_past_the_budget(self):
        campaign = self.make_campaign(delay_seconds=5)

        # Elapsed time is whatever has been slept so far
        summary = self.run_at(0, budget_seconds=9, timer=lambda: sum(self.sleeps))

        self.assertTrue(summary.budget_exhausted)
        self.assertEqual(summary.attempted, 2)
        self.assertEqual(self.sleeps, [5])
        self.assertEqual(campaign.recipients.actionable().count(), 1)

    def test_send_crash_is_reported_and_retried_next_run(self):
        carla = self.customers[2]

        def crash_once(phone):
            if phone == carla.phone and self.channel.calls.count(phone) == 1:
                raise RuntimeError("connection pool closed")
        self.channel.on_send = crash_once
        campaign = self.make_campaign(delay_seconds=0)

        summary = self.run_at(0)

        self.assertEqual(summary.errors, 1)
        self.assertEqual(summary.as_dict()['errors'], 1)
        self.assertEqual(summary.sent, 2)
        self.assertEqual(self.recipient_for(campaign, carla).status, 'pending')

        summary = self.run_at(1)
        self.assertEqual(summary.errors, 0)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
        self.assertEqual(campaign.sent_count, 3)

    def test_counters_never_exceed_total(self):
        for phone in [c.phone for c in self.customers]:
            self.channel.fail(phone, transient())
        self.channel.fail(self.customers[2].phone, transient(), transient())
        campaign = self.make_campaign(delay_seconds=0)

        for minutes in (0, 2, 6, 14, 30):
            self.run_at(minutes)

        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
        self.assertEqual(campaign.sent_count, 2)
        self.assertEqual(campaign.failed_count, 1)
        self.assertLessEqual(campaign.sent_count + campaign.failed_count, campaign.total_recipients)
        for recipient in campaign.recipients.all():
            self.assertLessEqual(recipient.retry_count, MAX_RETRIES)

    def test_run_with_no_due_campaigns(self):
        summary = self.run_at(0)
        self.assertIsInstance(summary, ProcessingSummary)
        self.assertEqual(summary.campaigns_touched, 0)


class ParallelProcessingTest(CampaignFixtures, TransactionTestCase):
    """Worker pool path, with real connections per thread"""

    def test_due_campaigns_run_on_worker_threads(self):
        threads = []
        self.channel.on_send = lambda phone: threads.append(threading.current_thread().name)
        first = self.make_campaign(customers=self.customers[:2], delay_seconds=0)
        second = self.make_campaign(customers=self.customers[2:], delay_seconds=0)

        summary = self.run_at(0, max_workers=2)

        self.assertEqual(summary.campaigns_touched, 2)
        self.assertEqual(summary.completed, 2)
        self.assertEqual(summary.sent, 3)
        self.assertCountEqual(self.channel.calls, [c.phone for c in self.customers])
        self.assertTrue(all(name.startswith('campaign') for name in threads))
        for campaign in (first, second):
            campaign.refresh_from_db()
            self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)
            self.assertEqual(campaign.sent_count, campaign.total_recipients)


class CampaignServiceTest(CampaignTestBase):
    """Authoring, listing and cancellation"""

    def schedule(self, moment=T0):
        local = timezone.localtime(moment)
        return local.strftime('%Y-%m-%d'), local.strftime('%H:%M')

    def test_create_snapshots_audience(self):
        date, time = self.schedule(T0 + timedelta(hours=2))

        campaign = create_campaign(
            self.restaurant, '  Feijoada no sabado!  ', date, time,
            delay_seconds='3', created_by=self.owner, now=T0,
        )

        self.assertEqual(campaign.status, Campaign.STATUS_PENDING)
        self.assertEqual(campaign.message, 'Feijoada no sabado!')
        self.assertEqual(campaign.scheduled_for, T0 + timedelta(hours=2))
        self.assertEqual(campaign.delay_seconds, 3)
        self.assertEqual(campaign.total_recipients, 3)
        self.assertEqual(campaign.recipients.filter(status='pending', retry_count=0).count(), 3)

        # New customers don't join an existing campaign
        Customer.objects.create(restaurant=self.restaurant, name='Davi', phone='5511912345604')
        self.assertEqual(campaign.recipients.count(), 3)

    def test_default_delay(self):
        date, time = self.schedule(T0 + timedelta(hours=1))
        campaign = create_campaign(self.restaurant, 'Oi', date, time, now=T0)
        self.assertEqual(campaign.delay_seconds, CampaignConfig.default_delay_seconds())

    def test_current_minute_is_accepted(self):
        date, time = self.schedule(T0)
        campaign = create_campaign(self.restaurant, 'Oi', date, time, now=T0 + timedelta(seconds=40))
        self.assertEqual(campaign.scheduled_for, T0)

    def test_seconds_are_accepted(self):
        local = timezone.localtime(T0 + timedelta(hours=1))
        scheduled = parse_schedule(local.strftime('%Y-%m-%d'), local.strftime('%H:%M:%S'), now=T0)
        self.assertEqual(scheduled, T0 + timedelta(hours=1))

    def test_invalid_schedules(self):
        past_date, past_time = self.schedule(T0 - timedelta(minutes=1))
        cases = [
            (past_date, past_time),
            ('', '12:00'),
            ('2025-03-11', None),
            ('2025-13-01', '12:00'),
            ('amanha', '12:00'),
            ('2025-03-11', '25:00'),
        ]
        for date, time in cases:
            with self.subTest(date=date, time=time):
                with self.assertRaises(InvalidSchedule):
                    create_campaign(self.restaurant, 'Oi', date, time, now=T0)
        self.assertFalse(Campaign.objects.exists())

    def test_invalid_message_and_delay(self):
        date, time = self.schedule(T0 + timedelta(hours=1))
        for kwargs in ({'message': '   '}, {'delay_seconds': '-1'}, {'delay_seconds': 'abc'}, {'delay_seconds': 1.5}):
            with self.subTest(**kwargs):
                params = {'message': 'Oi', **kwargs}
                with self.assertRaises(CampaignValidationError):
                    create_campaign(self.restaurant, params.pop('message'), date, time, now=T0, **params)
        self.assertFalse(Campaign.objects.exists())

    def test_empty_audience_persists_nothing(self):
        empty = Restaurant.objects.create(name='Vazio', owner=self.owner)
        date, time = self.schedule(T0 + timedelta(hours=1))

        with self.assertRaises(EmptyAudience):
            create_campaign(empty, 'Oi', date, time, now=T0)

        self.assertFalse(Campaign.objects.exists())
        self.assertFalse(CampaignRecipient.objects.exists())

    def test_list_is_most_recent_first(self):
        first = self.make_campaign(scheduled_for=T0)
        second = self.make_campaign(scheduled_for=T0 + timedelta(days=1))
        self.assertEqual(list(list_campaigns(self.restaurant)), [second, first])

    def test_cancel_only_pending(self):
        campaign = self.make_campaign()
        self.run_at(0)

        self.assertFalse(cancel_campaign(campaign.pk))
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_COMPLETED)

    def test_cancel_scoped_to_restaurant(self):
        campaign = self.make_campaign()
        other = Restaurant.objects.create(name='Outro', owner=self.owner)

        self.assertFalse(cancel_campaign(campaign.pk, restaurant=other))
        self.assertTrue(cancel_campaign(campaign.pk, restaurant=self.restaurant))
        self.assertFalse(cancel_campaign(campaign.pk))

    def test_recipient_breakdown(self):
        self.channel.fail(self.customers[1].phone, transient())
        self.channel.fail(self.customers[2].phone, ChannelNonRecoverableError('bad number', 400))
        campaign = self.make_campaign()
        self.run_at(0)

        self.assertEqual(recipient_breakdown(campaign), {
            'total': 3, 'pending': 0, 'sent': 1, 'retrying': 1, 'permanently_failed': 1,
        })


class ExportServiceTest(CampaignTestBase):

    def test_report_has_summary_and_recipients(self):
        self.channel.fail(self.customers[2].phone, ChannelNonRecoverableError('bad number', 400))
        campaign = self.make_campaign()
        self.run_at(0)

        workbook = load_workbook(io.BytesIO(export_campaign_report(campaign)))

        self.assertEqual(workbook.sheetnames, ['Summary', 'Recipients'])
        recipients = workbook['Recipients']
        self.assertEqual(recipients.max_row, 4)
        statuses = sorted(row[2] for row in recipients.iter_rows(min_row=2, values_only=True))
        self.assertEqual(statuses, ['Failed', 'Sent', 'Sent'])
        summary = {field: value for field, value in workbook['Summary'].iter_rows(min_row=2, values_only=True)}
        self.assertEqual((summary['Sent'], summary['Failed'], summary['Retrying']), (2, 1, 0))
        self.assertIsNone(summary['Scheduled For'].tzinfo)


class MarketingViewsTest(CampaignTestBase):

    def setUp(self):
        super().setUp()
        self.client = Client()
        self.client.force_login(self.owner)

    def future_schedule(self):
        local = timezone.localtime(timezone.now() + timedelta(days=1))
        return local.strftime('%Y-%m-%d'), local.strftime('%H:%M')

    def test_login_required(self):
        self.client.logout()
        response = self.client.get(reverse('campaign_list'))
        self.assertEqual(response.status_code, 302)

    def test_create_campaign(self):
        date, time = self.future_schedule()
        response = self.client.post(reverse('campaign_create'), {
            'restaurant': self.restaurant.pk,
            'message': 'Promo!',
            'scheduled_date': date,
            'scheduled_time': time,
            'audience': 'explicit',
            'customer_ids': [self.customers[0].pk, self.customers[1].pk],
        })

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertTrue(data['success'])
        self.assertEqual(data['campaign']['total_recipients'], 2)
        self.assertEqual(Campaign.objects.get().created_by, self.owner)

    def test_create_rejects_invalid_input(self):
        response = self.client.post(reverse('campaign_create'), {
            'message': 'Promo!',
            'scheduled_date': '2020-01-01',
            'scheduled_time': '10:00',
        })
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()['success'])
        self.assertFalse(Campaign.objects.exists())

    def test_other_owner_cannot_touch_campaign(self):
        campaign = self.make_campaign()
        intruder = User.objects.create_user('intruder', 'x@example.com', 'password')
        self.client.force_login(intruder)

        self.assertEqual(self.client.get(reverse('campaign_detail', args=[campaign.pk])).status_code, 404)
        self.assertEqual(self.client.post(reverse('campaign_cancel', args=[campaign.pk])).status_code, 404)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.STATUS_PENDING)

    def test_list_and_detail(self):
        campaign = self.make_campaign()

        response = self.client.get(reverse('campaign_list'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([c['id'] for c in response.json()['campaigns']], [campaign.pk])

        response = self.client.get(reverse('campaign_detail', args=[campaign.pk]))
        self.assertEqual(response.json()['breakdown']['pending'], 3)

    def test_cancel(self):
        campaign = self.make_campaign()

        response = self.client.post(reverse('campaign_cancel', args=[campaign.pk]))
        self.assertEqual(response.status_code, 200)

        response = self.client.post(reverse('campaign_cancel', args=[campaign.pk]))
        self.assertEqual(response.status_code, 409)

    def test_recipient_count(self):
        response = self.client.get(reverse('api_recipient_count'), {'audience': 'all'})
        self.assertEqual(response.json(), {'success': True, 'count': 3})

    def test_report_download(self):
        campaign = self.make_campaign()
        response = self.client.get(reverse('campaign_report', args=[campaign.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertIn('spreadsheetml', response['Content-Type'])
        self.assertTrue(response.content.startswith(b'PK'))

    @override_settings(CAMPAIGN_CRON_TOKEN='')
    def test_process_hook_disabled_without_token(self):
        response = Client().post(reverse('campaign_process_hook'))
        self.assertEqual(response.status_code, 403)

    @override_settings(CAMPAIGN_CRON_TOKEN='s3cret')
    def test_process_hook_checks_token(self):
        with patch('marketing.views.process_due_campaigns', return_value=ProcessingSummary(sent=2)) as run:
            response = Client().post(reverse('campaign_process_hook'), HTTP_X_CRON_TOKEN='wrong')
            self.assertEqual(response.status_code, 403)
            run.assert_not_called()

            response = Client().post(reverse('campaign_process_hook'), HTTP_X_CRON_TOKEN='s3cret')
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()['summary']['sent'], 2)
            run.assert_called_once()


class CampaignAdminTest(CampaignTestBase):

    def setUp(self):
        super().setUp()
        self.superuser = User.objects.create_superuser('root', 'root@example.com', 'password')
        self.request = RequestFactory().get('/admin/')
        self.request.user = self.superuser
        self.model_admin = CampaignAdmin(Campaign, AdminSite())

    def test_add_form_is_disabled(self):
        self.client.force_login(self.superuser)
        response = self.client.get(reverse('admin:marketing_campaign_add'))
        self.assertEqual(response.status_code, 403)
        self.assertFalse(self.model_admin.has_add_permission(self.request))

    def test_audience_is_always_frozen(self):
        campaign = self.make_campaign()
        fields = self.model_admin.get_readonly_fields(self.request, campaign)
        self.assertIn('audience', fields)
        self.assertIn('restaurant', fields)
        self.assertNotIn('message', fields)

    def test_content_frozen_once_processing_starts(self):
        campaign = self.make_campaign()
        self.run_at(0)
        campaign.refresh_from_db()

        fields = self.model_admin.get_readonly_fields(self.request, campaign)

        for name in ('message', 'media_url', 'scheduled_for', 'delay_seconds'):
            with self.subTest(field=name):
                self.assertIn(name, fields)


class CampaignConfigTest(TestCase):

    @override_settings(
        EVOLUTION_API_URL='https://evo.example.com/',
        EVOLUTION_API_TOKEN='token-1234',
        EVOLUTION_INSTANCE_NAME='main',
        CAMPAIGN_DEFAULT_DELAY_SECONDS=5,
        CAMPAIGN_INVOCATION_BUDGET_SECONDS=240,
        CAMPAIGN_STALE_AFTER_MINUTES=10,
        CAMPAIGN_CRON_TOKEN='s3cret',
    )
    def test_valid_settings(self):
        self.assertEqual(CampaignConfig.validate_settings(), ["✅ All settings are valid"])
        self.assertEqual(CampaignConfig.gateway_url(), 'https://evo.example.com')
        self.assertEqual(CampaignConfig.get_all_settings()['EVOLUTION_API_TOKEN'], '...1234')

    @override_settings(
        EVOLUTION_API_URL='',
        CAMPAIGN_INVOCATION_BUDGET_SECONDS=900,
        CAMPAIGN_STALE_AFTER_MINUTES=10,
    )
    def test_problems_are_reported(self):
        warnings = CampaignConfig.validate_settings()
        self.assertTrue(any('EVOLUTION_API_URL' in w for w in warnings))
        self.assertTrue(any('CAMPAIGN_STALE_AFTER_MINUTES' in w for w in warnings))

    @override_settings(CAMPAIGN_MAX_WORKERS=0)
    def test_at_least_one_worker(self):
        self.assertEqual(CampaignConfig.max_workers(), 1)


class ProcessCampaignsCommandTest(TestCase):

    def test_runs_one_invocation(self):
        out = io.StringIO()
        with patch(
            'marketing.management.commands.process_campaigns.process_due_campaigns',
            return_value=ProcessingSummary(campaigns_touched=1, sent=3),
        ) as run:
            call_command('process_campaigns', '--budget', '60', stdout=out)

        run.assert_called_once_with(budget_seconds=60)
        self.assertIn('3 sent', out.getvalue())

    def test_errors_are_reported(self):
        out = io.StringIO()
        with patch(
            'marketing.management.commands.process_campaigns.process_due_campaigns',
            return_value=ProcessingSummary(campaigns_touched=1, attempted=1, errors=1),
        ):
            call_command('process_campaigns', stdout=out)

        self.assertIn('1 error(s)', out.getvalue())

    def test_config_validate(self):
        out = io.StringIO()
        call_command('process_campaigns', '--config', '--validate', stdout=out)
        self.assertIn('Validating configuration', out.getvalue())
