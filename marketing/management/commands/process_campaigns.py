"""
Management command for scheduled campaign delivery

Usage:
    # Deliver due campaigns
    python manage.py process_campaigns                     # One invocation (cron)
    python manage.py process_campaigns --loop --interval 60  # Keep polling

    # View configuration
    python manage.py process_campaigns --config            # Show current config
    python manage.py process_campaigns --config --validate # Validate config
"""
import time

from django.core.management.base import BaseCommand, CommandError

from RestoDash.campaign_config import CampaignConfig
from marketing.campaign_processor import process_due_campaigns


class Command(BaseCommand):
    help = 'Deliver due WhatsApp campaigns, or show the delivery configuration'

    def add_arguments(self, parser):
        parser.add_argument(
            '--loop',
            action='store_true',
            help='Keep running, one invocation every --interval seconds'
        )
        parser.add_argument(
            '--interval',
            type=int,
            default=60,
            help='Seconds between invocations in --loop mode (default: 60)'
        )
        parser.add_argument(
            '--budget',
            type=int,
            help='Wall-clock budget per invocation in seconds (overrides the setting)'
        )
        parser.add_argument(
            '--max-workers',
            type=int,
            help='Campaigns processed in parallel (overrides the setting)'
        )

        # Configuration options
        parser.add_argument(
            '--config',
            action='store_true',
            help='Show the campaign delivery configuration'
        )
        parser.add_argument(
            '--validate',
            action='store_true',
            help='Validate configuration settings (with --config)'
        )

    def handle(self, *args, **options):
        if options['config']:
            self._handle_config(options)
            return

        if options['interval'] < 1:
            raise CommandError("--interval must be at least 1 second")

        kwargs = {}
        if options['budget'] is not None:
            kwargs['budget_seconds'] = options['budget']
        if options['max_workers'] is not None:
            kwargs['max_workers'] = options['max_workers']

        if not options['loop']:
            self._run_once(kwargs)
            return

        self.stdout.write(self.style.SUCCESS(
            f"Processing campaigns every {options['interval']}s (Ctrl+C to stop)"
        ))
        try:
            while True:
                self._run_once(kwargs)
                time.sleep(options['interval'])
        except KeyboardInterrupt:
            self.stdout.write(self.style.WARNING("\nStopped"))

    def _run_once(self, kwargs):
        summary = process_due_campaigns(**kwargs)
        line = (
            f"{summary.campaigns_touched} campaign(s): {summary.attempted} attempted, "
            f"{summary.sent} sent, {summary.retrying} retrying, {summary.failed} failed, "
            f"{summary.deferred} deferred, {summary.completed} completed "
            f"({summary.duration_seconds}s)"
        )
        if summary.store_errors or summary.errors:
            self.stdout.write(self.style.ERROR(
                f"{line} - {summary.store_errors} store error(s), {summary.errors} error(s)"
            ))
        elif summary.budget_exhausted:
            self.stdout.write(self.style.WARNING(f"{line} - budget exhausted, rest left for next run"))
        else:
            self.stdout.write(self.style.SUCCESS(line))

    def _handle_config(self, options):
        """Handle configuration display and validation"""
        if not options['validate']:
            self.stdout.write(self.style.SUCCESS("\n" + "=" * 60))
            self.stdout.write(self.style.SUCCESS("CURRENT CAMPAIGN CONFIGURATION"))
            self.stdout.write(self.style.SUCCESS("=" * 60))

            for key, value in CampaignConfig.get_all_settings().items():
                if isinstance(value, bool):
                    value_str = self.style.SUCCESS("✓ Set") if value else self.style.ERROR("✗ Not set")
                else:
                    value_str = str(value) if value != '' else self.style.ERROR("(empty)")
                self.stdout.write(f"{key:<38} {value_str}")

            self.stdout.write(self.style.SUCCESS("=" * 60))
            return

        self.stdout.write("\n" + self.style.WARNING("Validating configuration..."))
        for warning in CampaignConfig.validate_settings():
            if "✅" in warning:
                self.stdout.write(self.style.SUCCESS(warning))
            elif "⚠️" in warning:
                self.stdout.write(self.style.WARNING(warning))
            elif "❌" in warning:
                self.stdout.write(self.style.ERROR(warning))
            else:
                self.stdout.write(warning)
