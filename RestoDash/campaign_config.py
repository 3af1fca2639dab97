"""
Centralized Campaign Delivery Configuration

All scheduled-campaign settings live in settings.py (fed from .env).
This class is the single place the campaign code reads them from, so
values can be changed per environment (or per test with override_settings)
without touching the processor.
"""
from django.conf import settings


class CampaignConfig:
    """
    Read-only view over the campaign delivery settings.
    Every accessor falls back to the documented default.
    """

    # =============================================================================
    # DEFAULTS
    # =============================================================================

    # Seconds to wait between two sends of the same campaign
    # Keeps the WhatsApp number under the provider's anti-spam radar
    DEFAULT_DELAY_SECONDS = 5

    # A customer with an order inside this window counts as "recently active"
    ACTIVITY_WINDOW_DAYS = 30

    # Wall-clock budget for one processor invocation (seconds)
    # Remaining recipients are left for the next invocation
    INVOCATION_BUDGET_SECONDS = 240

    # A "processing" campaign whose lease is older than this is re-claimable
    # (covers an invocation that crashed mid-campaign)
    STALE_AFTER_MINUTES = 10

    # How many campaigns one invocation works on in parallel
    # Recipients inside a campaign are always sent one by one
    MAX_WORKERS = 4

    # Gateway HTTP timeout (seconds)
    REQUEST_TIMEOUT = 10

    # =============================================================================
    # ACCESSORS
    # =============================================================================

    @classmethod
    def default_delay_seconds(cls):
        return int(getattr(settings, 'CAMPAIGN_DEFAULT_DELAY_SECONDS', cls.DEFAULT_DELAY_SECONDS))

    @classmethod
    def activity_window_days(cls):
        return int(getattr(settings, 'CAMPAIGN_ACTIVITY_WINDOW_DAYS', cls.ACTIVITY_WINDOW_DAYS))

    @classmethod
    def invocation_budget_seconds(cls):
        return int(getattr(settings, 'CAMPAIGN_INVOCATION_BUDGET_SECONDS', cls.INVOCATION_BUDGET_SECONDS))

    @classmethod
    def stale_after_minutes(cls):
        return int(getattr(settings, 'CAMPAIGN_STALE_AFTER_MINUTES', cls.STALE_AFTER_MINUTES))

    @classmethod
    def max_workers(cls):
        return max(1, int(getattr(settings, 'CAMPAIGN_MAX_WORKERS', cls.MAX_WORKERS)))

    @classmethod
    def request_timeout(cls):
        return float(getattr(settings, 'WHATSAPP_REQUEST_TIMEOUT', cls.REQUEST_TIMEOUT))

    @classmethod
    def cron_token(cls):
        return getattr(settings, 'CAMPAIGN_CRON_TOKEN', '') or ''

    @classmethod
    def gateway_url(cls):
        return (getattr(settings, 'EVOLUTION_API_URL', '') or '').rstrip('/')

    @classmethod
    def gateway_token(cls):
        return getattr(settings, 'EVOLUTION_API_TOKEN', '') or ''

    @classmethod
    def gateway_instance(cls):
        return getattr(settings, 'EVOLUTION_INSTANCE_NAME', '') or ''

    # =============================================================================
    # HELPER METHODS
    # =============================================================================

    @classmethod
    def get_all_settings(cls):
        """Get all current settings as a dictionary"""
        token = cls.gateway_token()
        return {
            'CAMPAIGN_DEFAULT_DELAY_SECONDS': cls.default_delay_seconds(),
            'CAMPAIGN_ACTIVITY_WINDOW_DAYS': cls.activity_window_days(),
            'CAMPAIGN_INVOCATION_BUDGET_SECONDS': cls.invocation_budget_seconds(),
            'CAMPAIGN_STALE_AFTER_MINUTES': cls.stale_after_minutes(),
            'CAMPAIGN_MAX_WORKERS': cls.max_workers(),
            'CAMPAIGN_CRON_TOKEN_SET': bool(cls.cron_token()),
            'EVOLUTION_API_URL': cls.gateway_url(),
            'EVOLUTION_INSTANCE_NAME': cls.gateway_instance(),
            'EVOLUTION_API_TOKEN': f"...{token[-4:]}" if token else '',
            'WHATSAPP_REQUEST_TIMEOUT': cls.request_timeout(),
        }

    @classmethod
    def validate_settings(cls):
        """Validate configuration and return warnings"""
        warnings = []

        if not cls.gateway_url() or not cls.gateway_token():
            warnings.append("❌ EVOLUTION_API_URL and EVOLUTION_API_TOKEN must be set - every send will fail")

        if not cls.gateway_instance():
            warnings.append("⚠️  EVOLUTION_INSTANCE_NAME is empty - only restaurants with their own instance can send")

        if cls.default_delay_seconds() < 0:
            warnings.append("❌ CAMPAIGN_DEFAULT_DELAY_SECONDS cannot be negative")
        elif cls.default_delay_seconds() < 2:
            warnings.append("⚠️  CAMPAIGN_DEFAULT_DELAY_SECONDS below 2s - WhatsApp may flag the number")

        if cls.invocation_budget_seconds() < 30:
            warnings.append("⚠️  CAMPAIGN_INVOCATION_BUDGET_SECONDS below 30s - large campaigns will crawl")

        if cls.stale_after_minutes() * 60 <= cls.invocation_budget_seconds():
            warnings.append(
                "❌ CAMPAIGN_STALE_AFTER_MINUTES must outlast the invocation budget, "
                "otherwise a live invocation's campaign can be re-claimed"
            )

        if not cls.cron_token():
            warnings.append("⚠️  CAMPAIGN_CRON_TOKEN is empty - the HTTP process hook is disabled")

        if not warnings:
            warnings.append("✅ All settings are valid")

        return warnings
