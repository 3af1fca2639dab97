"""Errors raised by the campaign authoring and delivery code"""


class CampaignError(Exception):
    """Base class for campaign errors"""
    pass


class CampaignValidationError(CampaignError):
    """Campaign input rejected at creation time; nothing was persisted"""
    pass


class EmptyAudience(CampaignValidationError):
    """The audience filter matched no customers"""
    pass


class InvalidSchedule(CampaignValidationError):
    """Scheduled date/time missing, malformed or in the past"""
    pass


class InvalidTransition(CampaignError):
    """A campaign or recipient status change that the state machine forbids"""
    pass


class StoreWriteError(CampaignError):
    """A delivery outcome could not be persisted; the recipient stays actionable"""
    pass
