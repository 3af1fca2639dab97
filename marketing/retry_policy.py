"""
Retry Policy for Campaign Recipients

Pure functions: given a recipient's bookkeeping, the current time and the
outcome of an attempt, work out whether to send and what to store next.
Nothing here touches the database or the gateway.

Backoff after the n-th failed attempt is 2**n minutes, measured from
last_retry_at. A recipient gets at most MAX_RETRIES attempts; a
non-recoverable failure ends it immediately.
"""
import enum
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional

from .exceptions import InvalidTransition
from .models import CampaignRecipient, MAX_RETRIES


class Decision(enum.Enum):
    SEND_NOW = "send_now"
    DEFER = "defer"  # backoff not elapsed yet
    EXHAUSTED = "exhausted"  # terminal, never attempt again


@dataclass(frozen=True)
class RecipientUpdate:
    """Fields to write on the recipient row after one attempt"""
    status: str
    retry_count: int
    permanently_failed: bool
    last_retry_at: Optional[datetime]
    sent_at: Optional[datetime]
    error_message: Optional[str]
    gateway_message_id: Optional[str]

    @property
    def is_sent(self) -> bool:
        return self.status == CampaignRecipient.STATUS_SENT

    @property
    def is_terminal(self) -> bool:
        return self.is_sent or self.permanently_failed

    def as_fields(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Sent:
    sent_at: Optional[datetime] = None


@dataclass(frozen=True)
class Failed:
    retry_count: int
    permanent: bool


def recipient_state(recipient):
    """The recipient row as one of Pending, Sent or Failed"""
    if recipient.status == CampaignRecipient.STATUS_SENT:
        return Sent(recipient.sent_at)
    if recipient.status == CampaignRecipient.STATUS_FAILED:
        return Failed(
            retry_count=recipient.retry_count,
            permanent=recipient.permanently_failed or recipient.retry_count >= MAX_RETRIES,
        )
    return Pending()


def backoff(retry_count: int) -> timedelta:
    """Wait required before the next attempt, after ``retry_count`` failures"""
    return timedelta(minutes=2 ** retry_count)


def decide(recipient, now: datetime) -> Decision:
    """
    Decide what to do with a recipient at ``now``.

    The boundary is inclusive: exactly last_retry_at + backoff is SEND_NOW.
    """
    state = recipient_state(recipient)
    if isinstance(state, Sent) or (isinstance(state, Failed) and state.permanent):
        return Decision.EXHAUSTED

    if recipient.retry_count == 0 or recipient.last_retry_at is None:
        return Decision.SEND_NOW

    if now >= recipient.last_retry_at + backoff(recipient.retry_count):
        return Decision.SEND_NOW

    return Decision.DEFER


def next_state(recipient, error, now: datetime, message_id: Optional[str] = None) -> RecipientUpdate:
    """
    Bookkeeping after one attempt.

    Args:
        recipient: row as read before the attempt
        error: the ChannelError of a failed attempt, None on success
        now: attempt time
        message_id: gateway message id of a successful attempt
    """
    if decide(recipient, now) is Decision.EXHAUSTED:
        raise InvalidTransition(
            f"Recipient {recipient.pk} is {recipient.status} and cannot be attempted again"
        )

    if error is None:
        return RecipientUpdate(
            status=CampaignRecipient.STATUS_SENT,
            retry_count=recipient.retry_count,
            permanently_failed=False,
            last_retry_at=recipient.last_retry_at,
            sent_at=now,
            error_message=recipient.error_message,
            gateway_message_id=message_id,
        )

    attempt = recipient.retry_count + 1
    transient = getattr(error, 'is_transient', False)
    permanent = not transient or attempt >= MAX_RETRIES

    if not transient:
        reason = f"non-recoverable: {error}"
    elif permanent:
        reason = f"giving up: {error}"
    else:
        reason = str(error)

    return RecipientUpdate(
        status=CampaignRecipient.STATUS_FAILED,
        retry_count=attempt,
        permanently_failed=permanent,
        last_retry_at=now,
        sent_at=None,
        error_message=f"[attempt {attempt}/{MAX_RETRIES}] {reason}",
        gateway_message_id=None,
    )
