"""
WhatsApp Delivery Service

Sends one message to one phone number through the Evolution API gateway.
Used by both the scheduled campaign processor and the ad-hoc "send now"
action, so retry logic never needs gateway-specific branches.

Failures are classified here, at the gateway boundary:
- TRANSIENT: connection errors, timeouts, HTTP 408/425/429 and 5xx.
  The campaign processor retries these with backoff.
- NON_RECOVERABLE: everything else (bad number, rejected payload,
  missing credentials). Retrying would not help.
"""
import enum
import logging
import re
from dataclasses import dataclass
from typing import Optional

import requests
from requests.adapters import HTTPAdapter

from RestoDash.campaign_config import CampaignConfig
from .models import MessageLog, EngagementMetric

logger = logging.getLogger(__name__)


# Gateway statuses worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})

# Shortest digit string we hand to the gateway
MIN_PHONE_DIGITS = 8

_NON_DIGITS = re.compile(r"\D")


class ErrorCategory(enum.Enum):
    TRANSIENT = "transient"
    NON_RECOVERABLE = "non_recoverable"


class ChannelError(Exception):
    """Failure reported by (or on the way to) the messaging gateway"""

    category = ErrorCategory.NON_RECOVERABLE

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT

    def __str__(self):
        if self.status_code:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


class ChannelTransientError(ChannelError):
    """Network/timeout class failure, eligible for retry"""

    category = ErrorCategory.TRANSIENT


class ChannelNonRecoverableError(ChannelError):
    """Rejected recipient or payload, never retried"""

    category = ErrorCategory.NON_RECOVERABLE


@dataclass
class SendResult:
    """Result of a single send attempt"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[ChannelError] = None

    @classmethod
    def ok(cls, message_id=None):
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: ChannelError):
        return cls(success=False, error=error)


def normalize_phone(phone: Optional[str]) -> str:
    """Strip everything but digits (the gateway wants e.g. 5511912345678)"""
    return _NON_DIGITS.sub("", phone or "")


def classify_status(status_code: int) -> type:
    """Map a non-2xx gateway status to the matching ChannelError class"""
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return ChannelTransientError
    return ChannelNonRecoverableError


_session = None


def get_session():
    """Shared requests session (connection pooling across sends)"""
    global _session
    if _session is None:
        session = requests.Session()
        session.mount("https://", HTTPAdapter(pool_connections=4, pool_maxsize=16))
        session.mount("http://", HTTPAdapter(pool_connections=4, pool_maxsize=16))
        _session = session
    return _session


class WhatsAppService:
    """
    Evolution API client.

    Never raises for gateway problems: every outcome comes back as a SendResult.
    """

    VIA = MessageLog.VIA_EVOLUTION

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        instance_name: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url if base_url is not None else CampaignConfig.gateway_url()).rstrip('/')
        self.token = token if token is not None else CampaignConfig.gateway_token()
        self.instance_name = instance_name if instance_name is not None else CampaignConfig.gateway_instance()
        self.timeout = timeout if timeout is not None else CampaignConfig.request_timeout()
        self.session = session or get_session()

    def _build_payload(self, number: str, body: str, media_url: Optional[str]) -> dict:
        payload = {
            "number": number,
            "text": body,
        }
        if media_url:
            payload["mediaUrl"] = media_url
        return payload

    @staticmethod
    def _parse_response(response) -> dict:
        content_type = response.headers.get("content-type", "")
        try:
            if "application/json" in content_type:
                data = response.json()
                return data if isinstance(data, dict) else {"data": data}
            return {"raw": response.text}
        except ValueError:
            return {"raw": response.text}

    @staticmethod
    def _extract_message_id(data: dict) -> Optional[str]:
        key = data.get("key")
        if isinstance(key, dict) and key.get("id"):
            return str(key["id"])
        for field in ("id", "messageId"):
            if data.get(field):
                return str(data[field])
        return None

    def send(
        self,
        phone: str,
        body: str,
        media_url: Optional[str] = None,
        instance_name: Optional[str] = None,
    ) -> SendResult:
        """
        Send one text (optionally with media) to one phone number.

        Args:
            phone: recipient phone in any format
            body: message text
            media_url: optional public URL of an image/document
            instance_name: per-restaurant gateway instance (overrides the default)
        """
        instance = instance_name or self.instance_name
        if not self.base_url or not self.token or not instance:
            return SendResult.failed(
                ChannelNonRecoverableError("WhatsApp gateway credentials are not configured")
            )

        number = normalize_phone(phone)
        if len(number) < MIN_PHONE_DIGITS:
            return SendResult.failed(
                ChannelNonRecoverableError(f"Invalid phone number: {phone!r}")
            )

        if not body or not body.strip():
            return SendResult.failed(ChannelNonRecoverableError("Message body is empty"))

        url = f"{self.base_url}/message/sendText/{instance}"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

        try:
            response = self.session.post(
                url,
                json=self._build_payload(number, body, media_url),
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning(f"Gateway unreachable for ...{number[-4:]}: {e}")
            return SendResult.failed(ChannelTransientError(f"Gateway unreachable: {e}"))
        except Exception as e:
            logger.error(f"Gateway request failed for ...{number[-4:]}: {e}")
            return SendResult.failed(ChannelNonRecoverableError(f"Gateway request failed: {e}"))

        data = self._parse_response(response)

        if not response.ok:
            message = data.get("message") or data.get("error")
            if isinstance(message, (list, dict)):
                message = str(message)
            message = message or f"Gateway returned HTTP {response.status_code}"
            error_class = classify_status(response.status_code)
            logger.warning(
                f"Gateway rejected message to ...{number[-4:]} "
                f"({error_class.category.value}): HTTP {response.status_code} {message}"
            )
            return SendResult.failed(error_class(message, status_code=response.status_code))

        message_id = self._extract_message_id(data)
        logger.info(f"Message sent to ...{number[-4:]} (gateway id: {message_id})")
        return SendResult.ok(message_id)


def send_to_customer(
    customer,
    body: str,
    media_url: Optional[str] = None,
    template_name: Optional[str] = None,
    campaign=None,
    service=None,
) -> SendResult:
    """
    The single send path for campaigns and ad-hoc messages.

    Every call, successful or not, appends one MessageLog row and bumps the
    customer's messages_sent counter. Retries therefore count as attempts.
    """
    service = service or WhatsAppService()
    restaurant = customer.restaurant

    if not customer.phone:
        result = SendResult.failed(ChannelNonRecoverableError("Customer has no phone number"))
    else:
        result = service.send(
            customer.phone,
            body,
            media_url=media_url,
            instance_name=restaurant.evolution_instance_name or None,
        )

    MessageLog.objects.create(
        restaurant=restaurant,
        customer=customer,
        campaign=campaign,
        template_name=template_name,
        body=body,
        media_url=media_url or None,
        status=MessageLog.STATUS_SENT if result.success else MessageLog.STATUS_FAILED,
        via=getattr(service, 'VIA', MessageLog.VIA_EVOLUTION),
        gateway_message_id=result.message_id,
        error_message=None if result.success else str(result.error),
    )
    EngagementMetric.record_send(customer)

    return result
