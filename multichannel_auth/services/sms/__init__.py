"""
SMS providers
"""
import logging
from typing import List

from .base import (
    SMSProvider,
    SendResult,
    DeliveryStatus,
    DeliveryReceipt,
    BalanceInfo,
    WebhookPayloadError,
)
from .sms_to import SmsToProvider
from .twilio_sms import TwilioProvider
from .stub_provider import ConsoleSMSProvider

logger = logging.getLogger(__name__)


def build_sms_providers(settings) -> List[SMSProvider]:
    """
    Instantiate every provider that has credentials configured.

    Returns:
        Providers in no particular order (SMSService sorts by priority)
    """
    providers: List[SMSProvider] = []

    if settings.SMS_TO_API_KEY and settings.SMS_TO_SENDER_ID:
        providers.append(SmsToProvider(settings.SMS_TO_API_KEY, settings.SMS_TO_SENDER_ID))
    else:
        logger.info("[SMS] sms.to not configured")

    if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER:
        providers.append(
            TwilioProvider(
                settings.TWILIO_ACCOUNT_SID,
                settings.TWILIO_AUTH_TOKEN,
                settings.TWILIO_FROM_NUMBER,
            )
        )
    else:
        logger.info("[SMS] Twilio not configured")

    if settings.SMS_STUB_PROVIDER:
        providers.append(ConsoleSMSProvider())

    return providers


__all__ = [
    "SMSProvider",
    "SendResult",
    "DeliveryStatus",
    "DeliveryReceipt",
    "BalanceInfo",
    "WebhookPayloadError",
    "SmsToProvider",
    "TwilioProvider",
    "ConsoleSMSProvider",
    "build_sms_providers",
]
