"""
Twilio SMS provider implementation (fallback)
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from twilio.rest import Client
from twilio.base.exceptions import TwilioException

from ...utils.phone import mask_phone
from .base import (
    BalanceInfo,
    DeliveryReceipt,
    DeliveryStatus,
    SendResult,
    SMSProvider,
    WebhookPayloadError,
    PENDING,
    SENT,
    DELIVERED,
    FAILED,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "queued": PENDING,
    "accepted": PENDING,
    "scheduled": PENDING,
    "sending": SENT,
    "sent": SENT,
    "delivered": DELIVERED,
    "undelivered": FAILED,
    "failed": FAILED,
    "canceled": FAILED,
}


class TwilioProvider(SMSProvider):
    """
    Twilio Programmable Messaging provider.

    The Twilio SDK is synchronous, so calls run in a worker thread to keep
    the event loop free.
    """

    name = "twilio"
    priority = 2

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Optional[Client] = None,
        priority: Optional[int] = None,
    ):
        if not account_sid or not auth_token:
            raise ValueError("Twilio credentials not configured")
        if not from_number:
            raise ValueError("Twilio from number not configured")

        self.client = client or Client(account_sid, auth_token)
        self.from_number = from_number
        if priority is not None:
            self.priority = priority

    def _map_status(self, api_status: Optional[str]) -> str:
        status = _STATUS_MAP.get((api_status or "").lower())
        if status is None:
            logger.warning(f"[SMS][Twilio] Unknown status '{api_status}', treating as pending")
            return PENDING
        return status

    async def send(self, to, message, sender=None, callback_url=None) -> SendResult:
        kwargs: Dict[str, Any] = {
            "body": message,
            "from_": sender or self.from_number,
            "to": to,
        }
        if callback_url:
            kwargs["status_callback"] = callback_url

        try:
            sent = await asyncio.to_thread(self.client.messages.create, **kwargs)
        except TwilioException as e:
            logger.error(f"[SMS][Twilio] Send to {mask_phone(to)} failed: {e}")
            return SendResult(success=False, message_id="", provider=self.name, error=f"SMS provider error: {e}")

        logger.info(f"[SMS][Twilio] Sent to {mask_phone(to)}, SID: {sent.sid}")
        return SendResult(success=True, message_id=sent.sid, provider=self.name)

    async def check_status(self, message_id: str) -> DeliveryStatus:
        try:
            fetched = await asyncio.to_thread(self.client.messages(message_id).fetch)
        except TwilioException as e:
            logger.error(f"[SMS][Twilio] Status check for {message_id} failed: {e}")
            return DeliveryStatus(
                message_id=message_id,
                status=FAILED,
                timestamp=datetime.now(timezone.utc),
                error="Failed to check delivery status",
            )

        return DeliveryStatus(
            message_id=message_id,
            status=self._map_status(fetched.status),
            timestamp=fetched.date_updated or datetime.now(timezone.utc),
            error=fetched.error_message,
        )

    def parse_delivery_webhook(self, payload: Dict[str, Any]) -> DeliveryReceipt:
        message_id = payload.get("MessageSid") or payload.get("SmsSid")
        if not message_id:
            raise WebhookPayloadError("Missing MessageSid or SmsSid in Twilio webhook payload")

        status = self._map_status(payload.get("MessageStatus") or payload.get("SmsStatus"))

        delivered_at = None
        if status == DELIVERED:
            # Twilio status callbacks do not always carry DateUpdated
            delivered_at = datetime.now(timezone.utc)

        failure_reason = None
        if payload.get("ErrorCode"):
            failure_reason = f"Error {payload['ErrorCode']}: {payload.get('ErrorMessage') or 'Unknown error'}"

        return DeliveryReceipt(
            message_id=message_id,
            status=status,
            delivered_at=delivered_at,
            failure_reason=failure_reason,
        )

    async def get_balance(self) -> BalanceInfo:
        try:
            balance = await asyncio.to_thread(self.client.api.v2010.account.balance.fetch)
            return BalanceInfo(balance=float(balance.balance), currency=balance.currency)
        except (TwilioException, ValueError) as e:
            logger.error(f"[SMS][Twilio] Balance lookup failed: {e}")
            return BalanceInfo(balance=0.0, currency="USD")
