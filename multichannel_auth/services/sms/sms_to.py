"""
sms.to SMS provider implementation (primary)
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

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
    "pending": PENDING,
    "queued": PENDING,
    "accepted": PENDING,
    "sent": SENT,
    "dispatched": SENT,
    "delivered": DELIVERED,
    "success": DELIVERED,
    "failed": FAILED,
    "error": FAILED,
    "rejected": FAILED,
    "undelivered": FAILED,
}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class SmsToProvider(SMSProvider):
    """
    sms.to REST API provider.

    The HTTP client can be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise one is created per provider.
    """

    name = "sms.to"
    priority = 1

    API_BASE_URL = "https://api.sms.to"

    def __init__(
        self,
        api_key: str,
        sender_id: str,
        client: Optional[httpx.AsyncClient] = None,
        priority: Optional[int] = None,
    ):
        if not api_key:
            raise ValueError("sms.to API key is required")
        if not sender_id:
            raise ValueError("sms.to sender ID is required")

        self.api_key = api_key
        self.sender_id = sender_id
        if priority is not None:
            self.priority = priority
        self._client = client or httpx.AsyncClient(base_url=self.API_BASE_URL, timeout=10.0)
        self._owns_client = client is None

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _map_status(self, api_status: Optional[str]) -> str:
        status = _STATUS_MAP.get((api_status or "").lower())
        if status is None:
            logger.warning(f"[SMS][sms.to] Unknown status '{api_status}', treating as pending")
            return PENDING
        return status

    async def send(self, to, message, sender=None, callback_url=None) -> SendResult:
        payload: Dict[str, Any] = {
            "to": to,
            "message": message,
            "sender_id": sender or self.sender_id,
        }
        if callback_url:
            payload["callback_url"] = callback_url

        try:
            response = await self._client.post("/sms/send", json=payload, headers=self._headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"[SMS][sms.to] Send to {mask_phone(to)} failed: "
                f"HTTP {e.response.status_code} {e.response.text[:200]}"
            )
            return SendResult(
                success=False,
                message_id="",
                provider=self.name,
                error=f"SMS provider error: HTTP {e.response.status_code}",
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[SMS][sms.to] Send to {mask_phone(to)} failed: {e}")
            return SendResult(success=False, message_id="", provider=self.name, error=f"SMS provider error: {e}")

        message_id = data.get("message_id") or data.get("messageId") or data.get("id")
        if not message_id:
            logger.error("[SMS][sms.to] Response missing message ID")
            return SendResult(
                success=False,
                message_id="",
                provider=self.name,
                error="Invalid response from SMS provider",
            )

        logger.info(f"[SMS][sms.to] Sent to {mask_phone(to)}, message_id={message_id}")
        return SendResult(success=True, message_id=str(message_id), provider=self.name)

    async def check_status(self, message_id: str) -> DeliveryStatus:
        try:
            response = await self._client.get(
                f"/sms/status/{message_id}", headers=self._headers, timeout=5.0
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[SMS][sms.to] Status check for {message_id} failed: {e}")
            return DeliveryStatus(
                message_id=message_id,
                status=FAILED,
                timestamp=datetime.now(timezone.utc),
                error="Failed to check delivery status",
            )

        return DeliveryStatus(
            message_id=message_id,
            status=self._map_status(data.get("status")),
            timestamp=_parse_timestamp(data.get("timestamp")) or datetime.now(timezone.utc),
            error=data.get("error"),
        )

    def parse_delivery_webhook(self, payload: Dict[str, Any]) -> DeliveryReceipt:
        message_id = payload.get("message_id") or payload.get("messageId") or payload.get("id")
        if not message_id:
            raise WebhookPayloadError("Missing message_id in sms.to webhook payload")

        return DeliveryReceipt(
            message_id=str(message_id),
            status=self._map_status(payload.get("status")),
            delivered_at=_parse_timestamp(payload.get("delivered_at") or payload.get("deliveredAt")),
            failure_reason=payload.get("failure_reason") or payload.get("failureReason") or payload.get("error"),
        )

    async def get_balance(self) -> BalanceInfo:
        try:
            response = await self._client.get("/balance", headers=self._headers, timeout=5.0)
            response.raise_for_status()
            data = response.json()
            return BalanceInfo(
                balance=float(data.get("balance") or data.get("credits") or 0),
                currency=data.get("currency") or "Credits",
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[SMS][sms.to] Balance lookup failed: {e}")
            return BalanceInfo(balance=0.0, currency="Credits")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
