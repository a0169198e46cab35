"""
SMS delivery service: priority failover, provider rotation and delivery tracking
"""
import json
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from ..core.store import KeyValueStore
from ..utils.phone import mask_phone
from .sms.base import DeliveryReceipt, SendResult, SMSProvider, DELIVERED, PENDING

logger = logging.getLogger(__name__)


class SMSService:
    """
    Sends messages through the registered providers.

    Providers are tried in ascending priority order. Every successful send is
    tracked under ``sms:delivery:{message_id}`` and the provider used is
    remembered per destination (``sms:last_provider:{phone}``) so resends can
    rotate to a different vendor.
    """

    DELIVERY_TTL_SECONDS = 86400  # 24 hours
    LAST_PROVIDER_TTL_SECONDS = 3600  # 1 hour

    def __init__(
        self,
        providers: Sequence[SMSProvider],
        store: KeyValueStore,
        delivery_ttl: Optional[int] = None,
        last_provider_ttl: Optional[int] = None,
    ):
        if not providers:
            raise ValueError("At least one SMS provider is required")

        names = [p.name for p in providers]
        if len(set(names)) != len(names):
            raise ValueError(f"SMS provider names must be unique: {names}")

        self._providers: List[SMSProvider] = sorted(providers, key=lambda p: p.priority)
        self._store = store
        self.delivery_ttl = delivery_ttl or self.DELIVERY_TTL_SECONDS
        self.last_provider_ttl = last_provider_ttl or self.LAST_PROVIDER_TTL_SECONDS

        logger.info(
            "[SMS] Service initialized with providers: "
            + ", ".join(f"{p.name}(priority={p.priority})" for p in self._providers)
        )

    @property
    def providers(self) -> List[SMSProvider]:
        return list(self._providers)

    def get_provider(self, name: str) -> Optional[SMSProvider]:
        for provider in self._providers:
            if provider.name == name:
                return provider
        return None

    @staticmethod
    def _delivery_key(message_id: str) -> str:
        return f"sms:delivery:{message_id}"

    @staticmethod
    def _last_provider_key(phone: str) -> str:
        return f"sms:last_provider:{phone}"

    async def send_sms(
        self,
        to: str,
        message: str,
        callback_url: Optional[str] = None,
        sender: Optional[str] = None,
        attempt_number: int = 1,
        last_provider: Optional[str] = None,
    ) -> SendResult:
        """
        Send a message, rotating providers on repeat attempts.

        The first attempt goes through plain priority failover; later
        attempts (job retries and resends) start with the provider after the
        one last used for this destination.
        """
        if attempt_number > 1 or last_provider:
            return await self.send_with_rotation(to, message, last_provider, callback_url, sender)
        return await self.send_with_fallback(to, message, callback_url, sender, attempt_number)

    async def send_with_fallback(
        self,
        to: str,
        message: str,
        callback_url: Optional[str] = None,
        sender: Optional[str] = None,
        attempt_number: int = 1,
    ) -> SendResult:
        """
        Try each provider in priority order until one succeeds.

        Returns:
            The first successful SendResult, or a failure carrying the last
            provider's error
        """
        return await self._send_in_order(self._providers, to, message, callback_url, sender, attempt_number)

    async def _send_in_order(
        self,
        providers: Sequence[SMSProvider],
        to: str,
        message: str,
        callback_url: Optional[str],
        sender: Optional[str],
        attempt_number: int = 1,
    ) -> SendResult:
        last_error: Optional[str] = None

        for provider in providers:
            logger.info(
                f"[SMS] Sending to {mask_phone(to)} via {provider.name} "
                f"(priority={provider.priority}, attempt={attempt_number})"
            )
            # Receipts come back on a per-provider path so the webhook knows which parser to use
            provider_callback = f"{callback_url.rstrip('/')}/{provider.name}" if callback_url else None
            try:
                result = await provider.send(to, message, sender=sender, callback_url=provider_callback)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.error(f"[SMS] Provider {provider.name} raised, trying next provider: {last_error}")
                continue

            if result.success:
                await self.track_delivery(result.message_id, provider.name, to)
                logger.info(f"[SMS] Sent to {mask_phone(to)} via {provider.name}, message_id={result.message_id}")
                return result

            last_error = result.error
            logger.warning(f"[SMS] Provider {provider.name} failed, trying next provider: {result.error}")

        logger.error(f"[SMS] All {len(providers)} providers failed for {mask_phone(to)}: {last_error}")
        return SendResult(
            success=False,
            message_id="",
            provider="none",
            error=last_error or "All SMS providers failed",
        )

    def get_next_provider(self, current_provider: Optional[str] = None) -> SMSProvider:
        """
        Return the provider after ``current_provider`` in priority order.

        Wraps around at the end. An unknown or missing name yields the
        highest priority provider.
        """
        if not current_provider:
            return self._providers[0]

        for index, provider in enumerate(self._providers):
            if provider.name == current_provider:
                return self._providers[(index + 1) % len(self._providers)]

        return self._providers[0]

    async def send_with_rotation(
        self,
        to: str,
        message: str,
        last_provider: Optional[str] = None,
        callback_url: Optional[str] = None,
        sender: Optional[str] = None,
    ) -> SendResult:
        """
        Send starting with the provider after the one last used for ``to``,
        then fall back through the rest in priority order.
        """
        last_used = last_provider or await self.get_last_provider_used(to)
        next_provider = self.get_next_provider(last_used)

        logger.info(
            f"[SMS] Rotating provider for {mask_phone(to)}: "
            f"last={last_used or 'none'}, next={next_provider.name}"
        )

        ordered = [next_provider] + [p for p in self._providers if p.name != next_provider.name]
        return await self._send_in_order(ordered, to, message, callback_url, sender)

    async def track_delivery(self, message_id: str, provider: str, phone: str) -> None:
        """Record a sent message and the provider used. Best effort."""
        record = {
            "phone": phone,
            "provider": provider,
            "status": PENDING,
            "sentAt": int(time.time() * 1000),
        }
        try:
            await self._store.set(self._delivery_key(message_id), json.dumps(record), ttl=self.delivery_ttl)
            await self._store.set(self._last_provider_key(phone), provider, ttl=self.last_provider_ttl)
        except Exception as e:
            # Tracking must not fail a send that already went out
            logger.error(f"[SMS] Failed to track delivery of {message_id}: {e}")

    async def update_delivery_status(self, message_id: str, status: str) -> bool:
        """
        Store the latest delivery state for a tracked message.

        Returns:
            False if the message is not (or no longer) tracked
        """
        key = self._delivery_key(message_id)
        try:
            raw = await self._store.get(key)
            if not raw:
                logger.warning(f"[SMS] Delivery tracking not found for {message_id}")
                return False

            record = json.loads(raw)
            record["status"] = status
            if status == DELIVERED:
                record["deliveredAt"] = int(time.time() * 1000)

            updated = await self._store.set(key, json.dumps(record), xx=True, keepttl=True)
        except Exception as e:
            logger.error(f"[SMS] Failed to update delivery status for {message_id}: {e}")
            return False

        if updated:
            logger.info(f"[SMS] Delivery status for {message_id} ({mask_phone(record['phone'])}): {status}")
        return updated

    async def get_delivery_status(self, message_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self._store.get(self._delivery_key(message_id))
        except Exception as e:
            logger.error(f"[SMS] Failed to read delivery status for {message_id}: {e}")
            return None
        return json.loads(raw) if raw else None

    async def get_last_provider_used(self, phone: str) -> Optional[str]:
        try:
            return await self._store.get(self._last_provider_key(phone))
        except Exception as e:
            logger.error(f"[SMS] Failed to read last provider for {mask_phone(phone)}: {e}")
            return None

    async def handle_delivery_webhook(self, provider_name: str, payload: Dict[str, Any]) -> DeliveryReceipt:
        """
        Parse a vendor delivery receipt and update the tracked status.

        Raises:
            KeyError: If no provider with that name is registered
            WebhookPayloadError: If the payload has no message identifier
        """
        provider = self.get_provider(provider_name)
        if provider is None:
            raise KeyError(f"Unknown SMS provider: {provider_name}")

        receipt = provider.parse_delivery_webhook(payload)
        await self.update_delivery_status(receipt.message_id, receipt.status)
        return receipt

    async def aclose(self) -> None:
        for provider in self._providers:
            await provider.aclose()
