"""
OTP engine: one-time passcode lifecycle and the send/verify policies around it

Store keys (all per phone number):
    otp:{phone}               live OTP record (JSON: code, attempts, createdAt)
    otp:attempts:{phone}      failed verification counter
    otp:blocked:{phone}       verification block
    otp:lastsend:{phone}      last send timestamp (ms) for the resend cooldown
    otp:sendattempts:{phone}  send request counter for the rolling window
    otp:sendblocked:{phone}   send block

Failure policy: the block, cooldown and send-attempt checks fail open when the
store is unreachable; storing and verifying a code fail closed.
"""
import hmac
import json
import logging
import math
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from ..core.errors import InternalError
from ..core.store import KeyValueStore
from ..utils.phone import mask_phone

logger = logging.getLogger(__name__)


@dataclass
class SendPermission:
    """Whether a send may proceed, and if not, how long to wait"""
    allowed: bool
    retry_after: int = 0


class OTPService:
    """
    Generates, stores and verifies one-time passcodes.

    Thresholds default to the production policy and can be overridden per
    instance from settings.
    """

    OTP_LENGTH = 6
    OTP_TTL_SECONDS = 300
    MAX_ATTEMPTS = 5
    BLOCK_DURATION_SECONDS = 900

    RESEND_COOLDOWN_SECONDS = 30
    MAX_SEND_ATTEMPTS = 3
    SEND_ATTEMPTS_WINDOW_SECONDS = 600
    SEND_BLOCK_DURATION_SECONDS = 600

    def __init__(
        self,
        store: KeyValueStore,
        otp_length: Optional[int] = None,
        otp_ttl: Optional[int] = None,
        max_attempts: Optional[int] = None,
        block_duration: Optional[int] = None,
        resend_cooldown: Optional[int] = None,
        max_send_attempts: Optional[int] = None,
        send_attempts_window: Optional[int] = None,
        send_block_duration: Optional[int] = None,
    ):
        self._store = store
        self.otp_length = otp_length or self.OTP_LENGTH
        self.otp_ttl = otp_ttl or self.OTP_TTL_SECONDS
        self.max_attempts = max_attempts or self.MAX_ATTEMPTS
        self.block_duration = block_duration or self.BLOCK_DURATION_SECONDS
        self.resend_cooldown = resend_cooldown or self.RESEND_COOLDOWN_SECONDS
        self.max_send_attempts = max_send_attempts or self.MAX_SEND_ATTEMPTS
        self.send_attempts_window = send_attempts_window or self.SEND_ATTEMPTS_WINDOW_SECONDS
        self.send_block_duration = send_block_duration or self.SEND_BLOCK_DURATION_SECONDS

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings) -> "OTPService":
        return cls(
            store,
            otp_length=settings.OTP_LENGTH,
            otp_ttl=settings.OTP_TTL_SECONDS,
            max_attempts=settings.OTP_MAX_ATTEMPTS,
            block_duration=settings.OTP_BLOCK_DURATION_SECONDS,
            resend_cooldown=settings.SMS_RESEND_COOLDOWN_SECONDS,
            max_send_attempts=settings.SMS_MAX_SEND_ATTEMPTS,
            send_attempts_window=settings.SMS_SEND_ATTEMPTS_WINDOW_SECONDS,
            send_block_duration=settings.SMS_SEND_BLOCK_DURATION_SECONDS,
        )

    # Store keys
    @staticmethod
    def _otp_key(phone: str) -> str:
        return f"otp:{phone}"

    @staticmethod
    def _failed_attempts_key(phone: str) -> str:
        return f"otp:attempts:{phone}"

    @staticmethod
    def _blocked_key(phone: str) -> str:
        return f"otp:blocked:{phone}"

    @staticmethod
    def _last_send_key(phone: str) -> str:
        return f"otp:lastsend:{phone}"

    @staticmethod
    def _send_attempts_key(phone: str) -> str:
        return f"otp:sendattempts:{phone}"

    @staticmethod
    def _send_blocked_key(phone: str) -> str:
        return f"otp:sendblocked:{phone}"

    def generate(self, length: Optional[int] = None) -> str:
        """Generate a numeric code of exactly ``length`` digits (default otp_length)"""
        length = length or self.otp_length
        return "".join(str(secrets.randbelow(10)) for _ in range(length))

    async def store(self, phone: str, code: str, ttl: Optional[int] = None) -> None:
        """
        Store a code for a phone, replacing any live one.

        Raises:
            InternalError: If the store rejects the write
        """
        ttl = ttl or self.otp_ttl
        record = {
            "code": code,
            "attempts": 0,
            "createdAt": int(time.time() * 1000),
        }
        try:
            await self._store.set(self._otp_key(phone), json.dumps(record), ttl=ttl)
        except Exception as e:
            logger.error(f"[OTP] Failed to store OTP for {mask_phone(phone)}: {e}")
            raise InternalError("Failed to store OTP")

        logger.info(f"[OTP] Stored OTP for {mask_phone(phone)} (ttl={ttl}s)")

    async def verify(self, phone: str, code: str) -> bool:
        """
        Verify a code for a phone.

        A matching code is consumed: only the caller whose delete removes the
        record wins, so a concurrent verify with the same code fails.

        Args:
            phone: E.164 phone number
            code: Code supplied by the customer

        Returns:
            True if the code matched the live record

        Raises:
            InternalError: If the store fails while a record is being checked
        """
        if await self.is_blocked(phone):
            logger.warning(f"[OTP] Verification attempted for blocked phone {mask_phone(phone)}")
            return False

        key = self._otp_key(phone)
        try:
            raw = await self._store.get(key)

            if raw is None:
                logger.warning(f"[OTP] No live OTP for {mask_phone(phone)}")
                await self._record_failed_attempt(phone)
                return False

            record = self._parse_record(raw)

            if hmac.compare_digest(str(record["code"]), str(code or "")):
                if await self._store.delete(key) != 1:
                    logger.warning(f"[OTP] OTP for {mask_phone(phone)} already consumed")
                    return False
                await self._store.delete(self._failed_attempts_key(phone))
                age_ms = int(time.time() * 1000) - int(record.get("createdAt", 0))
                logger.info(
                    f"[OTP] Verified OTP for {mask_phone(phone)} "
                    f"(attempts={record['attempts']}, age={age_ms}ms)"
                )
                return True

            record["attempts"] = int(record.get("attempts", 0)) + 1
            await self._store.set(key, json.dumps(record), xx=True, keepttl=True)
            logger.warning(f"[OTP] Invalid OTP for {mask_phone(phone)} (attempt {record['attempts']})")
            await self._record_failed_attempt(phone)
            return False

        except InternalError:
            raise
        except Exception as e:
            logger.error(f"[OTP] Failed to verify OTP for {mask_phone(phone)}: {e}")
            raise InternalError("Failed to verify OTP")

    @staticmethod
    def _parse_record(raw: str) -> dict:
        record = json.loads(raw)
        if not isinstance(record, dict) or "code" not in record:
            raise ValueError("malformed OTP record")
        record.setdefault("attempts", 0)
        return record

    async def _record_failed_attempt(self, phone: str) -> int:
        attempts = await self._store.incr(self._failed_attempts_key(phone), ttl=self.block_duration)

        if attempts >= self.max_attempts:
            await self._store.set(self._blocked_key(phone), "1", ttl=self.block_duration)
            logger.warning(
                f"[OTP] Phone {mask_phone(phone)} blocked for {self.block_duration}s "
                f"after {attempts} failed attempts"
            )
        return attempts

    async def get_failed_attempts(self, phone: str) -> int:
        try:
            value = await self._store.get(self._failed_attempts_key(phone))
            return int(value) if value else 0
        except Exception as e:
            logger.warning(f"[OTP] Failed to read failed attempts for {mask_phone(phone)}: {e}")
            return 0

    async def invalidate(self, phone: str) -> None:
        """Drop the live code for a phone, if any"""
        try:
            await self._store.delete(self._otp_key(phone))
        except Exception as e:
            # Expires on its own
            logger.warning(f"[OTP] Failed to delete OTP for {mask_phone(phone)}: {e}")

    async def unblock(self, phone: str) -> None:
        """Clear a verification block and its failed attempt counter"""
        await self._store.delete(self._blocked_key(phone), self._failed_attempts_key(phone))
        logger.info(f"[OTP] Cleared verification block for {mask_phone(phone)}")

    async def is_blocked(self, phone: str) -> bool:
        """Check the verification block. Fails open."""
        try:
            return await self._store.exists(self._blocked_key(phone))
        except Exception as e:
            logger.error(f"[OTP] Failed to check block for {mask_phone(phone)}, allowing: {e}")
            return False

    async def is_send_blocked(self, phone: str) -> bool:
        """Check the send block. Fails open."""
        try:
            return await self._store.exists(self._send_blocked_key(phone))
        except Exception as e:
            logger.error(f"[OTP] Failed to check send block for {mask_phone(phone)}, allowing: {e}")
            return False

    async def can_resend(self, phone: str) -> SendPermission:
        """Check the resend cooldown. Fails open."""
        try:
            last_send = await self._store.get(self._last_send_key(phone))
        except Exception as e:
            logger.error(f"[OTP] Failed to check resend cooldown for {mask_phone(phone)}, allowing: {e}")
            return SendPermission(allowed=True)

        if not last_send:
            return SendPermission(allowed=True)

        elapsed_ms = int(time.time() * 1000) - int(last_send)
        cooldown_ms = self.resend_cooldown * 1000

        if elapsed_ms < cooldown_ms:
            retry_after = math.ceil((cooldown_ms - elapsed_ms) / 1000)
            logger.warning(f"[OTP] Resend too soon for {mask_phone(phone)}, retry in {retry_after}s")
            return SendPermission(allowed=False, retry_after=retry_after)

        return SendPermission(allowed=True)

    async def track_send_attempt(self, phone: str) -> SendPermission:
        """
        Count a send request in the rolling window.

        Exceeding the cap creates the send block and returns its remaining TTL.
        Fails open.
        """
        try:
            attempts = await self._store.incr(
                self._send_attempts_key(phone), ttl=self.send_attempts_window
            )

            if attempts > self.max_send_attempts:
                block_key = self._send_blocked_key(phone)
                await self._store.set(block_key, "1", ttl=self.send_block_duration, nx=True)
                ttl = await self._store.ttl(block_key)
                logger.warning(
                    f"[OTP] Phone {mask_phone(phone)} send-blocked after {attempts} send attempts"
                )
                return SendPermission(
                    allowed=False,
                    retry_after=ttl if ttl > 0 else self.send_block_duration,
                )

            logger.info(f"[OTP] Send attempt {attempts}/{self.max_send_attempts} for {mask_phone(phone)}")
            return SendPermission(allowed=True)

        except Exception as e:
            logger.error(f"[OTP] Failed to track send attempt for {mask_phone(phone)}, allowing: {e}")
            return SendPermission(allowed=True)

    async def record_send_time(self, phone: str) -> None:
        """Remember when a code was last sent. Best effort."""
        try:
            await self._store.set(
                self._last_send_key(phone),
                str(int(time.time() * 1000)),
                ttl=self.resend_cooldown * 2,
            )
        except Exception as e:
            logger.error(f"[OTP] Failed to record send time for {mask_phone(phone)}: {e}")
