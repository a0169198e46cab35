"""
Opaque session tokens stored under session:{id}
"""
import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import List, Optional

from ..core.store import KeyValueStore
from ..utils.email import mask_email

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    sessionId: str
    shop: str
    customerId: str
    customerEmail: str
    createdAt: int  # epoch milliseconds
    expiresAt: int  # epoch milliseconds

    @property
    def is_expired(self) -> bool:
        return self.expiresAt <= int(time.time() * 1000)


class SessionService:
    """
    Issues, validates, refreshes and revokes customer sessions.

    A customer may hold several sessions (one per device); they can be listed
    and revoked together.
    """

    SESSION_TTL_SECONDS = 86400  # 24 hours
    KEY_PREFIX = "session:"

    def __init__(self, store: KeyValueStore, ttl_seconds: Optional[int] = None):
        self._store = store
        self.ttl_seconds = ttl_seconds or self.SESSION_TTL_SECONDS

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    @staticmethod
    def generate_token() -> str:
        """256 random bits, hex encoded (64 characters)"""
        return secrets.token_hex(32)

    async def create_session(self, shop: str, customer_id: str, customer_email: str) -> str:
        """
        Create a session for a customer.

        Returns:
            The new session id
        """
        session_id = self.generate_token()
        now_ms = int(time.time() * 1000)
        record = SessionRecord(
            sessionId=session_id,
            shop=shop,
            customerId=str(customer_id),
            customerEmail=customer_email,
            createdAt=now_ms,
            expiresAt=now_ms + self.ttl_seconds * 1000,
        )
        await self._store.set(self._key(session_id), json.dumps(asdict(record)), ttl=self.ttl_seconds)
        logger.info(f"[Session] Created session for customer {customer_id} ({mask_email(customer_email)})")
        return session_id

    async def _load(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self._store.get(self._key(session_id))
        if not raw:
            return None
        try:
            return SessionRecord(**json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"[Session] Discarding unreadable session record: {e}")
            await self._store.delete(self._key(session_id))
            return None

    async def validate_session(self, session_id: str) -> Optional[SessionRecord]:
        """
        Look up a live session.

        A record whose expiresAt has passed is deleted and treated as absent
        even if the store has not reaped it yet.
        """
        if not session_id:
            return None

        record = await self._load(session_id)
        if record is None:
            return None

        if record.is_expired:
            await self._store.delete(self._key(session_id))
            logger.info(f"[Session] Removed expired session for customer {record.customerId}")
            return None

        return record

    async def invalidate_session(self, session_id: str) -> None:
        """Delete a session. Missing ids are ignored."""
        if session_id:
            await self._store.delete(self._key(session_id))

    async def refresh_session(self, session_id: str) -> bool:
        """
        Extend a session by a full TTL.

        Returns:
            False if the session does not exist
        """
        record = await self.validate_session(session_id)
        if record is None:
            return False

        record.expiresAt = int(time.time() * 1000) + self.ttl_seconds * 1000
        updated = await self._store.set(
            self._key(session_id), json.dumps(asdict(record)), ttl=self.ttl_seconds, xx=True
        )
        return updated

    async def get_session_ttl(self, session_id: str) -> int:
        """Remaining store TTL in seconds (-2 if the session is missing)"""
        return await self._store.ttl(self._key(session_id))

    async def get_customer_sessions(self, customer_id: str) -> List[SessionRecord]:
        """All live sessions for a customer"""
        sessions = []
        async for key in self._store.scan_iter(f"{self.KEY_PREFIX}*"):
            record = await self._load(key[len(self.KEY_PREFIX):])
            if record and record.customerId == str(customer_id) and not record.is_expired:
                sessions.append(record)
        return sessions

    async def invalidate_all_customer_sessions(self, customer_id: str) -> int:
        """
        Revoke every session of one customer.

        Returns:
            Number of sessions removed
        """
        sessions = await self.get_customer_sessions(customer_id)
        if not sessions:
            return 0
        removed = await self._store.delete(*(self._key(s.sessionId) for s in sessions))
        logger.info(f"[Session] Revoked {removed} session(s) for customer {customer_id}")
        return removed
