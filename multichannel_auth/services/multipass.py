"""
Multipass hand-off tokens.

Token layout (before URL-safe base64 without padding):

    IV (16 bytes) | AES-128-CBC ciphertext | HMAC-SHA256(IV | ciphertext) (32 bytes)

Both keys come from SHA-256 of the tenant secret: the first 16 bytes encrypt,
the last 16 bytes sign.
"""
import base64
import hashlib
import hmac
import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..core.config import Tenant
from ..utils.email import mask_email

logger = logging.getLogger(__name__)

IV_SIZE = 16
SIGNATURE_SIZE = 32
BLOCK_SIZE_BITS = 128

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class MultipassError(Exception):
    """Raised for invalid payloads, secrets or tokens"""
    pass


@dataclass(frozen=True)
class MultipassKeys:
    encryption_key: bytes
    signing_key: bytes


@lru_cache(maxsize=128)
def derive_keys(secret: str) -> MultipassKeys:
    """
    Derive the key pair for a tenant secret.

    Cached, so each tenant's keys are computed once per process.
    """
    if not secret:
        raise MultipassError("Multipass secret is not configured")
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return MultipassKeys(encryption_key=digest[:16], signing_key=digest[16:])


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MultipassPayload:
    """Customer identity handed to the storefront. Never persisted."""
    email: str
    created_at: str = field(default_factory=_utc_now_iso)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    tag_string: Optional[str] = None
    identifier: Optional[str] = None
    remote_ip: Optional[str] = None
    return_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _base64url_encode(data: bytes) -> str:
    """Base64 URL-safe encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def _base64url_decode(data: str) -> bytes:
    """Base64 URL-safe decode with padding restoration."""
    padding_needed = 4 - len(data) % 4
    if padding_needed != 4:
        data += '=' * padding_needed
    return base64.urlsafe_b64decode(data)


def validate_payload(payload: Dict[str, Any]) -> None:
    """
    Check a payload before encrypting it.

    Raises:
        MultipassError: If the email is missing or malformed, or created_at
            is not an ISO-8601 timestamp
    """
    email = payload.get("email")
    if not email or not isinstance(email, str) or not EMAIL_PATTERN.fullmatch(email):
        raise MultipassError("Multipass payload requires a valid email")

    created_at = payload.get("created_at")
    if not created_at or not isinstance(created_at, str):
        raise MultipassError("Multipass payload requires created_at")
    try:
        datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    except ValueError:
        raise MultipassError("Multipass payload created_at must be ISO-8601")


class MultipassService:
    """Generates and decodes hand-off tokens and storefront login URLs"""

    LOGIN_PATH = "/account/login/multipass/"

    def generate_token(
        self,
        secret: str,
        payload: Union[MultipassPayload, Dict[str, Any]],
        return_to: Optional[str] = None,
    ) -> str:
        """
        Encrypt and sign a payload.

        Args:
            secret: Tenant Multipass secret
            payload: Customer data (email and created_at required)
            return_to: Optional storefront path to land on after login

        Returns:
            URL-safe token

        Raises:
            MultipassError: If the payload or secret is invalid
        """
        data = payload.to_dict() if isinstance(payload, MultipassPayload) else dict(payload)
        if return_to:
            data["return_to"] = return_to

        validate_payload(data)
        keys = derive_keys(secret)

        plaintext = json.dumps(data, separators=(",", ":")).encode("utf-8")
        iv = os.urandom(IV_SIZE)

        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(keys.encryption_key), modes.CBC(iv)).encryptor()
        ciphertext = iv + encryptor.update(padded) + encryptor.finalize()

        signature = hmac.new(keys.signing_key, ciphertext, hashlib.sha256).digest()
        return _base64url_encode(ciphertext + signature)

    def decode_token(self, secret: str, token: str) -> Dict[str, Any]:
        """
        Verify and decrypt a token produced by ``generate_token``.

        Raises:
            MultipassError: If the token is malformed or its signature does not match
        """
        keys = derive_keys(secret)
        try:
            raw = _base64url_decode(token)
        except (ValueError, TypeError):
            raise MultipassError("Token is not valid base64")

        if len(raw) < IV_SIZE + BLOCK_SIZE_BITS // 8 + SIGNATURE_SIZE:
            raise MultipassError("Token is too short")

        ciphertext, signature = raw[:-SIGNATURE_SIZE], raw[-SIGNATURE_SIZE:]
        expected = hmac.new(keys.signing_key, ciphertext, hashlib.sha256).digest()
        if not hmac.compare_digest(expected, signature):
            raise MultipassError("Invalid token signature")

        iv, body = ciphertext[:IV_SIZE], ciphertext[IV_SIZE:]
        try:
            decryptor = Cipher(algorithms.AES(keys.encryption_key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return json.loads(plaintext.decode("utf-8"))
        except ValueError as e:
            raise MultipassError(f"Token could not be decrypted: {e}")

    def build_redirect_url(
        self,
        tenant: Tenant,
        payload: Union[MultipassPayload, Dict[str, Any]],
        return_to: Optional[str] = None,
    ) -> str:
        """Storefront login URL carrying a fresh token for ``payload``"""
        token = self.generate_token(tenant.multipass_secret, payload, return_to)
        email = payload.email if isinstance(payload, MultipassPayload) else payload.get("email", "")
        logger.info(f"[Multipass] Issued token for {mask_email(email)} on {tenant.shop_domain}")
        return f"https://{tenant.shop_domain}{self.LOGIN_PATH}{token}"
