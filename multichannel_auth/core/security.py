from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import uuid

from jose import jwt
from passlib.context import CryptContext

from .config import settings

# bcrypt at cost 12
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.PASSWORD_HASH_ROUNDS,
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_oauth_state(provider: str, nonce: Optional[str] = None) -> str:
    """
    Create a signed state JWT for an OAuth authorization request.

    Args:
        provider: OAuth provider name the state is bound to
        nonce: Optional nonce for additional security

    Returns:
        Signed JWT token string
    """
    if nonce is None:
        nonce = str(uuid.uuid4())

    expire = datetime.utcnow() + timedelta(minutes=settings.OAUTH_STATE_TTL_MINUTES)

    payload: Dict[str, Any] = {
        "provider": provider,
        "nonce": nonce,
        "purpose": "oauth_login",
        "exp": expire,
        "iat": datetime.utcnow()
    }

    if not settings.OAUTH_STATE_SECRET:
        raise ValueError("OAUTH_STATE_SECRET not configured")

    return jwt.encode(payload, settings.OAUTH_STATE_SECRET, algorithm=settings.ALGORITHM)


def verify_oauth_state(token: str, provider: str) -> Dict[str, Any]:
    """
    Verify and decode an OAuth state JWT.

    Returns:
        Decoded payload with provider and nonce

    Raises:
        jwt.ExpiredSignatureError: If token is expired
        jwt.JWTError: If token is invalid or bound to another provider
    """
    if not settings.OAUTH_STATE_SECRET:
        raise ValueError("OAUTH_STATE_SECRET not configured")

    payload = jwt.decode(token, settings.OAUTH_STATE_SECRET, algorithms=[settings.ALGORITHM])

    if payload.get("purpose") != "oauth_login":
        raise jwt.JWTError("Invalid token purpose")

    if payload.get("provider") != provider:
        raise jwt.JWTError("State was issued for a different provider")

    return payload
