"""
OAuth provider interface
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class OAuthProviderError(Exception):
    """Token exchange or profile lookup failed at the provider"""
    pass


@dataclass
class OAuthTokens:
    access_token: str
    expires_in: int = 0
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None


@dataclass
class OAuthProfile:
    """Identity normalized across providers"""
    id: str
    email: Optional[str]
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None


class OAuthProvider(ABC):
    name: str = ""
    scopes: List[str] = []

    @abstractmethod
    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        ...

    @abstractmethod
    async def exchange_code_for_token(self, code: str, redirect_uri: str) -> OAuthTokens:
        ...

    @abstractmethod
    async def get_user_profile(self, access_token: str) -> OAuthProfile:
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        ...

    async def aclose(self) -> None:
        return None
