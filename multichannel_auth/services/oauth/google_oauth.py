"""
Google OAuth 2.0 provider (authorization code flow)
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from ...utils.email import mask_email
from .base import OAuthProfile, OAuthProvider, OAuthProviderError, OAuthTokens

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"


class GoogleOAuthProvider(OAuthProvider):
    """
    Google sign-in.

    Calls are made once; failures raise OAuthProviderError for the caller to
    surface.
    """

    name = "google"
    scopes = ["openid", "email", "profile"]

    def __init__(self, client_id: str, client_secret: str, client: Optional[httpx.AsyncClient] = None):
        if not client_id:
            raise ValueError("Google OAuth client ID is required")
        if not client_secret:
            raise ValueError("Google OAuth client secret is required")

        self.client_id = client_id
        self.client_secret = client_secret
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._owns_client = client is None

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTHORIZATION_ENDPOINT}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str], action: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(GOOGLE_TOKEN_ENDPOINT, data=data)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"[OAuth][Google] {action} failed: HTTP {e.response.status_code} {e.response.text[:200]}")
            raise OAuthProviderError(f"Google {action} failed with HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[OAuth][Google] {action} failed: {e}")
            raise OAuthProviderError(f"Google {action} failed")

    async def exchange_code_for_token(self, code: str, redirect_uri: str) -> OAuthTokens:
        data = await self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            "code exchange",
        )
        if not data.get("access_token"):
            raise OAuthProviderError("Google code exchange returned no access token")

        logger.info(f"[OAuth][Google] Code exchanged (refresh_token={'yes' if data.get('refresh_token') else 'no'})")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in") or 0),
            token_type=data.get("token_type") or "Bearer",
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        data = await self._token_request(
            {
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
            "token refresh",
        )
        return OAuthTokens(
            access_token=data["access_token"],
            # Google only returns a new refresh token when it rotates it
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_in=int(data.get("expires_in") or 0),
            token_type=data.get("token_type") or "Bearer",
        )

    async def get_user_profile(self, access_token: str) -> OAuthProfile:
        try:
            response = await self._client.get(
                GOOGLE_USERINFO_ENDPOINT,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"[OAuth][Google] Profile lookup failed: HTTP {e.response.status_code}")
            raise OAuthProviderError(f"Google profile lookup failed with HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[OAuth][Google] Profile lookup failed: {e}")
            raise OAuthProviderError("Google profile lookup failed")

        profile = OAuthProfile(
            id=str(data.get("id") or ""),
            email=data.get("email"),
            email_verified=bool(data.get("verified_email", False)),
            first_name=data.get("given_name"),
            last_name=data.get("family_name"),
            phone=data.get("phone"),
            avatar=data.get("picture"),
        )
        logger.info(
            f"[OAuth][Google] Profile fetched for {mask_email(profile.email or '')} "
            f"(verified={profile.email_verified})"
        )
        return profile

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
