"""
OAuth login: provider registry, signed state and callback handling
"""
import logging
from typing import Dict, List

from jose import JWTError

from ..core.errors import AuthenticationError, ExternalServiceError, ValidationError
from ..core.security import create_oauth_state, verify_oauth_state
from .oauth.base import OAuthProfile, OAuthProvider, OAuthProviderError

logger = logging.getLogger(__name__)


class OAuthService:
    """Registry of OAuth providers keyed by name"""

    def __init__(self):
        self._providers: Dict[str, OAuthProvider] = {}

    def register_provider(self, provider: OAuthProvider) -> None:
        self._providers[provider.name] = provider
        logger.info(f"[OAuth] Registered provider {provider.name}")

    def get_provider(self, name: str) -> OAuthProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ValidationError.for_field("provider", f"Unsupported OAuth provider: {name}")
        return provider

    def list_providers(self) -> List[str]:
        return sorted(self._providers)

    def initiate_oauth(self, provider_name: str, redirect_uri: str) -> Dict[str, str]:
        """
        Start an authorization code flow.

        Returns:
            Dict with authorization_url and the signed state
        """
        provider = self.get_provider(provider_name)
        state = create_oauth_state(provider.name)
        return {
            "authorization_url": provider.get_authorization_url(state, redirect_uri),
            "state": state,
        }

    async def handle_callback(self, provider_name: str, code: str, state: str, redirect_uri: str) -> OAuthProfile:
        """
        Finish an authorization code flow and return the normalized profile.

        Raises:
            ValidationError: Unknown provider or missing code
            AuthenticationError: State missing, expired or forged
            ExternalServiceError: The provider rejected the exchange or lookup
        """
        provider = self.get_provider(provider_name)
        if not code:
            raise ValidationError.for_field("code", "Authorization code is required")

        try:
            verify_oauth_state(state or "", provider.name)
        except JWTError as e:
            logger.warning(f"[OAuth] Rejected state for {provider.name}: {e}")
            raise AuthenticationError("OAuth login failed")

        try:
            tokens = await provider.exchange_code_for_token(code, redirect_uri)
            return await provider.get_user_profile(tokens.access_token)
        except OAuthProviderError as e:
            logger.error(f"[OAuth] {provider.name} callback failed: {e}")
            raise ExternalServiceError("OAuth login failed. Please try again.")

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
