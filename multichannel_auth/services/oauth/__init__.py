"""
OAuth providers
"""
from .base import OAuthProvider, OAuthProviderError, OAuthProfile, OAuthTokens
from .google_oauth import GoogleOAuthProvider

__all__ = [
    "OAuthProvider",
    "OAuthProviderError",
    "OAuthProfile",
    "OAuthTokens",
    "GoogleOAuthProvider",
]
