"""OAuth token lifecycle."""

from .token_manager import (
    OAuthClient,
    TokenManager,
    TokenRefreshError,
    TokenRejected,
    TokenResponse,
)

__all__ = [
    "OAuthClient",
    "TokenManager",
    "TokenRefreshError",
    "TokenRejected",
    "TokenResponse",
]
