"""
Calendar credentials.

Per-tenant OAuth token lifecycle with single-flight refresh.
"""

from techassist.core.auth.oauth_client import GoogleOAuthClient, TokenGrant
from techassist.core.auth.token_manager import TokenManager, TokenState, can_transition

__all__ = [
    "GoogleOAuthClient",
    "TokenGrant",
    "TokenManager",
    "TokenState",
    "can_transition",
]
