# =============================================================================
# Authentication Module
# =============================================================================
# OAuth2 token refresh and the pre-flight credential guard.
# =============================================================================

from hawk_sync.auth.guard import CredentialGuard
from hawk_sync.auth.oauth import OAuthRefresher

__all__ = ["CredentialGuard", "OAuthRefresher"]
