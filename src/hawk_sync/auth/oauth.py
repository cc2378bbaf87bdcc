# =============================================================================
# OAuth2 Token Refresh
# =============================================================================
# Mints fresh access tokens from refresh tokens at the provider's token
# endpoint (grant_type=refresh_token).
#
#   Google:     https://oauth2.googleapis.com/token
#   Microsoft:  https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token
#
# Providers may rotate the refresh token (Microsoft usually does). When the
# response carries a new one we keep it, otherwise the old one stays valid.
#
# The authorization-code exchange (the browser consent flow) is not handled
# here; accounts arrive with a refresh token already in the keyring.
# =============================================================================

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

import httpx

from hawk_sync.config import OAuthConfig
from hawk_sync.core import CredentialError, OAuthCredential, Provider, utcnow

if TYPE_CHECKING:
    from hawk_sync.core import Account

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

# Scope Microsoft needs on refresh to hand back an IMAP-capable token
MICROSOFT_SCOPE = "https://outlook.office.com/IMAP.AccessAsUser.All offline_access"

# Used when the token response has no expires_in
DEFAULT_EXPIRES_IN = 3600


def _format_oauth_error(response: httpx.Response) -> str:
    """Compact error summary from an OAuth error response."""
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"

    if not isinstance(payload, dict):
        return f"HTTP {response.status_code}"

    # {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}
    error = payload.get("error", "")
    description = payload.get("error_description", "")
    if isinstance(error, dict):
        error = error.get("status") or error.get("message") or ""
    summary = ": ".join(part for part in (str(error), str(description)) if part)
    return f"HTTP {response.status_code} {summary}".strip()


class OAuthRefresher:
    """
    Refreshes (and revokes) OAuth2 tokens for Gmail and Outlook accounts.

    Usage:
        >>> refresher = OAuthRefresher(config.oauth)
        >>> credential = await refresher.refresh(account)
        >>> await refresher.aclose()
    """

    def __init__(
        self,
        config: OAuthConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    def token_endpoint(self, provider: Provider) -> tuple[str, dict[str, str]]:
        """
        Token URL and client parameters for a provider.

        Raises:
            CredentialError: If the provider has no client registration.
        """
        if provider is Provider.GMAIL:
            if not self.config.google_client_id:
                raise CredentialError("Google OAuth client is not configured")
            return GOOGLE_TOKEN_URL, {
                "client_id": self.config.google_client_id,
                "client_secret": self.config.google_client_secret,
            }

        if not self.config.microsoft_client_id:
            raise CredentialError("Microsoft OAuth client is not configured")
        url = MICROSOFT_TOKEN_URL.format(tenant=self.config.microsoft_tenant or "common")
        return url, {
            "client_id": self.config.microsoft_client_id,
            "client_secret": self.config.microsoft_client_secret,
            "scope": MICROSOFT_SCOPE,
        }

    async def refresh(self, account: "Account") -> OAuthCredential:
        """
        Exchange the account's refresh token for a new access token.

        Returns:
            The new credential. The account is not modified.

        Raises:
            CredentialError: If there is no refresh token or the provider
                             refuses the refresh.
        """
        refresh_token = account.credential.refresh_token
        if not refresh_token:
            raise CredentialError(f"No refresh token for {account.email}")

        url, params = self.token_endpoint(account.provider)
        data = {**params, "refresh_token": refresh_token, "grant_type": "refresh_token"}

        logger.debug(f"Refreshing {account.provider.value} token for {account.email}")
        try:
            response = await self._client().post(url, data=data)
        except httpx.HTTPError as e:
            raise CredentialError(f"Token refresh request failed for {account.email}: {e}") from e

        if response.status_code != 200:
            raise CredentialError(
                f"Token refresh rejected for {account.email}: {_format_oauth_error(response)}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise CredentialError(f"Token endpoint returned invalid JSON for {account.email}") from e

        access_token = payload.get("access_token")
        if not access_token:
            raise CredentialError(f"Token endpoint returned no access_token for {account.email}")

        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        return OAuthCredential(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )

    async def revoke(self, account: "Account") -> bool:
        """
        Best-effort token revocation.

        Google exposes a revocation endpoint; Microsoft does not (tokens are
        revoked from the account portal), so Outlook accounts return False.
        """
        if account.provider is not Provider.GMAIL:
            logger.info(f"Token revocation not supported for {account.provider.value}")
            return False

        token = account.credential.refresh_token or account.credential.access_token
        try:
            response = await self._client().post(GOOGLE_REVOKE_URL, data={"token": token})
        except httpx.HTTPError as e:
            logger.warning(f"Token revocation failed for {account.email}: {e}")
            return False

        if response.status_code != 200:
            logger.warning(
                f"Token revocation rejected for {account.email}: {_format_oauth_error(response)}"
            )
            return False

        logger.info(f"Revoked token for {account.email}")
        return True
