# =============================================================================
# Account Model
# =============================================================================
# Represents a mailbox we keep in sync. Accounts authenticate with OAuth2
# (XOAUTH2 over IMAP), so each one carries an access token, a refresh token,
# and the moment the access token stops being accepted.
#
# IMPORTANT: Tokens are NOT stored in the config file. They live in the system
# keyring (see hawk_sync.storage.accounts) and are attached to the Account at
# runtime. The repr of an Account never includes token material.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum


def utcnow() -> datetime:
    """Returns the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    """Mail providers we know how to reach and refresh tokens for."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"


@dataclass(frozen=True)
class ServerSettings:
    """Where a provider's IMAP server lives."""
    host: str
    port: int = 993
    ssl: bool = True


# Both providers only speak IMAP over implicit TLS on 993
PROVIDER_SERVERS: dict[Provider, ServerSettings] = {
    Provider.GMAIL: ServerSettings("imap.gmail.com", 993),
    Provider.OUTLOOK: ServerSettings("outlook.office365.com", 993),
}


@dataclass
class OAuthCredential:
    """
    An OAuth2 token pair for one account.

    Attributes:
        access_token: Bearer token presented during XOAUTH2 authentication.
        refresh_token: Long-lived token used to mint new access tokens.
        expires_at: When the access token expires (UTC). None means the
                    provider never told us, and we treat it as non-expiring.
    """
    access_token: str = field(repr=False)
    refresh_token: str = field(default="", repr=False)
    expires_at: datetime | None = None

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        """
        Check whether the access token expires inside the given margin.

        Args:
            margin: How far ahead to look.
            now: Reference time (defaults to the current UTC time).

        Returns:
            True if the token is already expired or will be within `margin`.
        """
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return self.expires_at <= now + margin


@dataclass
class Account:
    """
    A mailbox kept in sync by the connection manager.

    Attributes:
        id: Stable account identifier (used in message ids and keyring names).
        email: The mailbox address, also the XOAUTH2 user name.
        provider: Which provider hosts the mailbox.
        credential: Current OAuth2 credential. Replaced in place after refresh.
        active: Inactive accounts are never connected.
        created_at: When the account was registered.
        last_sync_at: When the account last completed an initial sync.
        slack_webhook_url: Optional per-account Slack incoming webhook.

    Example:
        >>> account = Account(
        ...     id="acct-1",
        ...     email="user@gmail.com",
        ...     provider=Provider.GMAIL,
        ...     credential=OAuthCredential(access_token="ya29..."),
        ... )
    """

    id: str
    email: str
    provider: Provider
    credential: OAuthCredential

    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_sync_at: datetime | None = None
    slack_webhook_url: str = ""

    @property
    def server(self) -> ServerSettings:
        """Returns the IMAP server settings for this account's provider."""
        return PROVIDER_SERVERS[self.provider]

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring token storage.

        Tokens can be inspected with the keyring CLI if needed:
            keyring get hawk-sync:acct-1 user@gmail.com
        """
        return f"hawk-sync:{self.id}"

    def __str__(self) -> str:
        return f"{self.id} <{self.email}>"

    def __repr__(self) -> str:
        return (
            f"Account(id={self.id!r}, email={self.email!r}, "
            f"provider={self.provider.value}, active={self.active})"
        )
