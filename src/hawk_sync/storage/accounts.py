# =============================================================================
# Account Registry (config file + system keyring)
# =============================================================================
# Accounts are declared in config.toml; their OAuth tokens live in the system
# keyring, one entry per account:
#
#   service:  "hawk-sync:<account id>"
#   username: the account's email address
#   password: JSON {"access_token", "refresh_token", "expires_at" (ISO 8601)}
#
# Seed an entry with e.g.:
#   keyring set hawk-sync:work me@example.com
#   (then paste {"access_token": "...", "refresh_token": "...", "expires_at": null})
#
# Refreshed credentials are written back so a restart doesn't need a refresh.
# keyring is a blocking API, so every call runs in a worker thread.
# =============================================================================

import asyncio
import json
import logging
from datetime import datetime, timezone
from types import ModuleType
from typing import Any

import keyring
from keyring.errors import KeyringError

from hawk_sync.config import AccountConfig, Config
from hawk_sync.core import Account, CredentialError, OAuthCredential

logger = logging.getLogger(__name__)


def credential_to_json(credential: OAuthCredential) -> str:
    return json.dumps({
        "access_token": credential.access_token,
        "refresh_token": credential.refresh_token,
        "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
    })


def credential_from_json(payload: str) -> OAuthCredential:
    """
    Parse a keyring entry.

    A bare string (not JSON) is taken as an access token with no refresh
    token and no expiry.

    Raises:
        CredentialError: If the entry is JSON but not a usable credential.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return OAuthCredential(access_token=payload.strip())

    if not isinstance(data, dict) or not data.get("access_token"):
        raise CredentialError("Keyring entry has no access_token")

    expires_at = None
    if data.get("expires_at"):
        try:
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (TypeError, ValueError) as e:
            raise CredentialError(f"Invalid expires_at in keyring entry: {e}") from e
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

    return OAuthCredential(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or "",
        expires_at=expires_at,
    )


class KeyringAccountRegistry:
    """
    AccountRegistry backed by the config file and the system keyring.

    Usage:
        >>> registry = KeyringAccountRegistry(config)
        >>> account = await registry.get_account("work")
    """

    def __init__(self, config: Config, backend: ModuleType | Any = keyring) -> None:
        self.config = config
        self.backend = backend
        self._accounts: dict[str, Account] = {}

    def _account_config(self, account_id: str) -> AccountConfig | None:
        return self.config.accounts.get(account_id)

    async def load_credential(self, account_id: str, email: str) -> OAuthCredential:
        """
        Read an account's tokens from the keyring.

        Raises:
            CredentialError: If there is no entry or it can't be read.
        """
        service = f"hawk-sync:{account_id}"
        try:
            payload = await asyncio.to_thread(self.backend.get_password, service, email)
        except KeyringError as e:
            raise CredentialError(f"Keyring lookup failed for {email}: {e}") from e

        if not payload:
            raise CredentialError(
                f"No OAuth tokens in keyring for {email}. "
                f"Set them with: keyring set {service} {email}"
            )
        return credential_from_json(payload)

    async def get_account(self, account_id: str) -> Account | None:
        """
        Build (and cache) the Account for a configured id.

        Returns None for unknown ids and for accounts without usable
        tokens; the reason is logged.
        """
        if account_id in self._accounts:
            return self._accounts[account_id]

        account_config = self._account_config(account_id)
        if account_config is None:
            logger.warning(f"Unknown account: {account_id}")
            return None

        try:
            credential = await self.load_credential(account_id, account_config.email)
        except CredentialError as e:
            logger.error(str(e))
            return None

        account = Account(
            id=account_config.id,
            email=account_config.email,
            provider=account_config.provider,
            credential=credential,
            active=account_config.active,
            slack_webhook_url=account_config.slack_webhook_url,
        )
        self._accounts[account_id] = account
        return account

    async def list_active(self) -> list[Account]:
        accounts = []
        for account_id, account_config in self.config.accounts.items():
            if not account_config.active:
                continue
            account = await self.get_account(account_id)
            if account is not None:
                accounts.append(account)
        return accounts

    async def is_active(self, account_id: str) -> bool:
        account_config = self._account_config(account_id)
        return account_config is not None and account_config.active

    async def save_credential(self, account_id: str, credential: OAuthCredential) -> None:
        """
        Write a refreshed credential back to the keyring.

        Raises:
            CredentialError: For unknown accounts or keyring failures.
        """
        account_config = self._account_config(account_id)
        if account_config is None:
            raise CredentialError(f"Unknown account: {account_id}")

        service = f"hawk-sync:{account_id}"
        try:
            await asyncio.to_thread(
                self.backend.set_password,
                service,
                account_config.email,
                credential_to_json(credential),
            )
        except KeyringError as e:
            raise CredentialError(f"Could not store tokens for {account_config.email}: {e}") from e

        logger.debug(f"Stored refreshed tokens for {account_config.email}")
