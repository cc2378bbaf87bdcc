# =============================================================================
# Credential Guard
# =============================================================================
# Makes sure a connection attempt never starts with a token that is about to
# expire. Before every connect, and whenever the server rejects us, the
# connection manager asks the guard to vouch for the account's credential:
#
#   - valid for at least REFRESH_MARGIN more  -> nothing to do
#   - expiring sooner (or forced)             -> refresh now, persist, proceed
#   - refresh impossible or refused           -> CredentialError (fail closed)
#
# Refreshes for the same account are serialized, so a reconnect and a token
# timer firing together don't both spend the refresh token.
# =============================================================================

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from hawk_sync.core import CredentialError, utcnow

if TYPE_CHECKING:
    from hawk_sync.auth.oauth import OAuthRefresher
    from hawk_sync.core import Account, OAuthCredential
    from hawk_sync.ports import AccountRegistry

logger = logging.getLogger(__name__)


class CredentialGuard:
    """
    Pre-flight credential checks and refresh.

    Usage:
        >>> guard = CredentialGuard(registry, OAuthRefresher(config.oauth))
        >>> refreshed = await guard.ensure_valid(account)
    """

    # Refresh when the access token has less than this left
    REFRESH_MARGIN = timedelta(minutes=5)

    def __init__(
        self,
        registry: "AccountRegistry",
        refresher: "OAuthRefresher",
        *,
        margin: timedelta = REFRESH_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.refresher = refresher
        self.margin = margin
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def is_valid(self, credential: "OAuthCredential", now: datetime | None = None) -> bool:
        """True if the credential is good for at least the refresh margin."""
        return not credential.expires_within(self.margin, now or self.clock())

    def refresh_due_in(self, credential: "OAuthCredential") -> float | None:
        """
        Seconds until the credential enters the refresh margin.

        None for credentials without an expiry.
        """
        if credential.expires_at is None:
            return None
        due = credential.expires_at - self.margin - self.clock()
        return max(0.0, due.total_seconds())

    async def ensure_valid(self, account: "Account", *, force: bool = False) -> bool:
        """
        Make sure the account holds a usable access token.

        Args:
            account: Updated in place when the token is refreshed.
            force: Refresh even if the token looks valid (the server just
                   rejected it).

        Returns:
            True if a refresh happened, False if the token was already fine.

        Raises:
            CredentialError: If a needed refresh failed.
        """
        if not force and self.is_valid(account.credential):
            return False

        lock = self._locks.setdefault(account.id, asyncio.Lock())
        async with lock:
            # Someone else may have refreshed while we waited
            if not force and self.is_valid(account.credential):
                return False

            reason = "forced" if force else "expiring"
            logger.info(f"Refreshing access token for {account.email} ({reason})")

            try:
                credential = await self.refresher.refresh(account)
            except CredentialError:
                logger.error(f"Token refresh failed for {account.email}")
                raise
            except Exception as e:
                logger.error(f"Token refresh failed for {account.email}: {e}", exc_info=True)
                raise CredentialError(f"Token refresh failed for {account.email}: {e}") from e

            account.credential = credential

            try:
                await self.registry.save_credential(account.id, credential)
            except Exception as e:
                # The new token works either way; we just can't reuse it after a restart
                logger.error(f"Could not persist refreshed token for {account.email}: {e}")

            logger.info(f"Access token for {account.email} valid until {credential.expires_at}")
            return True
