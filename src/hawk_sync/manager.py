# =============================================================================
# Connection Manager
# =============================================================================
# Owns one AccountSession per linked mailbox and drives it through its
# lifecycle:
#
#   connect()
#     -> CredentialGuard.ensure_valid      (refresh if < 5 min left)
#     -> IMAPClient.connect                (TLS + XOAUTH2)
#     -> SyncScheduler.initial_sync        (SELECT INBOX, recent mail, backfill timer)
#     -> ChangeWatcher.start               (IDLE / NOOP polling)
#
# Failures from any of these steps, or from the watcher later on, are sorted
# by the reconnection policy:
#
#   auth rejected      forced refresh, reconnect immediately (once per chain)
#   refresh failed     AuthFailed, account stays disconnected
#   watch timeout      refresh check first, then as transport
#   transport          exponential backoff until max attempts
#
# Everything runs on one event loop. Sessions never share state, so one
# account's failures never touch another.
# =============================================================================

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING, Callable

from hawk_sync.config import ConnectionConfig
from hawk_sync.core import Account, CredentialError, SyncError, utcnow
from hawk_sync.core.events import (
    AccountConnected,
    AccountDisconnected,
    AuthFailed,
    ConnectionClosed,
    ConnectionErrorEvent,
    EventBus,
    InitialEmailsLoaded,
    MaxReconnectAttemptsReached,
    NewEmails,
)
from hawk_sync.imap.client import IMAPClient, IMAPError
from hawk_sync.imap.idle import ChangeWatcher
from hawk_sync.imap.sync import BACKGROUND_TIMER
from hawk_sync.ports import WatermarkSource
from hawk_sync.reconnect import FailureKind, ReconnectPolicy, classify_failure
from hawk_sync.session import AccountSession, ConnectionPhase, SessionStatus

if TYPE_CHECKING:
    from hawk_sync.auth.guard import CredentialGuard
    from hawk_sync.imap.sync import SyncScheduler
    from hawk_sync.timers import Scheduler

logger = logging.getLogger(__name__)

# Timer keys on AccountSession.timers
RECONNECT_TIMER = "reconnect"
TOKEN_TIMER = "token"

ClientFactory = Callable[[Account, ConnectionConfig], IMAPClient]


def default_client_factory(account: Account, config: ConnectionConfig) -> IMAPClient:
    return IMAPClient(
        account,
        connection_timeout=config.connection_timeout,
        greeting_timeout=config.greeting_timeout,
        command_timeout=config.command_timeout,
    )


class ConnectionManager:
    """
    Keeps every connected account authenticated, synced and watched.

    Usage:
        >>> manager = ConnectionManager(guard, sync, events=bus)
        >>> await manager.connect(account)
        True
        >>> manager.status()
        {'work': <ConnectionPhase.WATCHING: 'watching'>}
        >>> await manager.disconnect_all()

    Attributes:
        events: Where lifecycle events are published.
        policy: Backoff settings for automatic reconnects.
    """

    # Never schedule token refreshes closer together than this (seconds)
    MIN_TOKEN_REFRESH_DELAY = 60.0

    def __init__(
        self,
        guard: "CredentialGuard",
        sync: "SyncScheduler",
        *,
        events: EventBus | None = None,
        policy: ReconnectPolicy | None = None,
        scheduler: "Scheduler | None" = None,
        connection: ConnectionConfig | None = None,
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self.guard = guard
        self.sync = sync
        self.events = events or EventBus()
        self.policy = policy or ReconnectPolicy()
        self.scheduler = scheduler or sync.scheduler
        self.connection = connection or ConnectionConfig()
        self.client_factory = client_factory
        self._sessions: dict[str, AccountSession] = {}

    def session(self, account_id: str) -> AccountSession | None:
        return self._sessions.get(account_id)

    # =========================================================================
    # Public API
    # =========================================================================

    async def connect(self, account: Account) -> bool:
        """
        Connect an account, or confirm an existing connection is alive.

        Returns:
            True if the account ends up connected and watching. False if the
            attempt failed; automatic reconnects may already be scheduled.
        """
        session = self._sessions.get(account.id)

        if session is not None:
            if session.phase is ConnectionPhase.CONNECTING:
                logger.info(f"Connection attempt already in progress for {account.email}")
                return False
            if session.is_live and await session.client.probe():
                logger.debug(f"{account.email} already connected")
                return True
            logger.info(f"Replacing stale connection for {account.email}")
            await self._teardown(session)
            session.account = account
            session.reconnect_attempts = 0
            session.auth_retry_used = False
        else:
            session = AccountSession(account=account)
            self._sessions[account.id] = session
            await self._seed_watermark(session)

        return await self._attempt(session)

    async def retry(self, account_id: str) -> bool:
        """
        Manual retry: reset the attempt counter and connect once.

        A failing manual retry schedules nothing; the account stays
        disconnected until the next retry.
        """
        session = self._sessions.get(account_id)

        if session is None:
            account = await self.guard.registry.get_account(account_id)
            if account is None:
                logger.warning(f"Cannot retry unknown account {account_id}")
                return False
            session = AccountSession(account=account)
            self._sessions[account_id] = session
            await self._seed_watermark(session)
        elif session.is_live and await session.client.probe():
            return True

        logger.info(f"Manual retry for {session.account.email}")
        session.timers.cancel(RECONNECT_TIMER)
        session.reconnect_attempts = 0
        session.auth_retry_used = False
        return await self._attempt(session, manual=True)

    async def disconnect(self, account_id: str) -> None:
        """
        Disconnect an account and forget its session. Idempotent.
        """
        session = self._sessions.pop(account_id, None)
        if session is None:
            return

        session.closed = True
        session.timers.cancel_all()
        await self._teardown(session)
        self._set_phase(session, ConnectionPhase.DISCONNECTED)

        logger.info(f"Disconnected {session.account.email}")
        await self.events.emit(AccountDisconnected(session.account_id, session.account.email))

    async def disconnect_all(self) -> None:
        account_ids = list(self._sessions)
        if account_ids:
            logger.info(f"Disconnecting {len(account_ids)} account(s)")
        await asyncio.gather(*(self.disconnect(account_id) for account_id in account_ids))

    def status(self) -> dict[str, ConnectionPhase]:
        """Phase of every known account. No network I/O."""
        return {account_id: session.phase for account_id, session in self._sessions.items()}

    def detailed_status(self) -> list[SessionStatus]:
        return [
            SessionStatus(
                account_id=session.account_id,
                email=session.account.email,
                provider=session.account.provider.value,
                phase=session.phase,
                connected=session.is_live,
                watermark=session.watermark,
                reconnect_attempts=session.reconnect_attempts,
                max_reconnect_attempts=self.policy.max_attempts,
                reconnect_pending=session.timers.is_pending(RECONNECT_TIMER),
                last_error=session.last_error,
            )
            for session in self._sessions.values()
        ]

    async def manual_sync(self, account_id: str) -> int:
        """
        Check for mail above the watermark right now.

        Returns:
            Number of new messages processed.

        Raises:
            SyncError: If the account is not connected.
        """
        session = self._live_session(account_id)
        return await self._sync_new(session, session.client)

    async def mark_as_read(self, account_id: str, uid: int) -> bool:
        """
        Set \\Seen on a message.

        Raises:
            SyncError: If the account is not connected.
        """
        session = self._live_session(account_id)
        client = session.client
        try:
            async with client.exclusive():
                await client.add_flags([uid], ["\\Seen"])
        except IMAPError as e:
            logger.error(f"Failed to mark UID {uid} read for {session.account.email}: {e}")
            return False
        logger.debug(f"Marked UID {uid} read for {session.account.email}")
        return True

    # =========================================================================
    # Connection Attempts
    # =========================================================================

    async def _attempt(self, session: AccountSession, *, manual: bool = False) -> bool:
        if session.closed:
            return False

        session.timers.cancel(RECONNECT_TIMER)
        self._set_phase(session, ConnectionPhase.CONNECTING)

        try:
            connected = await self._establish(session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._handle_failure(session, e, manual=manual)

        if not connected:
            return False

        session.reconnect_attempts = 0
        session.auth_retry_used = False
        session.last_error = None
        logger.info(f"Connected {session.account.email}, watching INBOX")
        await self.events.emit(AccountConnected(session.account_id, session.account.email))
        return True

    async def _establish(self, session: AccountSession) -> bool:
        """
        Run one full connection sequence.

        Returns False if the session was disconnected meanwhile. Raises
        whatever the failing step raised.
        """
        account = session.account
        await self._teardown(session)

        await self.guard.ensure_valid(account)
        if session.closed:
            return False

        client = self.client_factory(account, self.connection)
        session.client = client
        await client.connect(account.credential.access_token)
        if session.closed:
            await self._abandon(session)
            return False
        self._set_phase(session, ConnectionPhase.AUTHENTICATED)

        self._set_phase(session, ConnectionPhase.SYNCING)
        result = await self.sync.initial_sync(session)
        if session.closed:
            await self._abandon(session)
            return False

        account.last_sync_at = utcnow()
        await self.events.emit(
            InitialEmailsLoaded(account.id, account.email, count=result.processed)
        )

        self._start_watcher(session, client)
        self._set_phase(session, ConnectionPhase.WATCHING)
        self._schedule_token_refresh(session)
        return True

    def _start_watcher(self, session: AccountSession, client: IMAPClient) -> None:
        sync_config = self.sync.config
        session.watcher = ChangeWatcher(
            client,
            on_new_mail=partial(self._on_new_mail, session, client),
            on_failure=partial(self._on_watch_failure, session, client),
            idle_refresh=sync_config.idle_refresh_seconds,
            poll_interval=sync_config.poll_interval_seconds,
        )
        session.watcher.start()

    async def _seed_watermark(self, session: AccountSession) -> None:
        """Start the watermark at the highest UID the store already holds."""
        store = self.sync.store
        if not isinstance(store, WatermarkSource):
            return
        try:
            session.advance_watermark(await store.highest_uid(session.account_id))
        except Exception as e:
            logger.warning(f"Could not read stored watermark for {session.account.email}: {e}")
            return
        logger.debug(f"Watermark for {session.account.email} starts at {session.watermark}")

    # =========================================================================
    # Steady State
    # =========================================================================

    async def _on_new_mail(self, session: AccountSession, client: IMAPClient) -> None:
        if session.closed or session.client is not client:
            return
        await self._sync_new(session, client)

    async def _sync_new(self, session: AccountSession, client: IMAPClient) -> int:
        self._set_phase(session, ConnectionPhase.SYNCING)
        try:
            result = await self.sync.sync_new(session)
        finally:
            if not session.closed and session.client is client:
                self._set_phase(session, ConnectionPhase.WATCHING)

        session.account.last_sync_at = utcnow()
        if result.processed > 0:
            await self.events.emit(
                NewEmails(session.account_id, session.account.email, count=result.processed)
            )
        return result.processed

    def _schedule_token_refresh(self, session: AccountSession) -> None:
        """Refresh the access token shortly before it leaves the safety margin."""
        due = self.guard.refresh_due_in(session.account.credential)
        if due is None:
            return
        client = session.client

        async def refresh() -> None:
            if session.closed or session.client is not client:
                return
            try:
                await self.guard.ensure_valid(session.account)
            except CredentialError as e:
                await self._teardown(session)
                await self._give_up_auth(session, e)
                return
            self._schedule_token_refresh(session)

        delay = max(due, self.MIN_TOKEN_REFRESH_DELAY)
        session.timers.replace(
            TOKEN_TIMER,
            self.scheduler.call_later(delay, refresh, name=f"token-{session.account_id}"),
        )

    # =========================================================================
    # Failure Handling
    # =========================================================================

    async def _on_watch_failure(
        self,
        session: AccountSession,
        client: IMAPClient,
        exc: Exception,
    ) -> None:
        """The watcher died. Sort out why and recover."""
        if session.closed or session.client is not client:
            return

        kind = classify_failure(exc)
        if kind is not FailureKind.AUTH:
            await self.events.emit(ConnectionClosed(session.account_id, session.account.email))

        if kind is FailureKind.TIMEOUT:
            session.last_error = str(exc)
            await self._teardown(session)
            try:
                refreshed = await self.guard.ensure_valid(session.account)
            except CredentialError as e:
                await self._give_up_auth(session, e)
                return
            if refreshed:
                logger.info(f"Token refreshed after timeout, reconnecting {session.account.email}")
                await self._attempt(session)
                return

        await self._handle_failure(session, exc)

    async def _handle_failure(
        self,
        session: AccountSession,
        exc: Exception,
        *,
        manual: bool = False,
    ) -> bool:
        """
        Route a failed attempt or dropped connection through the policy.

        Returns:
            True only if an immediate auth recovery reconnected the account.
        """
        account = session.account
        kind = classify_failure(exc)
        session.last_error = str(exc)

        await self._teardown(session)
        if session.closed:
            return False

        if kind is FailureKind.AUTH:
            return await self._recover_auth(session, exc, manual=manual)

        logger.warning(f"Connection failure for {account.email} ({kind.value}): {exc}")
        await self.events.emit(
            ConnectionErrorEvent(account.id, account.email, error=str(exc), kind=kind.value)
        )

        if manual:
            self._set_phase(session, ConnectionPhase.DISCONNECTED)
            return False

        await self._schedule_reconnect(session)
        return False

    async def _recover_auth(
        self,
        session: AccountSession,
        exc: Exception,
        *,
        manual: bool,
    ) -> bool:
        """Forced refresh and one immediate reconnect per failure chain."""
        account = session.account

        if isinstance(exc, CredentialError) or session.auth_retry_used:
            await self._give_up_auth(session, exc)
            return False

        session.auth_retry_used = True
        logger.warning(f"Server rejected credentials for {account.email}, forcing token refresh")
        try:
            await self.guard.ensure_valid(account, force=True)
        except CredentialError as e:
            await self._give_up_auth(session, e)
            return False

        return await self._attempt(session, manual=manual)

    async def _give_up_auth(self, session: AccountSession, exc: Exception) -> None:
        session.timers.cancel_all()
        session.last_error = str(exc)
        self._set_phase(session, ConnectionPhase.DISCONNECTED)
        logger.error(f"Authentication failed for {session.account.email}: {exc}")
        await self.events.emit(
            AuthFailed(session.account_id, session.account.email, reason=str(exc))
        )

    async def _schedule_reconnect(self, session: AccountSession) -> None:
        account = session.account

        if self.policy.exhausted(session.reconnect_attempts):
            self._set_phase(session, ConnectionPhase.DISCONNECTED)
            logger.error(
                f"Giving up on {account.email} after {session.reconnect_attempts} "
                f"reconnect attempts"
            )
            await self.events.emit(
                MaxReconnectAttemptsReached(
                    account.id, account.email, attempts=session.reconnect_attempts
                )
            )
            return

        delay = self.policy.delay(session.reconnect_attempts)
        self._set_phase(session, ConnectionPhase.RECONNECTING)

        async def reconnect() -> None:
            if session.closed or self._sessions.get(session.account_id) is not session:
                return
            session.reconnect_attempts += 1
            session.auth_retry_used = False
            logger.info(
                f"Reconnecting {account.email} "
                f"(attempt {session.reconnect_attempts}/{self.policy.max_attempts})"
            )
            await self._attempt(session)

        logger.info(f"Reconnecting {account.email} in {delay:.1f}s")
        session.timers.replace(
            RECONNECT_TIMER,
            self.scheduler.call_later(delay, reconnect, name=f"reconnect-{account.id}"),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _teardown(self, session: AccountSession) -> None:
        """Stop the watcher and drop the connection. Keeps the session."""
        session.timers.cancel(BACKGROUND_TIMER)
        session.timers.cancel(TOKEN_TIMER)

        watcher, session.watcher = session.watcher, None
        if watcher is not None:
            await watcher.stop()

        client, session.client = session.client, None
        if client is not None:
            await client.logout()

    async def _abandon(self, session: AccountSession) -> None:
        """Clean up after a session was closed mid-attempt."""
        session.timers.cancel_all()
        await self._teardown(session)

    def _live_session(self, account_id: str) -> AccountSession:
        session = self._sessions.get(account_id)
        if session is None or not session.is_live:
            raise SyncError(f"Account {account_id} is not connected")
        return session

    def _set_phase(self, session: AccountSession, phase: ConnectionPhase) -> None:
        if session.phase is not phase:
            logger.debug(f"{session.account.email}: {session.phase.value} -> {phase.value}")
            session.phase = phase
