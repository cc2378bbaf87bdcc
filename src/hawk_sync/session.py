# =============================================================================
# Account Session
# =============================================================================
# Everything the engine knows about one connected account lives in a single
# AccountSession record: its phase, the live connection, the UID watermark,
# reconnect bookkeeping and the timers scheduled on its behalf.
#
# Sessions are created by ConnectionManager.connect() and destroyed by
# disconnect(). Nothing else holds on to one, so tearing a session down is
# the same as forgetting the account.
# =============================================================================

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from hawk_sync.timers import TimerSet

if TYPE_CHECKING:
    from hawk_sync.core import Account
    from hawk_sync.imap.client import IMAPClient
    from hawk_sync.imap.idle import ChangeWatcher


class ConnectionPhase(str, Enum):
    """
    Where an account is in its connection lifecycle.

        DISCONNECTED -> CONNECTING -> AUTHENTICATED -> SYNCING -> WATCHING
        WATCHING -> SYNCING -> WATCHING          (new mail)
        WATCHING -> RECONNECTING -> CONNECTING   (failure + backoff)
        RECONNECTING -> DISCONNECTED             (gave up)
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SYNCING = "syncing"
    WATCHING = "watching"
    RECONNECTING = "reconnecting"


# Phases in which the session holds an authenticated connection
LIVE_PHASES = frozenset({
    ConnectionPhase.AUTHENTICATED,
    ConnectionPhase.SYNCING,
    ConnectionPhase.WATCHING,
})


@dataclass
class AccountSession:
    """
    Per-account connection state.

    Attributes:
        account: The account (credential is refreshed in place).
        phase: Current lifecycle phase.
        client: The one live connection, if any.
        watermark: Highest UID processed. Never decreases.
        reconnect_attempts: Automatic attempts since the last success.
        processed_uids: UIDs handled during this process's lifetime.
        timers: Pending reconnect/background/token timers.
        watcher: The IDLE loop, while watching.
        last_error: Message of the most recent failure.
        auth_retry_used: Whether the current failure chain already spent
                         its forced refresh.
        closed: Set once disconnect() has started; late callbacks check it.
    """
    account: "Account"
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    client: "IMAPClient | None" = None
    watermark: int = 0
    reconnect_attempts: int = 0
    processed_uids: set[int] = field(default_factory=set)
    timers: TimerSet = field(default_factory=TimerSet)
    watcher: "ChangeWatcher | None" = None
    last_error: str | None = None
    auth_retry_used: bool = False
    closed: bool = False

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def is_live(self) -> bool:
        return (
            self.phase in LIVE_PHASES
            and self.client is not None
            and self.client.is_connected
        )

    def advance_watermark(self, uid: int) -> int:
        """Raise the watermark to `uid` if it is higher. Returns the watermark."""
        if uid > self.watermark:
            self.watermark = uid
        return self.watermark


@dataclass(frozen=True)
class SessionStatus:
    """Snapshot of a session for status reporting."""
    account_id: str
    email: str
    provider: str
    phase: ConnectionPhase
    connected: bool
    watermark: int
    reconnect_attempts: int
    max_reconnect_attempts: int
    reconnect_pending: bool
    last_error: str | None = None
