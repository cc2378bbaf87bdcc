# =============================================================================
# IMAP Module
# =============================================================================
# Everything that talks to the mail server:
#   - IMAPClient: one OAuth2 (XOAUTH2) connection, serialized command access
#   - SyncScheduler: initial, background and incremental INBOX sync
#   - ChangeWatcher: IMAP IDLE (or NOOP polling) for new mail
#
# This module uses aioimaplib for async IMAP operations, so many accounts
# can be watched from one event loop.
# =============================================================================

from hawk_sync.imap.client import (
    IMAPClient,
    IMAPError,
    IMAPConnectionError,
    IMAPTimeoutError,
    IMAPAuthenticationError,
    ConnectionState,
)
from hawk_sync.imap.sync import (
    SyncScheduler,
    BatchResult,
)
from hawk_sync.imap.idle import (
    ChangeWatcher,
    IdleNotice,
    parse_notification,
)

__all__ = [
    # Client
    "IMAPClient",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPTimeoutError",
    "IMAPAuthenticationError",
    "ConnectionState",
    # Sync
    "SyncScheduler",
    "BatchResult",
    # IDLE
    "ChangeWatcher",
    "IdleNotice",
    "parse_notification",
]
