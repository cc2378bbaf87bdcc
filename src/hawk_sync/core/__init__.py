# =============================================================================
# Hawk-Sync Core Module
# =============================================================================
# Core domain models for Hawk-Sync. These are plain dataclasses with no
# external dependencies, so they can be imported anywhere without causing
# circular imports.
#
#   - Account / OAuthCredential: a mailbox and its OAuth2 tokens
#   - NormalizedMessage and friends: a message as it moves through the engine
#   - Events: what the connection manager tells the outside world
#   - Errors: the failure taxonomy the reconnection policy works from
# =============================================================================

from hawk_sync.core.account import (
    Account,
    OAuthCredential,
    Provider,
    ServerSettings,
    utcnow,
)
from hawk_sync.core.errors import (
    AuthenticationError,
    CredentialError,
    DownstreamError,
    ParseError,
    SyncError,
    TransportError,
    TransportTimeout,
)
from hawk_sync.core.message import (
    AttachmentInfo,
    Category,
    Classification,
    MessageFlags,
    MessageSummary,
    NormalizedMessage,
    RawMessage,
)

__all__ = [
    "Account",
    "OAuthCredential",
    "Provider",
    "ServerSettings",
    "utcnow",
    "AttachmentInfo",
    "Category",
    "Classification",
    "MessageFlags",
    "MessageSummary",
    "NormalizedMessage",
    "RawMessage",
    "SyncError",
    "AuthenticationError",
    "CredentialError",
    "TransportError",
    "TransportTimeout",
    "ParseError",
    "DownstreamError",
]
