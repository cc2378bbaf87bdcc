# =============================================================================
# Error Taxonomy
# =============================================================================
# Every failure the sync engine reacts to is one of these. The reconnection
# policy only looks at the class of an exception:
#
#   AuthenticationError   server rejected our credentials  -> refresh + retry
#   CredentialError       token refresh failed             -> give up (authFailed)
#   TransportTimeout      socket/command timed out         -> refresh check
#   TransportError        anything else on the wire        -> backoff
#
# ParseError and DownstreamError never reach the reconnection policy. They
# are logged where they happen and the affected message is skipped (parse)
# or the pipeline carries on (downstream).
# =============================================================================


class SyncError(Exception):
    """Base exception for the sync engine."""
    pass


class AuthenticationError(SyncError):
    """The server rejected our credentials."""
    pass


class CredentialError(AuthenticationError):
    """Refreshing a credential failed, or no refresh token is available."""
    pass


class TransportError(SyncError):
    """Network or protocol failure talking to the mail server."""
    pass


class TransportTimeout(TransportError):
    """A connection or command timed out."""
    pass


class ParseError(SyncError):
    """A fetched message could not be parsed."""
    pass


class DownstreamError(SyncError):
    """A store, classifier, content pipeline, or notifier failed."""
    pass
