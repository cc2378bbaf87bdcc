# =============================================================================
# Reconnection Policy
# =============================================================================
# Decides how the connection manager reacts to a failed or dropped
# connection. Three kinds of failure are distinguished:
#
#   AUTH       the server (or the token endpoint) rejected our credentials.
#              Force a token refresh and reconnect immediately, once.
#   TIMEOUT    a socket or command timed out. Often an expired token in
#              disguise, so check the credential before backing off.
#   TRANSPORT  everything else. Exponential backoff with jitter:
#
#                  delay(n) = base * 2**n + uniform(0, jitter)
#
#              until max_attempts is reached.
# =============================================================================

import random
from dataclasses import dataclass, field
from enum import Enum

from hawk_sync.config import ReconnectConfig
from hawk_sync.core import AuthenticationError, TransportTimeout


class FailureKind(Enum):
    AUTH = "auth"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception onto the reconnection policy's failure kinds."""
    if isinstance(exc, AuthenticationError):
        return FailureKind.AUTH
    if isinstance(exc, (TransportTimeout, TimeoutError)):
        return FailureKind.TIMEOUT
    return FailureKind.TRANSPORT


@dataclass
class ReconnectPolicy:
    """
    Exponential backoff with jitter and an attempt cap.

    Usage:
        >>> policy = ReconnectPolicy(base_delay=30, max_attempts=5, jitter=0)
        >>> [policy.delay(n) for n in range(3)]
        [30.0, 60.0, 120.0]
    """
    base_delay: float = 30.0
    max_attempts: int = 5
    jitter: float = 5.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_config(cls, config: ReconnectConfig) -> "ReconnectPolicy":
        return cls(
            base_delay=config.base_delay_seconds,
            max_attempts=config.max_attempts,
            jitter=config.jitter_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait before automatic attempt number `attempt` (0-based)."""
        jitter = self.rng.uniform(0, self.jitter) if self.jitter > 0 else 0.0
        return self.base_delay * (2 ** attempt) + jitter

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
