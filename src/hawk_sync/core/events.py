# =============================================================================
# Sync Events
# =============================================================================
# Typed events published by the connection manager. Consumers subscribe to
# the EventBus and receive every event in emission order; dispatch on the
# class with isinstance() or match statements:
#
#     def on_event(event: SyncEvent) -> None:
#         match event:
#             case NewEmails(account_id=aid, count=n):
#                 print(f"{aid}: {n} new")
#             case AuthFailed():
#                 ...
#
# Listeners may be plain functions or coroutines. A listener that raises is
# logged and skipped, it never stops delivery to the others.
# =============================================================================

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Union

from hawk_sync.core.account import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountEvent:
    """Fields shared by every event."""
    account_id: str
    email: str
    occurred_at: datetime = field(default_factory=utcnow, kw_only=True)


@dataclass(frozen=True)
class AccountConnected(AccountEvent):
    """Connected, authenticated, initial sync done, now watching."""


@dataclass(frozen=True)
class AccountDisconnected(AccountEvent):
    """The account was disconnected on request."""


@dataclass(frozen=True)
class ConnectionClosed(AccountEvent):
    """The server side closed or dropped a live connection."""


@dataclass(frozen=True)
class ConnectionErrorEvent(AccountEvent):
    """A connection attempt or live connection failed."""
    error: str
    kind: str = "transport"


@dataclass(frozen=True)
class AuthFailed(AccountEvent):
    """Credentials could not be refreshed. The account needs re-authorization."""
    reason: str


@dataclass(frozen=True)
class NewEmails(AccountEvent):
    """New mail arrived while watching."""
    count: int


@dataclass(frozen=True)
class InitialEmailsLoaded(AccountEvent):
    """The initial sync finished."""
    count: int


@dataclass(frozen=True)
class MaxReconnectAttemptsReached(AccountEvent):
    """Automatic reconnection gave up."""
    attempts: int


SyncEvent = Union[
    AccountConnected,
    AccountDisconnected,
    ConnectionClosed,
    ConnectionErrorEvent,
    AuthFailed,
    NewEmails,
    InitialEmailsLoaded,
    MaxReconnectAttemptsReached,
]

EventListener = Callable[[SyncEvent], Union[Awaitable[None], None]]


class EventBus:
    """
    Fan-out of sync events to subscribed listeners.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(print)
        await bus.emit(NewEmails("acct-1", "me@example.com", count=3))
        unsubscribe()
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def emit(self, event: SyncEvent) -> None:
        """Deliver an event to every listener, in subscription order."""
        logger.debug(f"Event: {event}")
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Event listener failed on {type(event).__name__}: {e}",
                    exc_info=True,
                )
