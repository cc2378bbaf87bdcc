# =============================================================================
# Change Watcher
# =============================================================================
# Watches an account's INBOX for new mail once the initial sync is done.
#
# Key responsibilities:
#   - Keep the connection in IDLE and refresh it periodically
#   - Turn server pushes into IdleNotices
#   - On EXISTS, hand over to the sync scheduler (via on_new_mail)
#   - Report any protocol failure to the connection manager (via on_failure)
#
# Design notes:
#   - The watcher shares the account's single connection with background
#     batches. IDLE is entered under IMAPClient.exclusive() and waited on
#     outside it, so a batch can interrupt the IDLE, run its commands and
#     let the watcher re-enter IDLE afterwards.
#   - After a quiet refresh interval we send NOOP. A dead connection shows
#     up there rather than as an IDLE that silently never returns.
#   - Pushes that arrive while another command holds the connection are
#     not replayed, so an interrupted IDLE ends with a catch-up check (but
#     no NOOP; the connection was just used).
#   - Servers without IDLE are polled with NOOP + a UID search instead.
#   - The watcher never reconnects by itself; that's the manager's job.
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from hawk_sync.imap.client import IMAPClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdleNotice:
    """One parsed IDLE push."""
    kind: str                   # "exists", "expunge", "flags"
    count: int | None = None    # Message count (EXISTS) or sequence number (EXPUNGE)


def parse_notification(notification: str) -> IdleNotice | None:
    """
    Parse an IMAP IDLE notification.

    Common notifications (aioimaplib may strip the leading *):
        - "N EXISTS" - N messages now exist (new mail if N increased)
        - "N EXPUNGE" - Message N was deleted
        - "N FETCH (FLAGS ...)" - Flags changed on message N
    """
    notification = notification.strip()

    if notification.startswith("*"):
        notification = notification[1:].strip()

    match = re.match(r"(\d+)\s+EXISTS", notification, re.IGNORECASE)
    if match:
        return IdleNotice("exists", int(match.group(1)))

    match = re.match(r"(\d+)\s+EXPUNGE", notification, re.IGNORECASE)
    if match:
        return IdleNotice("expunge", int(match.group(1)))

    if re.match(r"\d+\s+FETCH", notification, re.IGNORECASE):
        return IdleNotice("flags")

    return None


NewMailCallback = Callable[[], Awaitable[None]]
FailureCallback = Callable[[Exception], Awaitable[None]]


class ChangeWatcher:
    """
    Per-connection IDLE loop.

    Usage:
        >>> watcher = ChangeWatcher(client, on_new_mail=sync, on_failure=recover)
        >>> watcher.start()
        >>> # ... later ...
        >>> await watcher.stop()
    """

    def __init__(
        self,
        client: "IMAPClient",
        *,
        on_new_mail: NewMailCallback,
        on_failure: FailureCallback,
        idle_refresh: float = 600.0,
        poll_interval: float = 300.0,
    ) -> None:
        self.client = client
        self.on_new_mail = on_new_mail
        self.on_failure = on_failure
        self.idle_refresh = idle_refresh
        self.poll_interval = poll_interval
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def email(self) -> str:
        return self.client.account.email

    def start(self) -> None:
        """Start watching in a background task."""
        if self.is_running:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"watch-{self.client.account.id}"
        )

    async def stop(self) -> None:
        """
        Stop watching.

        Safe to call from inside the watcher's own failure callback; in that
        case the task is simply left to finish.
        """
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        mode = "IDLE" if self.client.supports_idle() else f"polling every {self.poll_interval:.0f}s"
        logger.info(f"Watching INBOX for {self.email} ({mode})")

        try:
            while True:
                notices = await self.wait_for_changes()
                if any(notice.kind == "exists" for notice in notices):
                    await self.on_new_mail()
        except asyncio.CancelledError:
            logger.debug(f"Watcher cancelled for {self.email}")
            raise
        except Exception as e:
            logger.warning(f"Watcher for {self.email} stopped: {e}")
            await self.on_failure(e)

    async def wait_for_changes(self) -> list[IdleNotice]:
        """
        Block until the server reports something (or a refresh interval passes).

        Returns:
            Parsed notices. Anything but a real push reports "exists" so the
            caller checks for mail above the watermark.
        """
        if not self.client.supports_idle():
            await asyncio.sleep(self.poll_interval)
            async with self.client.exclusive():
                await self.client.noop()
            return [IdleNotice("exists")]

        async with self.client.exclusive():
            await self.client.idle_start()

        lines = await self.client.idle_wait(timeout=self.idle_refresh)
        interrupted = not lines and not self.client.is_idling

        # Leave IDLE (no-op if someone else already did)
        async with self.client.exclusive():
            if not lines and not interrupted:
                logger.debug(f"IDLE refresh for {self.email}")
                await self.client.noop()

        if not lines:
            if interrupted:
                logger.debug(f"IDLE for {self.email} interrupted by another command")
            return [IdleNotice("exists")]

        notices = [n for n in (parse_notification(line) for line in lines) if n is not None]
        for notice in notices:
            logger.debug(f"IDLE: {self.email} {notice.kind} {notice.count}")
        return notices
