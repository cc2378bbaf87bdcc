# =============================================================================
# Sync Scheduler
# =============================================================================
# Decides which messages to pull, and when.
#
# Sync strategy:
#   1. Initial sync: the most recent `initial_sync_limit` INBOX messages
#      inside the sync horizon, processed before the account is declared
#      connected.
#   2. Background sync: the rest of the horizon, newest first, in batches
#      of `background_batch_size` separated by a cooldown, until the
#      per-account cap is reached.
#   3. Incremental sync: everything above the UID watermark, triggered by
#      the change watcher (or manual_sync).
#
# Key concepts:
#   - Horizon: now - min(sync_days, 30) days. Nothing older is processed.
#   - Watermark: highest UID handled. Only ever moves up.
#   - Duplicates: a UID handled earlier in this process, or a message id the
#     store already holds, is skipped before it is fetched.
#
# Background batches are Timers owned by the session, so disconnecting the
# account cancels them. A batch that fires anyway (already running when the
# session went away) notices the session is closed and stops.
# =============================================================================

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterator, Sequence

from hawk_sync.config import SyncConfig
from hawk_sync.core import NormalizedMessage, utcnow
from hawk_sync.timers import Scheduler

if TYPE_CHECKING:
    from hawk_sync.ports import MessageStore
    from hawk_sync.processing import MessageProcessor
    from hawk_sync.session import AccountSession


logger = logging.getLogger(__name__)

# Timer key for the pending background batch
BACKGROUND_TIMER = "background"


@dataclass
class BatchResult:
    """
    Outcome of processing a set of UIDs.

    Attributes:
        requested: UIDs handed in.
        processed: Messages parsed, classified and handed to the store.
        duplicates: Skipped because they were already processed or stored.
        too_old: Skipped because they fell outside the sync horizon.
        failed: Fetched but unparseable, or missing from the fetch.
    """
    requested: int = 0
    processed: int = 0
    duplicates: int = 0
    too_old: int = 0
    failed: int = 0

    def __str__(self) -> str:
        return (
            f"{self.processed} processed, {self.duplicates} duplicate, "
            f"{self.too_old} too old, {self.failed} failed"
        )


def _chunks(items: Sequence[int], size: int) -> Iterator[list[int]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class SyncScheduler:
    """
    Initial, background and incremental sync for account sessions.

    Usage:
        >>> sync = SyncScheduler(config.sync, processor, store, AsyncioScheduler())
        >>> result = await sync.initial_sync(session)   # also schedules backfill
        >>> result = await sync.sync_new(session)        # on new mail
    """

    # UIDs per UID FETCH of full message sources
    FETCH_CHUNK = 25

    def __init__(
        self,
        config: SyncConfig,
        processor: "MessageProcessor",
        store: "MessageStore",
        scheduler: Scheduler,
    ) -> None:
        self.config = config
        self.processor = processor
        self.store = store
        self.scheduler = scheduler

    def horizon(self, now: datetime | None = None) -> datetime:
        """Oldest date we sync: now minus the effective sync window."""
        return (now or utcnow()) - timedelta(days=self.config.horizon_days)

    # =========================================================================
    # Initial Sync
    # =========================================================================

    async def initial_sync(self, session: "AccountSession") -> BatchResult:
        """
        Process the most recent messages, then schedule background backfill.

        Transport errors propagate to the caller (the connection manager).
        """
        client = session.client
        account = session.account
        horizon = self.horizon()

        async with client.exclusive():
            status = await client.select_inbox()
            if status.get("EXISTS", 0) == 0:
                logger.info(f"INBOX is empty for {account.email}")
                return BatchResult()
            summaries = await client.fetch_recent(self.config.initial_sync_limit)

        candidates = sorted(
            s.uid for s in summaries if s.date is None or s.date >= horizon
        )
        too_old = len(summaries) - len(candidates)

        logger.info(
            f"Initial sync for {account.email}: {len(candidates)} recent messages "
            f"({too_old} older than {horizon:%Y-%m-%d})"
        )

        result = await self.process_batch(session, candidates, horizon)
        result.too_old += too_old

        # Everything fetch_recent returned was looked at, too-old messages included
        if summaries:
            session.advance_watermark(max(s.uid for s in summaries))

        logger.info(f"Initial sync for {account.email} done: {result}")

        self.schedule_background(session, horizon, {s.uid for s in summaries})
        return result

    # =========================================================================
    # Background Sync
    # =========================================================================

    def schedule_background(
        self,
        session: "AccountSession",
        horizon: datetime,
        already_processed: set[int],
        delay: float | None = None,
    ) -> None:
        """Schedule the next background batch on the session's timers."""
        if delay is None:
            delay = self.config.background_delay_seconds
        client = session.client

        async def run_batch() -> None:
            if session.closed or session.client is not client:
                return
            try:
                await self.background_sync(session, horizon, already_processed)
            except Exception as e:
                # The watcher notices a dead connection on its own
                logger.error(
                    f"Background sync failed for {session.account.email}: {e}",
                    exc_info=True,
                )

        session.timers.replace(
            BACKGROUND_TIMER,
            self.scheduler.call_later(
                delay, run_batch, name=f"background-{session.account_id}"
            ),
        )

    async def background_sync(
        self,
        session: "AccountSession",
        horizon: datetime,
        already_processed: set[int],
    ) -> BatchResult:
        """
        Process one batch of older messages inside the horizon.

        Takes the newest `background_batch_size` UIDs not processed yet (never
        exceeding the per-account cap) and reschedules itself after the
        cooldown while more remain.
        """
        account = session.account
        cap = self.config.max_messages_per_account

        if len(already_processed) >= cap:
            logger.info(f"Background sync for {account.email}: cap of {cap} reached")
            return BatchResult()

        client = session.client
        async with client.exclusive():
            uids = await client.search_since(horizon)

        remaining = sorted(u for u in uids if u not in already_processed)
        if not remaining:
            logger.info(f"Background sync for {account.email}: nothing left")
            return BatchResult()

        budget = min(self.config.background_batch_size, cap - len(already_processed))
        if budget <= 0:
            logger.info(f"Background sync for {account.email}: no batch budget left")
            return BatchResult()
        batch = remaining[-budget:]

        logger.info(
            f"Background sync for {account.email}: {len(batch)} of "
            f"{len(remaining)} remaining messages"
        )
        result = await self.process_batch(session, batch, horizon)

        processed = already_processed | set(batch)
        if session.closed:
            return result
        if len(remaining) > len(batch) and len(processed) < cap:
            self.schedule_background(
                session, horizon, processed,
                delay=self.config.background_cooldown_seconds,
            )
        else:
            logger.info(f"Background sync for {account.email} complete ({len(processed)} total)")
        return result

    # =========================================================================
    # Incremental Sync
    # =========================================================================

    async def sync_new(self, session: "AccountSession") -> BatchResult:
        """Process everything above the watermark."""
        client = session.client
        async with client.exclusive():
            uids = await client.search_uids_above(session.watermark)

        if not uids:
            return BatchResult()

        logger.info(f"{len(uids)} new message(s) for {session.account.email}")
        return await self.process_batch(session, uids, horizon=None)

    # =========================================================================
    # Batch Processing
    # =========================================================================

    async def process_batch(
        self,
        session: "AccountSession",
        uids: Sequence[int],
        horizon: datetime | None,
    ) -> BatchResult:
        """
        Fetch, process and index the given UIDs, oldest first.

        Per-message problems (parse errors, downstream failures) are logged
        and never abort the batch. Transport errors propagate.
        """
        account = session.account
        client = session.client
        result = BatchResult(requested=len(uids))

        pending = []
        for uid in sorted(set(uids)):
            if uid in session.processed_uids:
                result.duplicates += 1
            else:
                pending.append(uid)

        for chunk in _chunks(pending, self.FETCH_CHUNK):
            if session.closed:
                break

            to_fetch = []
            for uid in chunk:
                if await self._already_stored(account.id, uid):
                    logger.debug(f"Skipped duplicate {account.id}-{uid}")
                    result.duplicates += 1
                else:
                    to_fetch.append(uid)

            raws = []
            if to_fetch:
                async with client.exclusive():
                    raws = await client.fetch_messages(to_fetch)
            missing = set(to_fetch) - {raw.uid for raw in raws}
            result.failed += len(missing)

            ready: list[NormalizedMessage] = []
            for raw in sorted(raws, key=lambda r: r.uid):
                message = self.processor.parse(account, raw)
                if message is None:
                    result.failed += 1
                    continue
                if horizon is not None and message.date < horizon:
                    result.too_old += 1
                    continue
                ready.append(await self.processor.enrich(account, message))

            await self._index(account.email, ready)
            result.processed += len(ready)

            # UIDs the server didn't return stay eligible for a later pass
            handled = [uid for uid in chunk if uid not in missing]
            session.processed_uids.update(handled)
            if handled:
                session.advance_watermark(max(handled))

        return result

    async def _already_stored(self, account_id: str, uid: int) -> bool:
        """
        Ask the store whether a message is indexed.

        If the store can't answer, the message counts as new.
        """
        message_id = NormalizedMessage.make_id(account_id, uid)
        try:
            return await self.store.exists(message_id)
        except Exception as e:
            logger.warning(f"Duplicate check failed for {message_id}, processing anyway: {e}")
            return False

    async def _index(self, email: str, messages: list[NormalizedMessage]) -> None:
        if not messages:
            return
        try:
            await self.store.index_batch(messages)
        except Exception as e:
            logger.error(
                f"Failed to index {len(messages)} messages for {email}: {e}",
                exc_info=True,
            )
