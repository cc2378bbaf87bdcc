# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the Hawk-Sync test suite.
#
# Nothing here touches the network: the IMAP connection, timers, message
# store, classifier, notifiers, registry and token endpoint are all
# in-memory fakes with the same methods as the real thing.
# =============================================================================

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from email.message import EmailMessage
from email.utils import format_datetime

import pytest

from hawk_sync.config import ConnectionConfig, SyncConfig
from hawk_sync.core import (
    Account,
    Category,
    Classification,
    CredentialError,
    DownstreamError,
    MessageFlags,
    MessageSummary,
    NormalizedMessage,
    OAuthCredential,
    Provider,
    RawMessage,
    utcnow,
)
from hawk_sync.imap.sync import SyncScheduler
from hawk_sync.processing import MessageProcessor
from hawk_sync.session import AccountSession, ConnectionPhase
from hawk_sync.timers import Timer


# =============================================================================
# Message Builders
# =============================================================================

def make_source(
    uid: int,
    date: datetime,
    subject: str | None = None,
    body: str = "Hello there",
    sender: str = "Alice Example <alice@example.com>",
    html: str | None = None,
) -> bytes:
    """Build an RFC 5322 message source."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "user@gmail.com"
    msg["Subject"] = subject if subject is not None else f"Message {uid}"
    msg["Date"] = format_datetime(date)
    msg["Message-ID"] = f"<msg-{uid}@example.com>"
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    return msg.as_bytes()


def make_mailbox(
    uids,
    now: datetime | None = None,
    age=lambda uid: timedelta(hours=1),
    **kwargs,
) -> dict[int, tuple[datetime, bytes]]:
    """UID -> (date, source). `age(uid)` sets how old each message is."""
    now = now or utcnow()
    mailbox = {}
    for uid in uids:
        date = now - age(uid)
        mailbox[uid] = (date, make_source(uid, date, **kwargs))
    return mailbox


# =============================================================================
# Fake IMAP Connection
# =============================================================================

class FakeIMAPClient:
    """
    In-memory stand-in for IMAPClient.

    `fail_on` maps a method name to the exception it should raise. Pushes for
    the IDLE path are queued with `push()`.
    """

    def __init__(
        self,
        account: Account,
        mailbox: dict[int, tuple[datetime, bytes]] | None = None,
        *,
        idle: bool = False,
    ) -> None:
        self.account = account
        self.mailbox = mailbox if mailbox is not None else {}
        self.idle = idle
        self.connected = False
        self.connect_error: Exception | None = None
        self.fail_on: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.tokens: list[str] = []
        self.fetched: list[int] = []
        self.flags_added: list[tuple[list[int], list[str]]] = []
        self.pushes: asyncio.Queue = asyncio.Queue()
        self.idling = False
        self._idle_ended = asyncio.Event()
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def is_idling(self) -> bool:
        return self.idling

    def _call(self, name: str) -> None:
        self.calls.append(name)
        error = self.fail_on.get(name)
        if error is not None:
            self.connected = False
            raise error

    async def connect(self, access_token: str) -> None:
        self.tokens.append(access_token)
        self._call("connect")
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def logout(self) -> None:
        self.calls.append("logout")
        self.connected = False

    @asynccontextmanager
    async def exclusive(self):
        async with self._lock:
            if self.idling:
                await self.idle_done()
            yield self

    async def select_inbox(self) -> dict:
        self._call("select_inbox")
        return {"EXISTS": len(self.mailbox)}

    async def noop(self) -> None:
        self._call("noop")

    async def probe(self) -> bool:
        self.calls.append("probe")
        return self.connected and "noop" not in self.fail_on

    async def fetch_recent(self, limit: int) -> list[MessageSummary]:
        self._call("fetch_recent")
        uids = sorted(self.mailbox)[-limit:]
        return [MessageSummary(uid=uid, date=self.mailbox[uid][0]) for uid in uids]

    async def fetch_messages(self, uids: list[int]) -> list[RawMessage]:
        self._call("fetch_messages")
        self.fetched.extend(uids)
        return [
            RawMessage(uid=uid, source=self.mailbox[uid][1])
            for uid in uids
            if uid in self.mailbox
        ]

    async def search_since(self, since: datetime) -> list[int]:
        self._call("search_since")
        return sorted(uid for uid, (date, _) in self.mailbox.items() if date >= since)

    async def search_uids_above(self, uid: int) -> list[int]:
        self._call("search_uids_above")
        return sorted(u for u in self.mailbox if u > uid)

    async def add_flags(self, uids: list[int], flags: list[str]) -> None:
        self._call("add_flags")
        self.flags_added.append((uids, flags))

    def supports_idle(self) -> bool:
        return self.idle

    async def idle_start(self) -> None:
        self._call("idle_start")
        self.idling = True
        self._idle_ended = asyncio.Event()

    async def idle_wait(self, timeout: float) -> list[str]:
        get = asyncio.ensure_future(self.pushes.get())
        ended = asyncio.ensure_future(self._idle_ended.wait())
        try:
            await asyncio.wait({get, ended}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (get, ended):
                if not task.done():
                    task.cancel()
        if not get.done() or get.cancelled():
            return []
        item = get.result()
        if isinstance(item, Exception):
            self.connected = False
            raise item
        return item

    async def idle_done(self) -> None:
        self.calls.append("idle_done")
        if self.idling:
            self.idling = False
            # Ends a pending idle_wait, like DONE ending the IDLE command
            self._idle_ended.set()

    def push(self, item) -> None:
        """Queue IDLE lines (a list of str) or an exception for idle_wait."""
        self.pushes.put_nowait(item)

    def deliver(self, uid: int, date: datetime | None = None) -> None:
        """New mail arrives on the server."""
        date = date or utcnow()
        self.mailbox[uid] = (date, make_source(uid, date))


# =============================================================================
# Fake Timers
# =============================================================================

class FakeTimer(Timer):
    """A Timer that only fires when the test says so."""

    def __init__(self, delay: float, callback, name: str = "") -> None:
        super().__init__(delay, name)
        self.callback = callback

    async def fire(self) -> None:
        if not self.pending:
            return
        self._fired = True
        await self.callback()


class FakeScheduler:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback, *, name: str = "") -> FakeTimer:
        timer = FakeTimer(delay, callback, name)
        self.timers.append(timer)
        return timer

    def pending(self, prefix: str = "") -> list[FakeTimer]:
        return [t for t in self.timers if t.pending and t.name.startswith(prefix)]

    async def fire_next(self, prefix: str = "") -> FakeTimer:
        """Fire the oldest pending timer whose name starts with `prefix`."""
        pending = self.pending(prefix)
        assert pending, f"no pending timer matching {prefix!r}"
        timer = pending[0]
        await timer.fire()
        return timer


# =============================================================================
# Collaborator Stubs
# =============================================================================

class MemoryStore:
    """MessageStore + WatermarkSource kept in a dict."""

    def __init__(self) -> None:
        self.messages: dict[str, NormalizedMessage] = {}
        self.batches: list[list[NormalizedMessage]] = []
        self.fail_index = False
        self.fail_exists = False

    async def exists(self, message_id: str) -> bool:
        if self.fail_exists:
            raise DownstreamError("index unavailable")
        return message_id in self.messages

    async def index_batch(self, messages) -> None:
        if self.fail_index:
            raise DownstreamError("index unavailable")
        self.batches.append(list(messages))
        for message in messages:
            self.messages[message.id] = message

    async def highest_uid(self, account_id: str) -> int:
        uids = [m.uid for m in self.messages.values() if m.account_id == account_id]
        return max(uids, default=0)


class StubClassifier:
    def __init__(self, category: Category = Category.INTERESTED, confidence: float = 0.8) -> None:
        self.result = Classification(category, confidence, "stub")
        self.seen: list[str] = []
        self.error: Exception | None = None

    async def classify(self, message: NormalizedMessage) -> Classification:
        self.seen.append(message.id)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingNotifier:
    def __init__(self) -> None:
        self.notified: list[str] = []
        self.error: Exception | None = None

    async def notify(self, message: NormalizedMessage) -> None:
        self.notified.append(message.id)
        if self.error is not None:
            raise self.error


class StubRegistry:
    def __init__(self, *accounts: Account) -> None:
        self.accounts = {account.id: account for account in accounts}
        self.saved: list[tuple[str, OAuthCredential]] = []
        self.fail_save = False

    async def get_account(self, account_id: str) -> Account | None:
        return self.accounts.get(account_id)

    async def is_active(self, account_id: str) -> bool:
        account = self.accounts.get(account_id)
        return account is not None and account.active

    async def save_credential(self, account_id: str, credential: OAuthCredential) -> None:
        if self.fail_save:
            raise RuntimeError("keyring locked")
        self.saved.append((account_id, credential))


class StubRefresher:
    """Hands out token-1, token-2, ... valid for `expires_in` seconds."""

    def __init__(self, expires_in: int = 3600) -> None:
        self.expires_in = expires_in
        self.calls = 0
        self.error: Exception | None = None

    async def refresh(self, account: Account) -> OAuthCredential:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if not account.credential.refresh_token:
            raise CredentialError("no refresh token")
        return OAuthCredential(
            access_token=f"token-{self.calls}",
            refresh_token=account.credential.refresh_token,
            expires_at=utcnow() + timedelta(seconds=self.expires_in),
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def account():
    """A Gmail account whose token is good for another hour."""
    return Account(
        id="acct-1",
        email="user@gmail.com",
        provider=Provider.GMAIL,
        credential=OAuthCredential(
            access_token="initial-token",
            refresh_token="refresh-token",
            expires_at=utcnow() + timedelta(hours=1),
        ),
    )


@pytest.fixture
def sync_config():
    return SyncConfig()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def classifier():
    return StubClassifier()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def processor(classifier, notifier):
    return MessageProcessor(classifier=classifier, notifiers=[notifier])


@pytest.fixture
def sync(sync_config, processor, store, fake_scheduler):
    return SyncScheduler(sync_config, processor, store, fake_scheduler)


@pytest.fixture
def registry(account):
    return StubRegistry(account)


@pytest.fixture
def refresher():
    return StubRefresher()


@pytest.fixture
def make_session(account):
    """Build a session already holding a connected fake client."""
    def factory(mailbox=None, **kwargs) -> AccountSession:
        client = FakeIMAPClient(account, mailbox, **kwargs)
        client.connected = True
        return AccountSession(account=account, phase=ConnectionPhase.SYNCING, client=client)
    return factory


@pytest.fixture
def connection_config():
    return ConnectionConfig()


@pytest.fixture
def sample_message(account):
    """A parsed, unclassified message."""
    now = utcnow()
    return NormalizedMessage(
        id=NormalizedMessage.make_id(account.id, 4242),
        account_id=account.id,
        uid=4242,
        message_id="<abc@example.com>",
        subject="Re: Proposal",
        sender="alice@example.com",
        sender_name="Alice Example",
        recipients=("user@gmail.com",),
        date=now - timedelta(minutes=5),
        processed_at=now,
        body_text="Sounds good, tell me more about pricing.",
        body="Sounds good, tell me more about pricing.",
        flags=MessageFlags.NONE,
    )
