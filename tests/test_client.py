# =============================================================================
# Tests for the IMAP Client
# =============================================================================
# The aioimaplib connection is replaced by a stand-in that answers each
# command with a canned Response, so these tests cover our command
# construction, response parsing and error translation.
# =============================================================================

import asyncio
from collections import namedtuple
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from conftest import make_source
from hawk_sync.core import MessageFlags, TransportTimeout
from hawk_sync.imap.client import (
    IMAPClient,
    IMAPConnectionError,
    IMAPError,
    IMAPTimeoutError,
    imap_date,
)

# Same shape as aioimaplib's Response
Response = namedtuple("Response", "result lines")


class FakeConnection:
    """Answers every aioimaplib command from a method -> response map."""

    def __init__(self, **responses) -> None:
        self.responses = responses
        self.calls: list[tuple] = []
        self.protocol = SimpleNamespace(transport=None)

    def __getattr__(self, method):
        async def command(*args, **kwargs):
            self.calls.append((method, args, kwargs))
            result = self.responses[method]
            if isinstance(result, BaseException):
                raise result
            return result
        return command


def connected_client(account, **responses) -> tuple[IMAPClient, FakeConnection]:
    client = IMAPClient(account)
    connection = FakeConnection(**responses)
    client._client = connection
    client.state.connected = True
    client.state.authenticated = True
    return client, connection


def test_imap_date():
    assert imap_date(datetime(2025, 3, 4, 23, 59, tzinfo=timezone.utc)) == "04-Mar-2025"


class TestSelect:
    """Tests for INBOX selection."""

    @pytest.mark.asyncio
    async def test_status(self, account):
        client, connection = connected_client(account, select=Response("OK", [
            b"3 EXISTS",
            b"0 RECENT",
            b"OK [UIDVALIDITY 14] UIDs valid",
            b"OK [UIDNEXT 205] Predicted next UID",
            b"[READ-WRITE] Select completed",
        ]))

        status = await client.select_inbox()

        assert status == {"EXISTS": 3, "RECENT": 0, "UIDVALIDITY": 14, "UIDNEXT": 205}
        assert client.state.selected_folder == "INBOX"
        assert client.state.exists == 3
        assert connection.calls[0][1] == ("INBOX",)

    @pytest.mark.asyncio
    async def test_rejected(self, account):
        client, _ = connected_client(account, select=Response("NO", [b"Mailbox unavailable"]))
        with pytest.raises(IMAPError):
            await client.select_inbox()


class TestSearch:
    """Tests for UID SEARCH."""

    @pytest.mark.asyncio
    async def test_parse_and_sort(self, account):
        client, _ = connected_client(account, uid_search=Response("OK", [
            b"SEARCH 5 3 9",
            b"Search completed (0.001 + 0.000 secs).",
        ]))

        assert await client.search_since(datetime(2025, 1, 1)) == [3, 5, 9]

    @pytest.mark.asyncio
    async def test_uids_above_filters_star_match(self, account):
        client, connection = connected_client(
            account, uid_search=Response("OK", [b"SEARCH 200", b"Search completed"])
        )

        assert await client.search_uids_above(200) == []
        assert connection.calls[0][1] == ("UID 201:*",)

    @pytest.mark.asyncio
    async def test_empty_result(self, account):
        client, _ = connected_client(
            account, uid_search=Response("OK", [b"SEARCH", b"Search completed"])
        )
        assert await client.search_uids_above(10) == []

    @pytest.mark.asyncio
    async def test_rejected(self, account):
        client, _ = connected_client(account, uid_search=Response("BAD", [b"Parse error"]))
        with pytest.raises(IMAPError):
            await client.search_uids_above(1)


class TestFetch:
    """Tests for FETCH response grouping."""

    @pytest.mark.asyncio
    async def test_fetch_messages(self, account):
        date = datetime(2025, 3, 4, 10, tzinfo=timezone.utc)
        first, second = make_source(201, date), make_source(202, date)
        client, connection = connected_client(account, uid=Response("OK", [
            f"1 FETCH (UID 201 FLAGS (\\Seen) BODY[] {{{len(first)}}}".encode(),
            bytearray(first),
            b")",
            f"2 FETCH (UID 202 FLAGS () BODY[] {{{len(second)}}}".encode(),
            bytearray(second),
            b")",
            b"Fetch completed",
        ]))

        messages = await client.fetch_messages([201, 202])

        assert [m.uid for m in messages] == [201, 202]
        assert messages[0].source == first
        assert messages[0].flags == MessageFlags.SEEN
        assert messages[0].size == len(first)
        assert messages[1].flags == MessageFlags.NONE
        assert connection.calls[0][1] == ("FETCH", "201,202", "(UID FLAGS BODY.PEEK[])")

    @pytest.mark.asyncio
    async def test_fetch_nothing(self, account):
        client, connection = connected_client(account)
        assert await client.fetch_messages([]) == []
        assert connection.calls == []

    @pytest.mark.asyncio
    async def test_fetch_recent_uses_sequence_numbers(self, account):
        client, connection = connected_client(account, fetch=Response("OK", [
            b'2 FETCH (UID 11 FLAGS () ENVELOPE ("Tue, 04 Mar 2025 10:00:00 +0000" "Hi" NIL))',
            b'3 FETCH (UID 12 FLAGS (\\Flagged) ENVELOPE ("Wed, 05 Mar 2025 10:00:00 +0000" {5}',
            b"Hello",
            b" NIL NIL))",
            b"Fetch completed",
        ]))
        client.state.exists = 3

        summaries = await client.fetch_recent(2)

        assert connection.calls[0][1] == ("2:3", "(UID FLAGS ENVELOPE)")
        assert [s.uid for s in summaries] == [11, 12]
        assert summaries[0].date == datetime(2025, 3, 4, 10, tzinfo=timezone.utc)
        assert summaries[1].date == datetime(2025, 3, 5, 10, tzinfo=timezone.utc)
        assert summaries[1].flags == MessageFlags.FLAGGED

    @pytest.mark.asyncio
    async def test_fetch_recent_empty_mailbox(self, account):
        client, connection = connected_client(account)
        client.state.exists = 0

        assert await client.fetch_recent(50) == []
        assert connection.calls == []

    def test_fetch_line_without_uid(self, account):
        client = IMAPClient(account)
        assert client._parse_fetch_line("1 FETCH (FLAGS (\\Seen))") is None


class TestFlags:
    """Tests for UID STORE."""

    @pytest.mark.asyncio
    async def test_add_flags(self, account):
        client, connection = connected_client(account, uid=Response("OK", [b"Store completed"]))

        await client.add_flags([4, 5], ["\\Seen"])

        assert connection.calls[0][1] == ("STORE", "4,5", "+FLAGS (\\Seen)")


class TestErrorTranslation:
    """Tests for mapping aioimaplib failures onto our exceptions."""

    @pytest.mark.asyncio
    async def test_os_error(self, account):
        client, _ = connected_client(account, noop=ConnectionResetError("reset by peer"))

        with pytest.raises(IMAPConnectionError):
            await client.noop()
        assert client.state.connected is False

    @pytest.mark.asyncio
    async def test_timeout(self, account):
        client, _ = connected_client(account, noop=asyncio.TimeoutError())

        with pytest.raises(IMAPTimeoutError) as excinfo:
            await client.noop()
        assert isinstance(excinfo.value, TransportTimeout)

    @pytest.mark.asyncio
    async def test_not_connected(self, account):
        with pytest.raises(IMAPConnectionError):
            await IMAPClient(account).noop()

    @pytest.mark.asyncio
    async def test_probe(self, account):
        client, _ = connected_client(account, noop=Response("OK", [b"NOOP completed"]))
        assert await client.probe() is True

        client.state.connected = False
        assert await client.probe() is False

    @pytest.mark.asyncio
    async def test_logout_never_raises(self, account):
        client, _ = connected_client(account, logout=OSError("broken pipe"))

        await client.logout()

        assert client.is_connected is False
        assert client._client is None
