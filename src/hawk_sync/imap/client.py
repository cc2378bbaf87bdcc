# =============================================================================
# IMAP Client
# =============================================================================
# Provides an async IMAP client wrapper around aioimaplib.
#
# Key responsibilities:
#   - Connection management (TLS connect, greeting, XOAUTH2, logout)
#   - INBOX selection and status
#   - Searching and fetching by UID (and "most recent N" by sequence number)
#   - IDLE support for push notifications
#
# Design notes:
#   - One IMAPClient owns exactly one server connection.
#   - IMAP is strictly request/response on a connection, so every command
#     runs inside exclusive(). Entering exclusive() while the connection is
#     idling sends DONE first; the watcher re-enters IDLE afterwards.
#   - aioimaplib errors are translated into our own exceptions (bottom of
#     this file), which slot into the engine's error taxonomy.
# =============================================================================

import asyncio
import email.utils
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, AsyncIterator

from aioimaplib import aioimaplib

from hawk_sync.core import (
    AuthenticationError,
    MessageFlags,
    MessageSummary,
    RawMessage,
    SyncError,
    TransportError,
    TransportTimeout,
)

if TYPE_CHECKING:
    from hawk_sync.core import Account

# Set up logging for this module
logger = logging.getLogger(__name__)

INBOX = "INBOX"

# RFC 3501 month names; strftime's %b is locale dependent
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def imap_date(value: datetime) -> str:
    """Format a datetime as an IMAP SEARCH date (e.g. 01-Jan-2025)."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Whether we have an active connection.
        authenticated: Whether XOAUTH2 succeeded.
        selected_folder: Currently selected folder, if any.
        capabilities: Server capabilities (from the greeting).
        uidvalidity: UIDVALIDITY of the selected folder.
        exists: Message count of the selected folder at last SELECT.
        idling: Whether an IDLE command is in progress.
    """
    connected: bool = False
    authenticated: bool = False
    selected_folder: str | None = None
    capabilities: list[str] = field(default_factory=list)
    uidvalidity: int | None = None
    exists: int = 0
    idling: bool = False


class IMAPClient:
    """
    Async IMAP client for one OAuth2 account.

    Usage:
        >>> client = IMAPClient(account)
        >>> await client.connect(account.credential.access_token)
        >>> async with client.exclusive():
        ...     await client.select_inbox()
        ...     uids = await client.search_uids_above(1200)
        >>> await client.logout()

    Attributes:
        account: The account this connection belongs to.
        state: Current connection state.
    """

    # Timeout for individual IMAP commands (seconds)
    TIMEOUT = 30

    # Upper bound aioimaplib enforces on one IDLE command (RFC 2177 suggests 29 min)
    IDLE_MAX = 29 * 60

    def __init__(
        self,
        account: "Account",
        *,
        connection_timeout: float = 60.0,
        greeting_timeout: float = 30.0,
        command_timeout: float = TIMEOUT,
    ) -> None:
        self.account = account
        self.state = ConnectionState()
        self.connection_timeout = connection_timeout
        self.greeting_timeout = greeting_timeout
        self.command_timeout = command_timeout

        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()
        self._idle_task: asyncio.Future | None = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected and authenticated."""
        return self.state.connected and self.state.authenticated and self._client is not None

    @property
    def is_idling(self) -> bool:
        """Whether an IDLE command is still in progress."""
        return self.state.idling

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self, access_token: str) -> None:
        """
        Open the TLS connection, wait for the greeting and authenticate.

        The whole handshake is bounded by connection_timeout; the greeting
        alone by greeting_timeout.

        Raises:
            IMAPTimeoutError: If the server is too slow to answer.
            IMAPConnectionError: If unable to connect to server.
            IMAPAuthenticationError: If XOAUTH2 is rejected.
        """
        server = self.account.server
        logger.info(f"Connecting to {server.host}:{server.port} for {self.account.email}")

        try:
            async with asyncio.timeout(self.connection_timeout):
                if server.ssl:
                    self._client = aioimaplib.IMAP4_SSL(
                        host=server.host,
                        port=server.port,
                        timeout=self.command_timeout,
                    )
                else:
                    self._client = aioimaplib.IMAP4(
                        host=server.host,
                        port=server.port,
                        timeout=self.command_timeout,
                    )

                await asyncio.wait_for(
                    self._client.wait_hello_from_server(),
                    timeout=self.greeting_timeout,
                )
                self.state.connected = True

                # aioimaplib stores capabilities after the greeting
                self.state.capabilities = list(self._client.protocol.capabilities)
                logger.debug(f"Server capabilities: {self.state.capabilities}")

                await self._authenticate(access_token)

        except IMAPError:
            self._abort()
            raise
        except (asyncio.TimeoutError, aioimaplib.CommandTimeout) as e:
            self._abort()
            raise IMAPTimeoutError(
                f"Connection timed out to {server.host}:{server.port}"
            ) from e
        except (OSError, aioimaplib.Abort) as e:
            self._abort()
            raise IMAPConnectionError(
                f"Failed to connect to {server.host}:{server.port}: {e}"
            ) from e

        logger.info(f"Authenticated to {server.host} as {self.account.email}")

    async def _authenticate(self, access_token: str) -> None:
        """
        Authenticate with SASL XOAUTH2.

        Raises:
            IMAPAuthenticationError: If the server rejects the token.
        """
        logger.debug(f"Authenticating as {self.account.email} (XOAUTH2)")

        response = await self._client.xoauth2(self.account.email, access_token)

        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.account.email}: {_lines(response)}"
            )

        self.state.authenticated = True

    async def logout(self) -> None:
        """
        Best-effort LOGOUT. Errors are logged, never raised.
        """
        if self._client is None:
            return
        try:
            if self.state.idling:
                await self.idle_done()
            if self.state.connected:
                logger.debug(f"Sending LOGOUT for {self.account.email}")
                await asyncio.wait_for(self._client.logout(), timeout=5)
        except Exception as e:
            logger.warning(f"Error during logout for {self.account.email}: {e}")
        finally:
            self._abort()

    def _abort(self) -> None:
        """Drop the connection without talking to the server."""
        if self._idle_task is not None and not self._idle_task.done():
            self._idle_task.cancel()
        self._idle_task = None
        if self._client is not None:
            transport = getattr(self._client.protocol, "transport", None)
            if transport is not None:
                transport.close()
        self._client = None
        self.state = ConnectionState()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator["IMAPClient"]:
        """
        Serialize command use of this connection.

        Leaves IDLE first if the connection is idling.
        """
        async with self._lock:
            if self.state.idling:
                await self.idle_done()
            yield self

    async def _command(self, action: str, method: str, *args, **kwargs):
        """Run an aioimaplib command, translating transport failures."""
        if self._client is None:
            raise IMAPConnectionError(f"{action}: not connected")
        try:
            return await getattr(self._client, method)(*args, **kwargs)
        except (asyncio.TimeoutError, aioimaplib.CommandTimeout) as e:
            self.state.connected = False
            raise IMAPTimeoutError(f"{action} timed out for {self.account.email}") from e
        except (OSError, aioimaplib.Abort) as e:
            self.state.connected = False
            raise IMAPConnectionError(f"{action} failed for {self.account.email}: {e}") from e

    # =========================================================================
    # Mailbox Operations
    # =========================================================================

    async def select_inbox(self) -> dict:
        """
        SELECT the INBOX.

        Returns:
            Dictionary with folder status (EXISTS, UIDVALIDITY, UIDNEXT, ...)

        Raises:
            IMAPError: If folder selection fails.
        """
        response = await self._command("SELECT", "select", INBOX)

        if response.result != "OK":
            raise IMAPError(f"Failed to select {INBOX}: {_lines(response)}")

        status = self._parse_select_response(response)

        self.state.selected_folder = INBOX
        self.state.uidvalidity = status.get("UIDVALIDITY")
        self.state.exists = status.get("EXISTS", 0)

        logger.debug(f"Selected {INBOX} for {self.account.email}: {status}")
        return status

    def _parse_select_response(self, response) -> dict:
        """Parse SELECT response into a status dictionary."""
        status = {}

        for line in _lines(response):
            match = re.search(r"(\d+)\s+EXISTS", line, re.IGNORECASE)
            if match:
                status["EXISTS"] = int(match.group(1))

            match = re.search(r"(\d+)\s+RECENT", line, re.IGNORECASE)
            if match:
                status["RECENT"] = int(match.group(1))

            match = re.search(r"UIDVALIDITY\s+(\d+)", line, re.IGNORECASE)
            if match:
                status["UIDVALIDITY"] = int(match.group(1))

            match = re.search(r"UIDNEXT\s+(\d+)", line, re.IGNORECASE)
            if match:
                status["UIDNEXT"] = int(match.group(1))

        return status

    async def noop(self) -> None:
        """
        Send NOOP. Used as a liveness probe.

        Raises:
            IMAPError: If the server does not answer OK.
        """
        response = await self._command("NOOP", "noop")
        if response.result != "OK":
            raise IMAPConnectionError(f"NOOP rejected: {_lines(response)}")

    async def probe(self) -> bool:
        """True if the connection answers a NOOP."""
        if not self.is_connected:
            return False
        try:
            async with self.exclusive():
                await self.noop()
            return True
        except IMAPError as e:
            logger.debug(f"Liveness probe failed for {self.account.email}: {e}")
            return False

    # =========================================================================
    # Search
    # =========================================================================

    async def search_since(self, since: datetime) -> list[int]:
        """UIDs of messages with an internal date on or after `since`."""
        return await self._uid_search(f"SINCE {imap_date(since)}")

    async def search_uids_above(self, uid: int) -> list[int]:
        """
        UIDs strictly greater than `uid`.

        "UID n:*" always matches the highest UID in the mailbox, even when
        it is below n, so the result is filtered.
        """
        uids = await self._uid_search(f"UID {uid + 1}:*")
        return [u for u in uids if u > uid]

    async def _uid_search(self, criteria: str) -> list[int]:
        response = await self._command(
            "UID SEARCH", "uid_search", criteria, charset=None
        )
        if response.result != "OK":
            raise IMAPError(f"UID SEARCH {criteria} failed: {_lines(response)}")
        return self._parse_search_response(response)

    def _parse_search_response(self, response) -> list[int]:
        """Collect UIDs from the untagged SEARCH line(s)."""
        uids: set[int] = set()
        for line in _lines(response):
            tokens = line.lstrip("* ").split()
            if tokens and tokens[0].upper() == "SEARCH":
                tokens = tokens[1:]
            if tokens and all(t.isdigit() for t in tokens):
                uids.update(int(t) for t in tokens)
        return sorted(uids)

    # =========================================================================
    # Fetch
    # =========================================================================

    async def fetch_recent(self, limit: int) -> list[MessageSummary]:
        """
        UID, FLAGS and envelope date of the `limit` most recent messages.

        UIDs can be sparse (deleted messages leave gaps), so "most recent N"
        uses sequence numbers against the EXISTS count of the last SELECT.
        """
        total = self.state.exists
        if total == 0 or limit <= 0:
            return []

        start = max(1, total - limit + 1)
        logger.debug(f"Fetching envelopes {start}:{total} for {self.account.email}")

        response = await self._command(
            "FETCH", "fetch", f"{start}:{total}", "(UID FLAGS ENVELOPE)"
        )
        if response.result != "OK":
            raise IMAPError(f"FETCH {start}:{total} failed: {_lines(response)}")

        summaries = []
        for group in self._group_fetch_response(response):
            data = self._parse_fetch_line(group.text)
            if data is None:
                continue
            summaries.append(MessageSummary(
                uid=data["uid"],
                date=data.get("date"),
                flags=data.get("flags", MessageFlags.NONE),
            ))
        return summaries

    async def fetch_messages(self, uids: list[int]) -> list[RawMessage]:
        """
        Fetch the full source of the given UIDs (without setting \\Seen).

        Messages deleted since they were searched are simply missing from
        the result.
        """
        if not uids:
            return []

        uid_set = ",".join(str(u) for u in uids)
        response = await self._command(
            "UID FETCH", "uid", "FETCH", uid_set, "(UID FLAGS BODY.PEEK[])"
        )
        if response.result != "OK":
            raise IMAPError(f"UID FETCH {uid_set} failed: {_lines(response)}")

        messages = []
        for group in self._group_fetch_response(response):
            data = self._parse_fetch_line(group.text)
            if data is None or group.body is None:
                continue
            messages.append(RawMessage(
                uid=data["uid"],
                source=group.body,
                flags=data.get("flags", MessageFlags.NONE),
                size=len(group.body),
            ))

        logger.debug(f"Fetched {len(messages)}/{len(uids)} messages for {self.account.email}")
        return messages

    def _group_fetch_response(self, response) -> list["_FetchGroup"]:
        """
        Group FETCH response items by message.

        aioimaplib returns text lines and literals as separate items. A line
        ending in {N} announces that the next item is a literal. The BODY[]
        literal is the message source; any other literal (e.g. a subject in
        the envelope) is inlined as a quoted string.
        """
        groups: list[_FetchGroup] = []
        current: _FetchGroup | None = None
        literal_is_body = False
        expect_literal = False

        for item in response.lines:
            if expect_literal:
                expect_literal = False
                data = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode()
                if current is None:
                    continue
                if literal_is_body:
                    current.body = data
                else:
                    text = data.decode("utf-8", errors="replace")
                    quoted = '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
                    current.text = re.sub(r"\{\d+\}\s*$", lambda _: quoted, current.text)
                continue

            line = _decode(item).strip()
            if not line:
                continue

            if re.match(r"^\*?\s*\d+\s+FETCH\s*\(", line, re.IGNORECASE):
                current = _FetchGroup(text=line)
                groups.append(current)
            elif current is not None:
                current.text += " " + line
            else:
                continue

            literal = re.search(r"(BODY\[\])?\s*\{(\d+)\}$", line, re.IGNORECASE)
            if literal:
                expect_literal = True
                literal_is_body = literal.group(1) is not None

        return groups

    def _parse_fetch_line(self, line: str) -> dict | None:
        """Extract UID, FLAGS and the envelope date from one FETCH item."""
        uid_match = re.search(r"UID\s+(\d+)", line, re.IGNORECASE)
        if not uid_match:
            return None

        data: dict = {"uid": int(uid_match.group(1))}

        flags_match = re.search(r"FLAGS\s*\(([^)]*)\)", line, re.IGNORECASE)
        if flags_match:
            data["flags"] = MessageFlags.from_imap(flags_match.group(1).split())

        # ENVELOPE starts with the Date header as a quoted string (or NIL)
        date_match = re.search(r'ENVELOPE\s*\(\s*"((?:[^"\\]|\\.)*)"', line, re.IGNORECASE)
        if date_match:
            data["date"] = _parse_date(date_match.group(1))

        return data

    # =========================================================================
    # Flags
    # =========================================================================

    async def add_flags(self, uids: list[int], flags: list[str]) -> None:
        """
        Add flags to messages (e.g., ["\\Seen"]).

        Raises:
            IMAPError: If the STORE is rejected.
        """
        uid_set = ",".join(str(u) for u in uids)
        command = f"+FLAGS ({' '.join(flags)})"

        logger.debug(f"Setting flags on {uid_set}: {command}")
        response = await self._command(
            "UID STORE", "uid", "STORE", uid_set, command
        )

        if response.result != "OK":
            raise IMAPError(f"Failed to set flags: {_lines(response)}")

    # =========================================================================
    # IDLE Support
    # =========================================================================

    def supports_idle(self) -> bool:
        """Check if server supports IDLE command."""
        if not self._client:
            return False
        return self._client.has_capability("IDLE")

    async def idle_start(self) -> None:
        """
        Enter IDLE on the selected folder.

        Call from inside exclusive(); use idle_wait() afterwards outside it so
        other commands can interrupt the IDLE.
        """
        if self.state.selected_folder is None:
            await self.select_inbox()

        logger.debug(f"Entering IDLE for {self.account.email}")
        self._idle_task = await self._command(
            "IDLE", "idle_start", timeout=self.IDLE_MAX
        )
        self.state.idling = True

    async def idle_wait(self, timeout: float) -> list[str]:
        """
        Wait for IDLE notifications from server.

        Returns when the server pushes something, when the IDLE ends (another
        task sent DONE), or after `timeout` seconds.

        Returns:
            Notification lines from server, or an empty list.

        Raises:
            IMAPConnectionError: If the IDLE command failed underneath us.
        """
        idle_task = self._idle_task
        if self._client is None or idle_task is None:
            return []

        push = asyncio.ensure_future(self._client.wait_server_push())
        try:
            done, _ = await asyncio.wait(
                {push, idle_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not push.done():
                push.cancel()

        if push in done and not push.cancelled() and push.exception() is None:
            lines = push.result()
            if isinstance(lines, (bytes, bytearray, str)):
                lines = [lines]
            notifications = [_decode(line) for line in lines]
            logger.debug(f"IDLE notifications for {self.account.email}: {notifications}")
            return notifications

        if idle_task in done and not idle_task.cancelled():
            error = idle_task.exception()
            if error is not None:
                self.state.idling = False
                self.state.connected = False
                if isinstance(error, (asyncio.TimeoutError, aioimaplib.CommandTimeout)):
                    raise IMAPTimeoutError(f"IDLE timed out for {self.account.email}") from error
                raise IMAPConnectionError(
                    f"IDLE failed for {self.account.email}: {error}"
                ) from error

        return []

    async def idle_done(self) -> None:
        """
        Exit IDLE mode and wait for the server to finish the command.
        """
        idle_task, self._idle_task = self._idle_task, None
        self.state.idling = False
        if self._client is None or idle_task is None:
            return
        if idle_task.done():
            return

        self._client.idle_done()
        try:
            await asyncio.wait_for(idle_task, timeout=self.command_timeout)
        except (asyncio.TimeoutError, aioimaplib.CommandTimeout) as e:
            self.state.connected = False
            raise IMAPTimeoutError(f"DONE not acknowledged for {self.account.email}") from e
        except (OSError, aioimaplib.Abort) as e:
            self.state.connected = False
            raise IMAPConnectionError(f"IDLE ended badly for {self.account.email}: {e}") from e


@dataclass
class _FetchGroup:
    """Text and optional BODY[] literal for one message in a FETCH response."""
    text: str
    body: bytes | None = None


def _decode(item) -> str:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item).decode("utf-8", errors="replace")
    return str(item)


def _lines(response) -> list[str]:
    return [_decode(line) for line in response.lines]


def _parse_date(value: str) -> datetime | None:
    """Parse an RFC 5322 date into an aware UTC datetime."""
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(SyncError):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError, TransportError):
    """Raised when the connection fails or drops."""
    pass


class IMAPTimeoutError(IMAPConnectionError, TransportTimeout):
    """Raised when the server doesn't answer in time."""
    pass


class IMAPAuthenticationError(IMAPError, AuthenticationError):
    """Raised when IMAP authentication fails."""
    pass
