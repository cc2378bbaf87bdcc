# =============================================================================
# SQLite Message Store
# =============================================================================
# The default MessageStore: processed messages go into the local SQLite
# database, where the duplicate check and the startup watermark come from.
#
# Writes are upserts keyed by the stable message id, so re-delivering a
# message (at-least-once) overwrites rather than duplicates.
# =============================================================================

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Sequence

from hawk_sync.core import (
    Category,
    Classification,
    DownstreamError,
    MessageFlags,
    NormalizedMessage,
)

if TYPE_CHECKING:
    from hawk_sync.storage.database import Database

logger = logging.getLogger(__name__)

_UPSERT_MESSAGE = """
INSERT INTO messages
    (id, account_id, uid, folder, message_id, subject, sender, sender_name,
     recipients, cc, bcc, date_sent, processed_at, flags, size,
     category, confidence, body_text, body_html, body)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    message_id = excluded.message_id,
    subject = excluded.subject,
    sender = excluded.sender,
    sender_name = excluded.sender_name,
    recipients = excluded.recipients,
    cc = excluded.cc,
    bcc = excluded.bcc,
    date_sent = excluded.date_sent,
    processed_at = excluded.processed_at,
    flags = excluded.flags,
    size = excluded.size,
    category = excluded.category,
    confidence = excluded.confidence,
    body_text = excluded.body_text,
    body_html = excluded.body_html,
    body = excluded.body
"""

_SELECT_MESSAGE = """
SELECT id, account_id, uid, folder, message_id, subject, sender, sender_name,
       recipients, cc, bcc, date_sent, processed_at, flags, size,
       category, confidence, body_text, body_html, body
FROM messages
"""


class SqliteMessageStore:
    """
    Message store on top of the local database.

    Usage:
        >>> store = SqliteMessageStore(database)
        >>> await store.index_batch(messages)
        >>> await store.exists("acct-1-4242")
        True
    """

    def __init__(self, db: "Database") -> None:
        self.db = db

    async def exists(self, message_id: str) -> bool:
        async with self.db.conn.execute(
            "SELECT 1 FROM messages WHERE id = ?", (message_id,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def highest_uid(self, account_id: str) -> int:
        """Highest UID stored for an account (0 if none)."""
        async with self.db.conn.execute(
            "SELECT MAX(uid) FROM messages WHERE account_id = ?", (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row and row[0] is not None else 0

    async def index_batch(self, messages: Sequence[NormalizedMessage]) -> None:
        """
        Upsert a batch of messages in one transaction.

        Raises:
            DownstreamError: If the write failed (the batch is rolled back).
        """
        if not messages:
            return

        try:
            await self.db.conn.executemany(
                _UPSERT_MESSAGE, [self._message_to_row(m) for m in messages]
            )
            ids = [(m.id,) for m in messages]
            await self.db.conn.executemany(
                "DELETE FROM attachments WHERE message_id = ?", ids
            )
            await self.db.conn.executemany(
                """INSERT INTO attachments
                   (message_id, filename, content_type, size, content_id, is_inline)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (m.id, a.filename, a.content_type, a.size, a.content_id, a.is_inline)
                    for m in messages
                    for a in m.attachments
                ],
            )
            await self.db.conn.commit()
        except Exception as e:
            await self.db.conn.rollback()
            raise DownstreamError(f"Failed to index {len(messages)} messages: {e}") from e

        logger.debug(f"Indexed {len(messages)} messages")

    async def get_message(self, message_id: str) -> NormalizedMessage | None:
        async with self.db.conn.execute(
            _SELECT_MESSAGE + " WHERE id = ?", (message_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_message(row) if row else None

    async def get_messages(
        self,
        account_id: str,
        limit: int = 50,
        category: Category | None = None,
    ) -> list[NormalizedMessage]:
        """Most recent messages of an account, optionally by category."""
        query = _SELECT_MESSAGE + " WHERE account_id = ?"
        params: list = [account_id]
        if category is not None:
            query += " AND category = ?"
            params.append(category.value)
        query += " ORDER BY uid DESC LIMIT ?"
        params.append(limit)

        async with self.db.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_message(row) for row in rows]

    async def count(self, account_id: str) -> int:
        async with self.db.conn.execute(
            "SELECT COUNT(*) FROM messages WHERE account_id = ?", (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    def _message_to_row(self, m: NormalizedMessage) -> tuple:
        return (
            m.id, m.account_id, m.uid, m.folder, m.message_id, m.subject,
            m.sender, m.sender_name,
            json.dumps(list(m.recipients)), json.dumps(list(m.cc)),
            json.dumps(list(m.bcc)),
            m.date.isoformat(), m.processed_at.isoformat(),
            int(m.flags), m.size,
            m.category.value, m.confidence,
            m.body_text, m.body_html, m.body,
        )

    def _row_to_message(self, row) -> NormalizedMessage:
        """Convert a database row to a NormalizedMessage (attachments not loaded)."""
        return NormalizedMessage(
            id=row[0],
            account_id=row[1],
            uid=row[2],
            folder=row[3],
            message_id=row[4] or "",
            subject=row[5] or "",
            sender=row[6] or "",
            sender_name=row[7] or "",
            recipients=tuple(json.loads(row[8])) if row[8] else (),
            cc=tuple(json.loads(row[9])) if row[9] else (),
            bcc=tuple(json.loads(row[10])) if row[10] else (),
            date=datetime.fromisoformat(row[11]),
            processed_at=datetime.fromisoformat(row[12]),
            flags=MessageFlags(row[13]),
            size=row[14],
            classification=Classification(Category(row[15]), row[16], "stored"),
            body_text=row[17] or "",
            body_html=row[18] or "",
            body=row[19] or "",
        )
