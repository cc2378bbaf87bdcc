# =============================================================================
# Message Parser
# =============================================================================
# Turns a fetched RFC 5322 source into a NormalizedMessage.
#
# Emails are complex beasts. A single email can contain multiple "parts"
# (MIME multipart) with different content types. We keep:
#   - the first text/plain part as body_text
#   - the first text/html part as body_html
#   - metadata (never content) for every attachment or inline part
#
# Missing pieces get defaults rather than errors: no Subject becomes
# "(No Subject)", no Date becomes the processing time, no Message-ID gets a
# synthetic one. Only a source we can't read at all raises ParseError.
# =============================================================================

import email
import email.utils
import logging
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage

from hawk_sync.core import (
    AttachmentInfo,
    NormalizedMessage,
    ParseError,
    RawMessage,
    utcnow,
)

logger = logging.getLogger(__name__)

NO_SUBJECT = "(No Subject)"
NO_CONTENT = "No content available"


def parse_message(
    account_id: str,
    raw: RawMessage,
    now: datetime | None = None,
) -> NormalizedMessage:
    """
    Parse a raw message.

    Args:
        account_id: Owning account (part of the stable message id).
        raw: Fetched UID, flags and source.
        now: Processing time (defaults to the current UTC time).

    Returns:
        The parsed message, unclassified.

    Raises:
        ParseError: If the source is empty or the MIME structure is unreadable.
    """
    if not raw.source or not raw.source.strip():
        raise ParseError(f"Empty source for {account_id} UID {raw.uid}")

    now = now or utcnow()

    try:
        msg = email.message_from_bytes(raw.source, policy=policy.default)

        senders = _addresses(msg, "From")
        sender_name, sender = senders[0] if senders else ("", "")

        body_text, body_html, attachments = _parse_body(msg)

        message_id = str(msg.get("Message-ID", "") or "").strip()
        if not message_id:
            message_id = f"{account_id}-{raw.uid}-{int(now.timestamp() * 1000)}"

        return NormalizedMessage(
            id=NormalizedMessage.make_id(account_id, raw.uid),
            account_id=account_id,
            uid=raw.uid,
            message_id=message_id,
            subject=str(msg.get("Subject", "") or "").strip() or NO_SUBJECT,
            sender=sender,
            sender_name=sender_name,
            recipients=tuple(addr for _, addr in _addresses(msg, "To")),
            cc=tuple(addr for _, addr in _addresses(msg, "Cc")),
            bcc=tuple(addr for _, addr in _addresses(msg, "Bcc")),
            date=_parse_date(msg) or now,
            body_text=body_text,
            body_html=body_html,
            body=body_text.strip() or body_html.strip() or NO_CONTENT,
            flags=raw.flags,
            size=raw.size or len(raw.source),
            attachments=tuple(attachments),
            processed_at=now,
        )
    except ParseError:
        raise
    except Exception as e:
        raise ParseError(f"Unparseable message {account_id} UID {raw.uid}: {e}") from e


def _addresses(msg: EmailMessage, name: str) -> list[tuple[str, str]]:
    """(display name, address) pairs from an address header."""
    header = msg.get(name)
    if header is None:
        return []

    addresses = getattr(header, "addresses", None)
    if addresses is not None:
        return [(a.display_name, a.addr_spec) for a in addresses if a.addr_spec]

    return [(n, a) for n, a in email.utils.getaddresses([str(header)]) if a]


def _parse_date(msg: EmailMessage) -> datetime | None:
    """The Date header as an aware UTC datetime, if it parses."""
    value = msg.get("Date")
    if value is None:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(str(value))
    except (TypeError, ValueError, IndexError):
        logger.debug(f"Unparseable Date header: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_body(msg: EmailMessage) -> tuple[str, str, list[AttachmentInfo]]:
    """
    Split a message into text, HTML, and attachment metadata.

    Returns:
        Tuple of (body_text, body_html, attachments).
    """
    body_text = ""
    body_html = ""
    attachments: list[AttachmentInfo] = []

    for part in msg.walk():
        # Skip multipart containers
        if part.is_multipart():
            continue

        content_type = part.get_content_type()
        disposition = part.get_content_disposition()

        if disposition == "attachment":
            attachments.append(_attachment_info(part))
        elif content_type == "text/plain" and not body_text:
            body_text = _decode_part(part)
        elif content_type == "text/html" and not body_html:
            body_html = _decode_part(part)
        elif not content_type.startswith("text/"):
            # Inline image or other embedded part
            attachments.append(_attachment_info(part, inline=True))

    return body_text, body_html, attachments


def _decode_part(part: EmailMessage) -> str:
    """Decode a message part to string."""
    payload = part.get_payload(decode=True)
    if isinstance(payload, bytes):
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")
    return str(payload) if payload else ""


def _attachment_info(part: EmailMessage, inline: bool = False) -> AttachmentInfo:
    """Metadata for one attachment. The payload is measured, then dropped."""
    content_type = part.get_content_type()

    filename = part.get_filename()
    if not filename:
        ext = content_type.split("/")[-1] if "/" in content_type else "bin"
        filename = f"attachment.{ext}"

    payload = part.get_payload(decode=True)
    content_id = part.get("Content-ID")

    return AttachmentInfo(
        filename=filename,
        content_type=content_type,
        size=len(payload) if isinstance(payload, bytes) else 0,
        content_id=str(content_id).strip("<> ") if content_id else None,
        is_inline=inline or part.get_content_disposition() == "inline",
    )
