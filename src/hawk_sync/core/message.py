# =============================================================================
# Message Model
# =============================================================================
# The shapes a message takes on its way through the sync engine:
#
#   MessageSummary     UID + date + flags, from the cheap envelope fetch
#         |
#   RawMessage         UID + flags + the full RFC 5322 source
#         |
#   NormalizedMessage  parsed headers, text body, attachment metadata and
#                      (eventually) a classification
#
# NormalizedMessage is frozen. Each processing stage returns a new instance
# via dataclasses.replace() instead of mutating the one it was handed, so a
# message that has already been indexed can never change underneath us.
# =============================================================================

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntFlag
from typing import Iterable


class MessageFlags(IntFlag):
    """
    IMAP message flags stored as a bitmask.

    Standard IMAP flags (RFC 3501):
        - SEEN: Message has been read
        - ANSWERED: Message has been replied to
        - FLAGGED: User-flagged as important (usually shown as a star)
        - DELETED: Marked for deletion (will be purged on EXPUNGE)
        - DRAFT: Message is a draft (not yet sent)

    Usage:
        flags = MessageFlags.from_imap(["\\Seen", "\\Flagged"])
        if flags & MessageFlags.SEEN:
            print("Message has been read")
    """
    NONE = 0
    SEEN = 1 << 0       # \Seen
    ANSWERED = 1 << 1   # \Answered
    FLAGGED = 1 << 2    # \Flagged
    DELETED = 1 << 3    # \Deleted
    DRAFT = 1 << 4      # \Draft

    @classmethod
    def from_imap(cls, names: Iterable[str]) -> "MessageFlags":
        """Build a bitmask from IMAP flag names (case-insensitive)."""
        flags = cls.NONE
        for name in names:
            flag = _IMAP_FLAG_NAMES.get(name.lower())
            if flag is not None:
                flags |= flag
        return flags


_IMAP_FLAG_NAMES = {
    "\\seen": MessageFlags.SEEN,
    "\\answered": MessageFlags.ANSWERED,
    "\\flagged": MessageFlags.FLAGGED,
    "\\deleted": MessageFlags.DELETED,
    "\\draft": MessageFlags.DRAFT,
}


class Category(str, Enum):
    """Classification categories a message can land in."""
    INTERESTED = "interested"
    MEETING_BOOKED = "meeting_booked"
    NOT_INTERESTED = "not_interested"
    SPAM = "spam"
    OUT_OF_OFFICE = "out_of_office"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class Classification:
    """
    The outcome of classifying a message.

    Attributes:
        category: Which bucket the message belongs in.
        confidence: 0.0 - 1.0.
        method: Which classifier produced this ("rules", "fallback", ...).
    """
    category: Category
    confidence: float = 0.0
    method: str = ""

    @classmethod
    def unclassified(cls) -> "Classification":
        return cls(Category.UNCLASSIFIED, 0.0, "none")


@dataclass(frozen=True)
class AttachmentInfo:
    """
    Metadata about one attachment. Content is never retained.

    Attributes:
        filename: Original filename (may be empty for unnamed parts).
        content_type: MIME type (e.g., "application/pdf").
        size: Decoded size in bytes.
        content_id: Content-ID for inline parts referenced from HTML.
        is_inline: True for parts with Content-Disposition: inline.
    """
    filename: str
    content_type: str
    size: int
    content_id: str | None = None
    is_inline: bool = False

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")

    @property
    def human_size(self) -> str:
        """
        Returns a human-readable file size.

        Examples:
            - 500 -> "500 B"
            - 1536 -> "1.5 KB"
        """
        size = float(self.size)
        for unit in ("B", "KB", "MB", "GB"):
            if size < 1024:
                return f"{size:.1f} {unit}" if size != int(size) else f"{int(size)} {unit}"
            size /= 1024
        return f"{size:.1f} TB"


@dataclass(frozen=True)
class MessageSummary:
    """Envelope-level view of a message used to pick initial sync candidates."""
    uid: int
    date: datetime | None = None
    flags: MessageFlags = MessageFlags.NONE


@dataclass(frozen=True)
class RawMessage:
    """A fetched message before parsing."""
    uid: int
    source: bytes = field(repr=False)
    flags: MessageFlags = MessageFlags.NONE
    size: int = 0


@dataclass(frozen=True)
class NormalizedMessage:
    """
    A parsed message ready for classification and indexing.

    Attributes:
        id: Stable id, "<account_id>-<uid>". Unique per account and UID.
        account_id: Owning account.
        uid: IMAP UID within the account's INBOX.
        message_id: RFC 5322 Message-ID (synthesized when missing).
        subject: Subject line, "(No Subject)" when missing.
        sender: From address.
        sender_name: From display name.
        recipients: To addresses.
        cc: CC addresses.
        bcc: BCC addresses (rarely present on received mail).
        date: Date header (or processing time when absent), UTC.
        body_text: text/plain body, when the message had one.
        body_html: text/html body, when the message had one.
        body: Text used for previews and classification. The plain text
              body when present, else the HTML, else "No content available".
        flags: IMAP flags at fetch time.
        size: Size of the raw message in bytes.
        attachments: Attachment metadata.
        folder: Always "INBOX" for now.
        classification: Filled in by the message processor.
        processed_at: When the message was parsed.
    """

    id: str
    account_id: str
    uid: int
    message_id: str
    subject: str
    sender: str
    date: datetime
    processed_at: datetime

    sender_name: str = ""
    recipients: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    body_text: str = field(default="", repr=False)
    body_html: str = field(default="", repr=False)
    body: str = field(default="", repr=False)
    flags: MessageFlags = MessageFlags.NONE
    size: int = 0
    attachments: tuple[AttachmentInfo, ...] = ()
    folder: str = "INBOX"
    classification: Classification = field(default_factory=Classification.unclassified)

    @staticmethod
    def make_id(account_id: str, uid: int) -> str:
        """The stable identifier used for duplicate detection."""
        return f"{account_id}-{uid}"

    @property
    def is_read(self) -> bool:
        return bool(self.flags & MessageFlags.SEEN)

    @property
    def is_important(self) -> bool:
        return bool(self.flags & MessageFlags.FLAGGED)

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

    @property
    def category(self) -> Category:
        return self.classification.category

    @property
    def confidence(self) -> float:
        return self.classification.confidence

    def preview(self, length: int = 300) -> str:
        """Body text with whitespace collapsed, cut to `length` characters."""
        return " ".join(self.body.split())[:length]

    def with_classification(self, classification: Classification) -> "NormalizedMessage":
        return replace(self, classification=classification)

    def __str__(self) -> str:
        return f"{self.sender}: {self.subject}"
