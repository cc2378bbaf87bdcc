# =============================================================================
# Tests for Message Parsing and Processing
# =============================================================================

from datetime import datetime, timezone
from email.message import EmailMessage

import pytest

from conftest import RecordingNotifier, StubClassifier, make_source
from hawk_sync.core import (
    Category,
    DownstreamError,
    MessageFlags,
    ParseError,
    RawMessage,
)
from hawk_sync.processing import (
    NO_CONTENT,
    NO_SUBJECT,
    MessageProcessor,
    TextContentPipeline,
    parse_message,
)

DATE = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)


class TestParseMessage:
    """Tests for turning sources into NormalizedMessages."""

    def test_basic_fields(self):
        raw = RawMessage(uid=7, source=make_source(7, DATE, subject="Quarterly numbers"),
                         flags=MessageFlags.SEEN | MessageFlags.FLAGGED)

        message = parse_message("acct-1", raw)

        assert message.id == "acct-1-7"
        assert message.uid == 7
        assert message.message_id == "<msg-7@example.com>"
        assert message.subject == "Quarterly numbers"
        assert message.sender == "alice@example.com"
        assert message.sender_name == "Alice Example"
        assert message.recipients == ("user@gmail.com",)
        assert message.date == DATE
        assert message.body.strip() == "Hello there"
        assert message.folder == "INBOX"
        assert message.is_read and message.is_important
        assert message.category is Category.UNCLASSIFIED

    def test_missing_subject_and_message_id(self):
        msg = EmailMessage()
        msg["From"] = "bob@example.com"
        msg.set_content("hi")
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)

        message = parse_message("acct-1", RawMessage(uid=3, source=msg.as_bytes()), now=now)

        assert message.subject == NO_SUBJECT
        assert message.message_id.startswith("acct-1-3-")
        # No Date header: processing time
        assert message.date == now

    def test_html_only_body(self):
        msg = EmailMessage()
        msg["From"] = "news@example.com"
        msg.set_content("<p>Only <b>HTML</b></p>", subtype="html")

        message = parse_message("acct-1", RawMessage(uid=1, source=msg.as_bytes()))

        assert message.body_text == ""
        assert "<b>HTML</b>" in message.body_html
        assert message.body == message.body_html.strip()

    def test_empty_body(self):
        msg = EmailMessage()
        msg["From"] = "bob@example.com"
        msg["Subject"] = "blank"

        message = parse_message("acct-1", RawMessage(uid=1, source=msg.as_bytes()))

        assert message.body == NO_CONTENT

    def test_attachments_are_metadata_only(self):
        msg = EmailMessage()
        msg["From"] = "bob@example.com"
        msg.set_content("see attached")
        msg.add_attachment(b"%PDF-1.4 data", maintype="application", subtype="pdf",
                           filename="report.pdf")

        message = parse_message("acct-1", RawMessage(uid=1, source=msg.as_bytes()))

        (attachment,) = message.attachments
        assert attachment.filename == "report.pdf"
        assert attachment.content_type == "application/pdf"
        assert attachment.size == len(b"%PDF-1.4 data")
        assert not hasattr(attachment, "data")

    def test_empty_source_raises(self):
        with pytest.raises(ParseError):
            parse_message("acct-1", RawMessage(uid=1, source=b""))


class TestTextContentPipeline:
    """Tests for HTML-to-text body extraction."""

    @pytest.mark.asyncio
    async def test_html_only_message_gets_text_body(self):
        msg = EmailMessage()
        msg["From"] = "news@example.com"
        msg.set_content(
            "<html><head><style>p {color: red}</style></head>"
            "<body><p>Hello <b>world</b></p></body></html>",
            subtype="html",
        )
        message = parse_message("acct-1", RawMessage(uid=1, source=msg.as_bytes()))

        processed = await TextContentPipeline().process(message)

        assert "Hello world" in processed.body
        assert "color" not in processed.body
        assert "<" not in processed.body

    @pytest.mark.asyncio
    async def test_text_body_is_left_alone(self, sample_message):
        processed = await TextContentPipeline().process(sample_message)
        assert processed is sample_message

    def test_zero_width_characters_removed(self):
        text = TextContentPipeline().html_to_text("<p>A\u200bB\ufeffC</p>")
        assert text == "ABC"

    def test_blank_html(self):
        assert TextContentPipeline().html_to_text("   ") == ""


class TestMessageProcessor:
    """Tests for the parse/classify/notify pipeline."""

    @pytest.mark.asyncio
    async def test_interested_message_is_notified(self, account):
        classifier = StubClassifier(Category.INTERESTED, 0.7)
        notifier = RecordingNotifier()
        processor = MessageProcessor(classifier=classifier, notifiers=[notifier])

        message = await processor.process(account, RawMessage(uid=1, source=make_source(1, DATE)))

        assert message.category is Category.INTERESTED
        assert message.confidence == 0.7
        assert notifier.notified == ["acct-1-1"]

    @pytest.mark.asyncio
    async def test_other_categories_are_not_notified(self, account):
        notifier = RecordingNotifier()
        processor = MessageProcessor(
            classifier=StubClassifier(Category.SPAM, 0.9), notifiers=[notifier]
        )

        await processor.process(account, RawMessage(uid=1, source=make_source(1, DATE)))

        assert notifier.notified == []

    @pytest.mark.asyncio
    async def test_custom_priority_categories(self, account):
        notifier = RecordingNotifier()
        processor = MessageProcessor(
            classifier=StubClassifier(Category.MEETING_BOOKED, 0.9),
            notifiers=[notifier],
            priority_categories=[Category.MEETING_BOOKED],
        )

        await processor.process(account, RawMessage(uid=1, source=make_source(1, DATE)))

        assert notifier.notified == ["acct-1-1"]

    @pytest.mark.asyncio
    async def test_classifier_failure_leaves_message_unclassified(self, account):
        classifier = StubClassifier()
        classifier.error = RuntimeError("model unavailable")
        processor = MessageProcessor(classifier=classifier)

        message = await processor.process(account, RawMessage(uid=1, source=make_source(1, DATE)))

        assert message.category is Category.UNCLASSIFIED
        assert message.confidence == 0.0

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_stop_others(self, account):
        broken = RecordingNotifier()
        broken.error = DownstreamError("HTTP 500")
        working = RecordingNotifier()
        processor = MessageProcessor(classifier=StubClassifier(), notifiers=[broken, working])

        message = await processor.process(account, RawMessage(uid=1, source=make_source(1, DATE)))

        assert message is not None
        assert working.notified == ["acct-1-1"]

    @pytest.mark.asyncio
    async def test_unparseable_message_returns_none(self, account):
        processor = MessageProcessor()
        assert await processor.process(account, RawMessage(uid=1, source=b"")) is None
