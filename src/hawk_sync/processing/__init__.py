# =============================================================================
# Message Processing
# =============================================================================
# Parsing, content extraction and the per-message pipeline.
# =============================================================================

from hawk_sync.processing.content import TextContentPipeline
from hawk_sync.processing.parser import NO_CONTENT, NO_SUBJECT, parse_message
from hawk_sync.processing.processor import MessageProcessor

__all__ = [
    "MessageProcessor",
    "TextContentPipeline",
    "parse_message",
    "NO_CONTENT",
    "NO_SUBJECT",
]
