# =============================================================================
# Text Normalizer for Rule Classification
# =============================================================================
# Prepares email content for keyword rules.
#
# The rules are phrase patterns ("out of office", "tell me more"), so unlike
# a bag-of-words tokenizer we keep stop words and word order. We only:
#   - Strip leftover HTML tags and entities
#   - Drop zero-width characters
#   - Lowercase and collapse whitespace
# =============================================================================

import html
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hawk_sync.core import NormalizedMessage


@dataclass
class TokenizerConfig:
    """
    Configuration for text normalization.

    Attributes:
        max_body_chars: Only the start of long bodies is looked at.
        normalize_case: Convert text to lowercase.
    """
    max_body_chars: int = 10_000
    normalize_case: bool = True


class Tokenizer:
    """
    Turns a message into one normalized string for pattern matching.

    Usage:
        >>> tokenizer = Tokenizer()
        >>> tokenizer.normalize("<p>Sounds  GOOD!</p>")
        'sounds good!'
    """

    TAG_PATTERN = re.compile(r'<[^>]+>')
    ZERO_WIDTH_PATTERN = re.compile(r'[\u200b\u200c\u200d\u2060\ufeff]+')
    WHITESPACE_PATTERN = re.compile(r'\s+')

    def __init__(self, config: TokenizerConfig | None = None) -> None:
        self.config = config or TokenizerConfig()

    def normalize(self, text: str) -> str:
        text = self.TAG_PATTERN.sub(' ', text)
        text = html.unescape(text)
        text = self.ZERO_WIDTH_PATTERN.sub('', text)
        text = self.WHITESPACE_PATTERN.sub(' ', text).strip()
        if self.config.normalize_case:
            text = text.lower()
        return text

    def prepare(self, message: "NormalizedMessage") -> str:
        """
        Flatten the fields the rules look at into one normalized string.
        """
        recipients = ", ".join(message.recipients) or "n/a"
        body = message.body[:self.config.max_body_chars]
        return self.normalize(
            f"Subject: {message.subject}\n"
            f"From: {message.sender}\n"
            f"To: {recipients}\n"
            f"Content: {body}"
        )
