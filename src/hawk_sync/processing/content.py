# =============================================================================
# Content Pipeline
# =============================================================================
# Derives the text used for previews, classification and notifications.
#
# Many marketing and reply emails have no text/plain part at all. For those
# we convert the HTML with inscriptis, which handles:
#   - Complex table layouts (common in email HTML)
#   - Proper whitespace and line break handling
#   - Lists, headings, and other semantic elements
#
# The parser already drops attachment payloads, so this stage only touches
# text fields.
# =============================================================================

import re
from dataclasses import replace

from inscriptis import get_text
from inscriptis.css_profiles import CSS_PROFILES
from inscriptis.model.config import ParserConfig

from hawk_sync.core import NormalizedMessage


class TextContentPipeline:
    """
    Fills `body` from the HTML part when a message has no plain text.

    Usage:
        >>> pipeline = TextContentPipeline()
        >>> message = await pipeline.process(message)
    """

    def __init__(self, display_links: bool = False) -> None:
        self._config = ParserConfig(
            css=CSS_PROFILES['strict'],  # Better whitespace handling
            display_links=display_links,
            display_images=False,
            display_anchors=False,
        )

    async def process(self, message: NormalizedMessage) -> NormalizedMessage:
        if message.body_text.strip() or not message.body_html.strip():
            return message

        text = self.html_to_text(message.body_html)
        if not text:
            return message
        return replace(message, body=text)

    def html_to_text(self, html_content: str) -> str:
        """
        Convert HTML to plain text.

        Returns:
            The text, or "" if the HTML has no visible content.
        """
        if not html_content or not html_content.strip():
            return ""

        html_content = self._preclean_html(html_content)
        text = get_text(html_content, self._config)
        return self._clean_output(text)

    def _preclean_html(self, html: str) -> str:
        """Pre-clean HTML before parsing to remove problematic content."""
        # Remove IE conditional comments (MSO blocks live in these too)
        html = re.sub(r'<!--\[if[^\]]*\]>.*?<!\[endif\]-->', '', html, flags=re.DOTALL | re.IGNORECASE)
        html = re.sub(r'<!\[if[^\]]*\]>.*?<!\[endif\]>', '', html, flags=re.DOTALL | re.IGNORECASE)

        html = re.sub(r'<style[^>]*>.*?</style>', '', html, flags=re.DOTALL | re.IGNORECASE)
        html = re.sub(r'<script[^>]*>.*?</script>', '', html, flags=re.DOTALL | re.IGNORECASE)

        # XML/Office namespace tags
        html = re.sub(r'<\?xml[^>]*\?>', '', html, flags=re.IGNORECASE)
        html = re.sub(r'<o:[^>]*>.*?</o:[^>]*>', '', html, flags=re.DOTALL)

        return html

    def _clean_output(self, text: str) -> str:
        """Collapse the whitespace inscriptis leaves behind."""
        # Zero-width characters (tracking pixels love these)
        text = re.sub(r'[\u200b\u200c\u200d\u2060\ufeff]+', '', text)

        text = re.sub(r'\n{3,}', '\n\n', text)
        text = '\n'.join(line.rstrip() for line in text.split('\n'))

        return text.strip()
