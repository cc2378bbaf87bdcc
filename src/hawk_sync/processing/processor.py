# =============================================================================
# Message Processor
# =============================================================================
# Per-message pipeline, run for every fetched message that survived the
# duplicate and horizon checks:
#
#   parse -> content pipeline -> classify -> notify (priority categories only)
#
# One bad message never takes a batch down with it. Parse failures drop the
# message; content, classifier and notifier failures are logged and the
# message carries on (unclassified, if it came to that).
# =============================================================================

import logging
from typing import TYPE_CHECKING, Iterable, Sequence

from hawk_sync.core import (
    Category,
    Classification,
    NormalizedMessage,
    ParseError,
    RawMessage,
)
from hawk_sync.processing.parser import parse_message

if TYPE_CHECKING:
    from hawk_sync.core import Account
    from hawk_sync.ports import Classifier, ContentPipeline, Notifier

logger = logging.getLogger(__name__)


class MessageProcessor:
    """
    Parses, enriches and routes messages.

    Usage:
        >>> processor = MessageProcessor(
        ...     classifier=RuleClassifier(),
        ...     notifiers=[WebhookNotifier(url)],
        ...     pipeline=TextContentPipeline(),
        ... )
        >>> message = await processor.process(account, raw)
    """

    def __init__(
        self,
        *,
        classifier: "Classifier | None" = None,
        notifiers: Sequence["Notifier"] = (),
        pipeline: "ContentPipeline | None" = None,
        priority_categories: Iterable[Category] = (Category.INTERESTED,),
    ) -> None:
        self.classifier = classifier
        self.notifiers = list(notifiers)
        self.pipeline = pipeline
        self.priority_categories = frozenset(priority_categories)

    async def process(self, account: "Account", raw: RawMessage) -> NormalizedMessage | None:
        """
        Run the whole pipeline on one raw message.

        Returns:
            The processed message, or None if it could not be parsed.
        """
        message = self.parse(account, raw)
        if message is None:
            return None
        return await self.enrich(account, message)

    def parse(self, account: "Account", raw: RawMessage) -> NormalizedMessage | None:
        try:
            return parse_message(account.id, raw)
        except ParseError as e:
            logger.warning(f"Skipping message for {account.email}: {e}")
            return None

    async def enrich(self, account: "Account", message: NormalizedMessage) -> NormalizedMessage:
        """Content pipeline, classification and notification."""
        if self.pipeline is not None:
            try:
                message = await self.pipeline.process(message)
            except Exception as e:
                logger.error(f"Content pipeline failed on {message.id}: {e}", exc_info=True)

        message = message.with_classification(await self._classify(message))

        if message.category in self.priority_categories:
            await self._notify(account, message)

        return message

    async def _classify(self, message: NormalizedMessage) -> Classification:
        if self.classifier is None:
            return Classification.unclassified()
        try:
            classification = await self.classifier.classify(message)
        except Exception as e:
            logger.error(f"Classifier failed on {message.id}: {e}", exc_info=True)
            return Classification.unclassified()

        logger.debug(
            f"Classified {message.id} as {classification.category.value} "
            f"({classification.confidence:.2f})"
        )
        return classification

    async def _notify(self, account: "Account", message: NormalizedMessage) -> None:
        logger.info(
            f"{message.category.value} message for {account.email}: {message.subject!r}"
        )
        for notifier in self.notifiers:
            try:
                await notifier.notify(message)
            except Exception as e:
                logger.error(
                    f"{type(notifier).__name__} failed for {message.id}: {e}",
                )
