# =============================================================================
# Rule-Based Classifier
# =============================================================================
# Sorts incoming mail into outreach-reply categories with keyword rules.
#
# How it works:
#   1. Each category has a handful of phrase patterns
#   2. For every category with at least one matching pattern:
#          confidence = min(0.9, 0.5 + matches / patterns * 0.4)
#   3. The most confident category wins; ties go to the category listed
#      first in RULES
#   4. Nothing matches -> not_interested at 0.4
#
# Deliberately simple. Anything smarter can be plugged in through the
# Classifier protocol.
# =============================================================================

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from hawk_sync.classify.tokenizer import Tokenizer
from hawk_sync.core import Category, Classification

if TYPE_CHECKING:
    from hawk_sync.core import NormalizedMessage

logger = logging.getLogger(__name__)


RULES: dict[Category, list[str]] = {
    Category.INTERESTED: [
        r"\b(yes|interested|great|perfect|sounds good|let'?s do it|count me in|sign me up)\b",
        r"\b(looking forward|excited|when can we|how do we proceed|next steps?)\b",
        r"\b(tell me more|more information|details|learn more about)\b",
        r"\b(budget|pricing|cost|quote|proposal|timeline)\b",
        r"\b(invest|investment|mutual fund|portfolio|returns|growth|wealth)\b",
        r"\b(opportunity|business|partnership|collaboration|venture)\b",
    ],
    Category.MEETING_BOOKED: [
        r"\b(meeting scheduled|calendar invite|zoom link|teams meeting)\b",
        r"\b(confirmed|booked|reserved|appointment set)\b",
        r"\b(see you (on|at)|talk to you|speak with you tomorrow|next week)\b",
        r"\b(interview|call scheduled|demo scheduled)\b",
    ],
    Category.SPAM: [
        r"\b(winner|congratulations|claim|prize|lottery|casino)\b",
        r"\b(viagra|cialis|weight loss|make money|work from home)\b",
        r"\b(click here|limited time|act now|urgent|immediate)\b",
        r"\b(free money|inheritance|prince|nigeria|suspicious)\b",
    ],
    Category.OUT_OF_OFFICE: [
        r"\b(out of office|away from office|on vacation|on holiday)\b",
        r"\b(auto.?reply|automatic response|will be back|returning on)\b",
        r"\b(limited access to email|delayed response|not available)\b",
    ],
    Category.NOT_INTERESTED: [
        r"\b(not interested|no thanks|pass|decline|not for us)\b",
        r"\b(already have|satisfied with current|not looking|too expensive)\b",
        r"\b(remove me|unsubscribe|stop contacting|not a fit)\b",
    ],
}

DEFAULT_CLASSIFICATION = Classification(Category.NOT_INTERESTED, 0.4, "rules")


@dataclass
class RuleMatch:
    """How many of a category's patterns matched."""
    category: Category
    matches: int
    total: int

    @property
    def confidence(self) -> float:
        return min(0.9, 0.5 + (self.matches / self.total) * 0.4)


class RuleClassifier:
    """
    Keyword rule classifier.

    Usage:
        >>> classifier = RuleClassifier()
        >>> result = await classifier.classify(message)
        >>> result.category, result.confidence
        (<Category.INTERESTED: 'interested'>, 0.566...)
    """

    def __init__(
        self,
        rules: dict[Category, list[str]] | None = None,
        tokenizer: Tokenizer | None = None,
    ) -> None:
        self.tokenizer = tokenizer or Tokenizer()
        self._rules = {
            category: [re.compile(pattern, re.IGNORECASE) for pattern in patterns]
            for category, patterns in (rules or RULES).items()
        }

    async def classify(self, message: "NormalizedMessage") -> Classification:
        return self.classify_text(self.tokenizer.prepare(message))

    def classify_text(self, text: str) -> Classification:
        """Classify already-normalized text."""
        best = DEFAULT_CLASSIFICATION
        for match in self.match(text):
            if match.confidence > best.confidence:
                best = Classification(match.category, match.confidence, "rules")
        return best

    def match(self, text: str) -> list[RuleMatch]:
        """Per-category match counts, for categories with at least one hit."""
        results = []
        for category, patterns in self._rules.items():
            matches = sum(1 for pattern in patterns if pattern.search(text))
            if matches:
                results.append(RuleMatch(category, matches, len(patterns)))
        return results
