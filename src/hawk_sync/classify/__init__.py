# =============================================================================
# Classification Module
# =============================================================================
# Local, rule-based message classification:
#   - Tokenizer: normalizes message text for pattern matching
#   - RuleClassifier: keyword rules per category with a confidence score
# =============================================================================

from hawk_sync.classify.rules import RULES, RuleClassifier
from hawk_sync.classify.tokenizer import Tokenizer, TokenizerConfig

__all__ = ["RuleClassifier", "RULES", "Tokenizer", "TokenizerConfig"]
