from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.models import (
    DEFAULT_CATEGORY,
    Confidence,
    IntentResult,
    TransactionType,
)
from cashtalk_categorizer.nlp.knowledge_base import CATEGORIES_BY_TYPE, INTENTS, Intent

logger = get_logger(__name__)


def confidence_level(type_identified: bool, amount: float | None, category: str | None) -> Confidence:
    """Count how many of type, positive amount and specific category are known."""
    hits = sum((
        bool(type_identified),
        amount is not None and amount > 0,
        bool(category) and category != DEFAULT_CATEGORY,
    ))
    if hits == 3:
        return Confidence.HIGH
    if hits == 2:
        return Confidence.MEDIUM
    return Confidence.LOW


class IntentClassifier:
    def __init__(self, intents: tuple[Intent, ...] = INTENTS) -> None:
        self.intents = intents

    def match_intent(self, text: str) -> Intent | None:
        for intent in self.intents:
            if any(trigger in text for trigger in intent.triggers):
                return intent
        return None

    def match_category(self, text: str, tx_type: TransactionType) -> str | None:
        for category, keywords in CATEGORIES_BY_TYPE.get(tx_type, ()):
            if any(keyword in text for keyword in keywords):
                return category
        return None

    def classify(self, text: str) -> IntentResult:
        """
        Substring match against the trigger phrases in priority order. The
        text must already be normalized. Without a match the result carries
        no type; callers fall back to an expense.
        """
        intent = self.match_intent(text)
        if intent is None:
            logger.debug("[CLASSIFY] No intent matched for: '%s'", text[:50])
            return IntentResult()

        category = None
        if intent.type is not None:
            category = self.match_category(text, intent.type)
        logger.debug(
            "[CLASSIFY] Intent '%s' matched (type=%s, category=%s)",
            intent.name,
            intent.type.value if intent.type else None,
            category,
        )
        return IntentResult(intent=intent.name, type=intent.type, category=category)
