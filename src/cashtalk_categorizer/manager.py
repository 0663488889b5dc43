import datetime as dt
import os
from collections import defaultdict
from collections.abc import Callable

from cashtalk_categorizer.classifiers.adaptive import AdaptiveCategoryEngine
from cashtalk_categorizer.classifiers.base import Classifier
from cashtalk_categorizer.classifiers.rules import (
    FoodItemClassifier,
    InvestmentRuleCategorizer,
    RuleBasedCategorizer,
)
from cashtalk_categorizer.core import settings
from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.models import (
    DEFAULT_CATEGORY,
    CategoryGuess,
    Confidence,
    MappingSnapshot,
    PendingFeedback,
    Transaction,
    TransactionMetadata,
    TransactionType,
)
from cashtalk_categorizer.nlp.classifier import IntentClassifier, confidence_level
from cashtalk_categorizer.nlp.entities import EntityExtractor, extract_keywords
from cashtalk_categorizer.nlp.knowledge_base import category_keywords, is_known_word
from cashtalk_categorizer.nlp.tokenizer import (
    LANGUAGE_ITALIAN,
    correct_typos,
    guess_language,
    normalize,
    tokenize,
)

logger = get_logger(__name__)

LEVEL_SCORES = {
    Confidence.HIGH: 0.9,
    Confidence.MEDIUM: 0.6,
    Confidence.LOW: 0.3,
}


class CategorizerService:
    def __init__(
        self,
        data_dir: str | None = ".",
        threshold: float | None = None,
        engine: AdaptiveCategoryEngine | None = None,
        today: Callable[[], dt.date] = dt.date.today,
    ):
        self.threshold = settings.feedback_threshold() if threshold is None else threshold

        self._today = today
        self.intents = IntentClassifier()
        self.entities = EntityExtractor(today=today)

        if engine is None:
            engine = AdaptiveCategoryEngine(
                data_path=os.path.join(data_dir, "adaptive.json") if data_dir else None,
                threshold=self.threshold,
                pending_ttl=settings.pending_feedback_ttl(),
                pending_max=settings.pending_feedback_max(),
            )
        self.engine = engine

        # Tried in order when nothing else produced a category.
        self.food_items = FoodItemClassifier()
        self.rules = RuleBasedCategorizer()
        self.fallbacks: list[Classifier] = [self.food_items, self.rules]
        self.investments = InvestmentRuleCategorizer()
        self.investment_fallbacks: list[Classifier] = [self.investments]

    def set_threshold(self, threshold: float) -> None:
        self.threshold = threshold
        self.engine.threshold = threshold
        logger.info("[CONFIG] Feedback threshold set to %.2f.", threshold)

    def keywords_for(self, text: str) -> list[str]:
        """Keywords of a description that may carry a category."""
        corrected, _ = correct_typos(normalize(text))
        return category_keywords(extract_keywords(corrected))

    def enhance(self, description: str, tx_type: TransactionType | None = None) -> CategoryGuess | None:
        fallbacks = self.investment_fallbacks if tx_type == TransactionType.INVESTMENT else self.fallbacks
        for classifier in fallbacks:
            classifier_name = classifier.__class__.__name__
            result = classifier.classify(description)
            if result:
                logger.debug(
                    f"{classifier_name} returned: '{result.category}' for '{description[:50]}'"
                )
                return result
        logger.debug(f"No fallback classifier matched for: '{description[:50]}'")
        return None

    def _probabilistic_guess(self, word: str, mappings: MappingSnapshot) -> CategoryGuess | None:
        scores: dict[str, float] = defaultdict(float)
        for category, count in mappings.user.get(word, {}).items():
            scores[category] += count * 3
        for category, count in mappings.shared.get(word, {}).items():
            scores[category] += count
        total = sum(scores.values())
        if total <= 0:
            return None
        best = max(scores, key=lambda category: scores[category])
        return CategoryGuess(
            word=word,
            category=best,
            confidence=scores[best] / total,
            scores=dict(scores),
            source="probabilistic_mapping",
        )

    def _guess_unknown(
        self,
        word: str,
        tokens: list[str],
        mappings: MappingSnapshot,
        use_morphology: bool,
    ) -> tuple[CategoryGuess, bool]:
        learned = self._probabilistic_guess(word, mappings) or self.engine.learned_guess(word)
        if learned is not None:
            return learned, False
        position = tokens.index(word) if word in tokens else None
        guess = self.engine.guess(word, tokens, position, use_morphology=use_morphology)
        pending = self.engine.register_pending(guess, tokens, position or 0)
        return guess, pending

    def classify(self, text: str, mappings: MappingSnapshot | None = None) -> Transaction:
        """
        Turn a raw statement into an unrouted transaction. ``mappings`` is the
        caller's view of the mapping tiers; direct mappings win over every
        other source.
        """
        mappings = mappings or MappingSnapshot()
        corrected, typo_corrected = correct_typos(normalize(text))
        tokens = tokenize(corrected)
        if not tokens:
            logger.info("[CLASSIFY] Empty input, defaulting to '%s'.", DEFAULT_CATEGORY)
            return Transaction(
                category=DEFAULT_CATEGORY,
                metadata=TransactionMetadata(
                    raw_input=text,
                    confidence_score=0.0,
                    warnings=["empty_input"],
                ),
            )

        intent = self.intents.classify(corrected)
        entities = self.entities.extract(corrected)
        tx_type = intent.type or TransactionType.EXPENSE
        category = intent.category
        keywords = entities.keywords
        unknown = [word for word in keywords if not is_known_word(word)]

        metadata = TransactionMetadata(
            raw_input=text,
            intent=intent.intent,
            keywords=keywords,
            unknown_words=unknown,
            typo_corrected=typo_corrected,
        )
        if entities.amount is None:
            metadata.warnings.append("missing_amount")
        if entities.date > self._today():
            metadata.warnings.append("future_date")

        transaction = Transaction(
            type=tx_type,
            amount=entities.amount or 0.0,
            currency=entities.currency,
            description=entities.description or corrected,
            date=entities.date,
            metadata=metadata,
        )

        for keyword in keywords:
            if keyword in mappings.direct:
                transaction.category = mappings.direct[keyword]
                transaction.confidence = Confidence.HIGH
                metadata.confidence_score = 1.0
                metadata.source = "direct_mapping"
                logger.info("[CLASSIFY] Direct mapping '%s' -> %s", keyword, transaction.category)
                return transaction

        use_morphology = guess_language(tokens) == LANGUAGE_ITALIAN
        guesses: list[CategoryGuess] = []
        for word in unknown:
            guess, pending = self._guess_unknown(word, tokens, mappings, use_morphology)
            guesses.append(guess)
            metadata.needs_feedback = metadata.needs_feedback or pending

        totals: dict[str, float] = defaultdict(float)
        for guess in guesses:
            if guess.category != DEFAULT_CATEGORY:
                totals[guess.category] += guess.confidence

        level: Confidence | None = None
        score: float | None = None
        if totals:
            best = max(totals, key=lambda key: totals[key])
            best_score = max(g.confidence for g in guesses if g.category == best)
            if totals[best] > 1:
                category = best
                level = Confidence.HIGH if totals[best] > 2 else Confidence.MEDIUM
                score = best_score
                metadata.source = "adaptive"
            elif not category:
                confident = [
                    g for g in guesses
                    if g.confidence >= self.threshold and g.category != DEFAULT_CATEGORY
                ]
                if confident:
                    chosen = max(confident, key=lambda g: g.confidence)
                    category = chosen.category
                    score = chosen.confidence
                    metadata.source = chosen.source

        if level is None:
            level = confidence_level(intent.type_identified, entities.amount, category)
        transaction.category = category
        transaction.confidence = level
        metadata.confidence_score = score if score is not None else LEVEL_SCORES[level]

        logger.debug(
            "[CLASSIFY] '%s' -> %s / %s (%s)",
            text[:50],
            tx_type.value,
            category,
            level.value,
        )
        return transaction

    def process_word_feedback(
        self,
        word: str,
        suggested: str,
        is_correct: bool,
        correct: str | None = None,
    ) -> dict[str, float]:
        return self.engine.process_feedback(word, suggested, is_correct, correct)

    def pending_feedback(self) -> list[PendingFeedback]:
        return self.engine.pending_feedback()

    def clear_models(self) -> None:
        self.engine.clear()
