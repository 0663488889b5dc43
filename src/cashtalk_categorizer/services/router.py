import asyncio
from collections.abc import Callable

from cashtalk_categorizer.core import settings
from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.models import DEFAULT_CATEGORY, Confidence, Transaction, TransactionType
from cashtalk_categorizer.nlp.knowledge_base import SALARY_CATEGORIES, category_keywords, is_known_word
from cashtalk_categorizer.services.mapping_store import MappingStore
from cashtalk_categorizer.services.store import TransactionStore

logger = get_logger(__name__)


class TransactionRouter:
    """Applies the business rules to a classified transaction and hands it to its sink."""

    def __init__(
        self,
        store: TransactionStore,
        service: CategorizerService,
        mapping_store: MappingStore | None = None,
        income_increase_threshold: float | None = None,
    ) -> None:
        self.store = store
        self.service = service
        self.mapping_store = mapping_store
        if income_increase_threshold is None:
            income_increase_threshold = settings.income_increase_threshold()
        self.income_increase_threshold = income_increase_threshold
        self._handlers: dict[TransactionType, Callable[[Transaction], int]] = {
            TransactionType.INCOME: self.handle_income,
            TransactionType.EXPENSE: self.handle_expense,
            TransactionType.INVESTMENT: self.handle_investment,
            TransactionType.INCOME_INCREASE: self.handle_income_increase,
        }

    def enhance(self, transaction: Transaction) -> Transaction:
        if transaction.category and transaction.category != DEFAULT_CATEGORY:
            return transaction
        if transaction.type == TransactionType.INVESTMENT:
            # Tickers need the original casing.
            text = transaction.metadata.raw_input or transaction.description
        else:
            text = transaction.description or transaction.metadata.raw_input
        guess = self.service.enhance(text or "", transaction.type)
        if guess is None:
            transaction.category = DEFAULT_CATEGORY
            return transaction

        logger.debug("[ROUTER] Fallback '%s' -> %s", guess.source, guess.category)
        transaction.category = guess.category
        transaction.metadata.source = guess.source
        if transaction.confidence == Confidence.LOW:
            transaction.confidence = Confidence.MEDIUM
        current = transaction.metadata.confidence_score or 0.0
        transaction.metadata.confidence_score = max(current, guess.confidence)
        return transaction

    def apply_rules(self, transaction: Transaction) -> Transaction:
        transaction.amount = abs(transaction.amount)
        if (
            transaction.type == TransactionType.INCOME
            and transaction.category in SALARY_CATEGORIES
            and transaction.amount >= self.income_increase_threshold
        ):
            logger.info(
                "[ROUTER] Salary of %.2f >= %.2f, treating as income increase.",
                transaction.amount,
                self.income_increase_threshold,
            )
            transaction.type = TransactionType.INCOME_INCREASE
        if transaction.type == TransactionType.EXPENSE:
            transaction.metadata.baseline_amount = transaction.amount
        return transaction

    def handle_income(self, transaction: Transaction) -> int:
        return self.store.add_transaction(transaction)

    def handle_expense(self, transaction: Transaction) -> int:
        return self.store.add_transaction(transaction)

    def handle_investment(self, transaction: Transaction) -> int:
        return self.store.add_transaction(transaction)

    def handle_income_increase(self, transaction: Transaction) -> int:
        logger.info("[ROUTER] New income level: %.2f %s", transaction.amount, transaction.currency)
        return self.store.add_transaction(transaction)

    def prepare(self, transaction: Transaction) -> Transaction:
        return self.apply_rules(self.enhance(transaction.model_copy(deep=True)))

    def dispatch(self, transaction: Transaction) -> int:
        return self._handlers[transaction.type](transaction)

    def route(self, transaction: Transaction) -> tuple[int, Transaction]:
        routed = self.prepare(transaction)
        return self.dispatch(routed), routed

    async def process_feedback(
        self,
        transaction_id: int,
        category: str,
        user_id: str | None,
    ) -> bool:
        """
        Correct a stored transaction, then teach the adaptive engine and the
        mapping store. Returns ``False`` without writing anything when the
        request cannot be applied.
        """
        category = (category or "").strip()
        if not category or not user_id:
            logger.warning("[FEEDBACK] Rejected: missing category or user.")
            return False
        original = self.store.get(transaction_id)
        if original is None:
            logger.warning("[FEEDBACK] Rejected: unknown transaction %s.", transaction_id)
            return False
        keywords = category_keywords(original.metadata.keywords)
        if not keywords:
            keywords = self.service.keywords_for(original.description)
        if not keywords:
            logger.warning("[FEEDBACK] Rejected: transaction %s has no keywords.", transaction_id)
            return False

        corrected = original.model_copy(deep=True)
        corrected.category = category
        corrected.confidence = Confidence.HIGH
        corrected.metadata.corrected = True
        corrected.metadata.original_category = original.category
        corrected.metadata.needs_feedback = False
        corrected.metadata.confidence_score = 1.0
        self.store.update_transaction(transaction_id, corrected)

        suggested = original.category or DEFAULT_CATEGORY
        for word in keywords:
            if is_known_word(word):
                continue
            await asyncio.to_thread(
                self.service.process_word_feedback,
                word,
                suggested,
                suggested == category,
                category,
            )

        saved = True
        if self.mapping_store is not None:
            saved = await self.mapping_store.update_mappings(keywords, category, user_id)
        self.store.reset_feedback_requests(user_id)
        logger.info(
            "[FEEDBACK] Transaction %s: '%s' -> '%s' (%s)",
            transaction_id,
            original.category,
            category,
            "saved" if saved else "mapping update failed",
        )
        return saved
