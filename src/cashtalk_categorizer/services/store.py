import random
from collections import defaultdict
from collections.abc import Callable

from cashtalk_categorizer.core import settings
from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.models import (
    DEFAULT_CATEGORY,
    Confidence,
    SmartCategorization,
    Transaction,
    TransactionType,
)
from cashtalk_categorizer.nlp.knowledge_base import category_keywords
from cashtalk_categorizer.services.mapping_store import MappingStore

logger = get_logger(__name__)

ALL = "ALL"
UPDATE = "UPDATE"

MAX_CONSECUTIVE_REQUESTS = 3
EXPERIENCED_USER_FEEDBACKS = 50
EXPERIENCED_USER_ASK_RATE = 0.5

Listener = Callable[[Transaction], None]


def _listener_key(key: TransactionType | str) -> str:
    return key.value if isinstance(key, TransactionType) else key


class TransactionStore:
    """
    Append-only ledger with listeners keyed by transaction type, ``ALL``
    and ``UPDATE``. Transaction ids are list positions.
    """

    def __init__(
        self,
        mapping_store: MappingStore | None = None,
        threshold: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.mapping_store = mapping_store
        self.threshold = settings.feedback_threshold() if threshold is None else threshold
        self.rng = rng or random.Random()
        self.transactions: list[Transaction] = []
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._consecutive_requests: dict[str, int] = defaultdict(int)

    def _notify(self, key: str, transaction: Transaction) -> None:
        for callback in list(self._listeners.get(key, [])):
            try:
                callback(transaction)
            except Exception:
                logger.exception("[STORE] Listener for '%s' failed.", key)

    def subscribe(self, key: TransactionType | str, callback: Listener) -> Callable[[], None]:
        name = _listener_key(key)
        self._listeners[name].append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(name, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def add_transaction(self, transaction: Transaction) -> int:
        self.transactions.append(transaction)
        transaction_id = len(self.transactions) - 1
        logger.info(
            "[STORE] Added %s #%s: %.2f %s (%s)",
            transaction.type.value,
            transaction_id,
            transaction.amount,
            transaction.currency,
            transaction.category,
        )
        self._notify(transaction.type.value, transaction)
        self._notify(ALL, transaction)
        return transaction_id

    def update_transaction(self, transaction_id: int, transaction: Transaction) -> bool:
        if not 0 <= transaction_id < len(self.transactions):
            logger.warning("[STORE] Unknown transaction id %s.", transaction_id)
            return False
        self.transactions[transaction_id] = transaction
        self._notify(UPDATE, transaction)
        self._notify(ALL, transaction)
        return True

    def get(self, transaction_id: int) -> Transaction | None:
        if 0 <= transaction_id < len(self.transactions):
            return self.transactions[transaction_id]
        return None

    def list(self, tx_type: TransactionType | None = None) -> list[tuple[int, Transaction]]:
        return [
            (index, transaction)
            for index, transaction in enumerate(self.transactions)
            if tx_type is None or transaction.type == tx_type
        ]

    def clear(self) -> None:
        self.transactions.clear()
        logger.info("[STORE] Cleared all transactions.")

    def reset_feedback_requests(self, user_id: str | None) -> None:
        self._consecutive_requests.pop(user_id or "", None)

    def should_request_feedback(self, confidence: float, user_id: str | None, feedback_count: int) -> bool:
        """
        Ask only for uncertain results, never more than three times in a row,
        and only half of the time for users who already gave plenty of feedback.
        """
        if confidence >= self.threshold:
            return False
        if self._consecutive_requests[user_id or ""] >= MAX_CONSECUTIVE_REQUESTS:
            return False
        if feedback_count > EXPERIENCED_USER_FEEDBACKS:
            return self.rng.random() < EXPERIENCED_USER_ASK_RATE
        return True

    async def process_transaction_with_smart_categories(
        self,
        transaction: Transaction,
        user_id: str | None = None,
    ) -> SmartCategorization:
        categorized = transaction.model_copy(deep=True)
        keywords = category_keywords(categorized.metadata.keywords)

        if self.mapping_store is None:
            score = categorized.metadata.confidence_score or 0.0
            return SmartCategorization(
                transaction=categorized,
                confidence_score=score,
                needs_feedback=score < self.threshold,
                source=categorized.metadata.source,
            )

        direct = await self.mapping_store.get_direct_mappings(user_id)
        for keyword in keywords:
            if keyword in direct:
                categorized.category = direct[keyword]
                categorized.confidence = Confidence.HIGH
                categorized.metadata.confidence_score = 1.0
                categorized.metadata.source = "direct_mapping"
                categorized.metadata.needs_feedback = False
                self.reset_feedback_requests(user_id)
                return SmartCategorization(
                    transaction=categorized,
                    confidence_score=1.0,
                    needs_feedback=False,
                    source="direct_mapping",
                )

        suggestion = await self.mapping_store.get_suggested_category(keywords, user_id)
        confidence = suggestion.confidence
        source = suggestion.source
        current = categorized.metadata.confidence_score or 0.0
        if suggestion.source == "default" or current > confidence:
            confidence = current
            source = categorized.metadata.source
        else:
            categorized.category = suggestion.category
            categorized.metadata.confidence_score = confidence
            categorized.metadata.source = suggestion.source
        if not categorized.category:
            categorized.category = DEFAULT_CATEGORY

        feedback_count = await self.mapping_store.feedback_count(user_id)
        needs_feedback = self.should_request_feedback(confidence, user_id, feedback_count)
        key = user_id or ""
        if needs_feedback:
            self._consecutive_requests[key] += 1
        elif confidence >= self.threshold:
            self._consecutive_requests.pop(key, None)
        categorized.metadata.needs_feedback = needs_feedback

        return SmartCategorization(
            transaction=categorized,
            confidence_score=confidence,
            needs_feedback=needs_feedback,
            source=source,
        )
