import asyncio
import datetime as dt
from collections.abc import Callable
from typing import Any

from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.models import (
    PendingFeedback,
    ReceiptItem,
    SmartCategorization,
    SuggestedCategory,
    Transaction,
    TransactionType,
)
from cashtalk_categorizer.services.mapping_store import MappingStore
from cashtalk_categorizer.services.persistence import TransactionPersistence
from cashtalk_categorizer.services.receipts import ReceiptProcessor
from cashtalk_categorizer.services.router import TransactionRouter
from cashtalk_categorizer.services.store import TransactionStore

logger = get_logger(__name__)


class CategorizationPipeline:
    def __init__(
        self,
        service: CategorizerService,
        router: TransactionRouter,
        store: TransactionStore,
        mapping_store: MappingStore | None = None,
        persistence: TransactionPersistence | None = None,
        receipts: ReceiptProcessor | None = None,
    ) -> None:
        self.service = service
        self.router = router
        self.store = store
        self.mapping_store = mapping_store
        self.persistence = persistence
        self.receipts = receipts or ReceiptProcessor(service)
        # Ledger id -> persisted row, so corrections rewrite the same row.
        self._rows: dict[int, dict[str, Any]] = {}

    async def _store(self, routed: Transaction, user_id: str | None) -> int:
        transaction_id = self.router.dispatch(routed)
        if self.persistence is not None:
            self._rows[transaction_id] = await self.persistence.save(routed, user_id)
        return transaction_id

    async def _classify(self, text: str, user_id: str | None) -> Transaction:
        mappings = None
        if self.mapping_store is not None:
            mappings = await self.mapping_store.snapshot(user_id)
        transaction = await asyncio.to_thread(self.service.classify, text, mappings)
        return self.router.prepare(transaction)

    async def classify_with_id(self, text: str, user_id: str | None = None) -> tuple[int, Transaction]:
        routed = await self._classify(text, user_id)
        return await self._store(routed, user_id), routed

    async def classify(self, text: str, user_id: str | None = None) -> Transaction:
        _, transaction = await self.classify_with_id(text, user_id)
        return transaction

    async def classify_smart(self, text: str, user_id: str | None = None) -> tuple[int, SmartCategorization]:
        """
        Classify, let the user's mappings override the category and decide
        whether the user should be asked to confirm it. The ledger and the
        persisted row hold the same transaction the caller gets back.
        """
        prepared = await self._classify(text, user_id)
        smart = await self.store.process_transaction_with_smart_categories(prepared, user_id)
        routed = self.router.apply_rules(smart.transaction)
        return await self._store(routed, user_id), smart.model_copy(update={"transaction": routed})

    async def process_feedback(
        self,
        transaction_id: int,
        category: str,
        user_id: str | None,
    ) -> bool:
        saved = await self.router.process_feedback(transaction_id, category, user_id)
        corrected = self.store.get(transaction_id)
        row = self._rows.get(transaction_id)
        if row is not None and corrected is not None and corrected.metadata.corrected:
            self._rows[transaction_id] = await self.persistence.update(row, corrected)
        return saved

    async def process_word_feedback(
        self,
        word: str,
        suggested: str,
        is_correct: bool,
        correct: str | None = None,
    ) -> dict[str, float]:
        return await asyncio.to_thread(
            self.service.process_word_feedback,
            word,
            suggested,
            is_correct,
            correct,
        )

    def pending_feedback(self) -> list[PendingFeedback]:
        return self.service.pending_feedback()

    def subscribe(
        self,
        key: TransactionType | str,
        callback: Callable[[Transaction], None],
    ) -> Callable[[], None]:
        return self.store.subscribe(key, callback)

    async def suggest(self, description: str, user_id: str | None = None) -> SuggestedCategory:
        keywords = self.service.keywords_for(description)
        if self.mapping_store is not None:
            suggestion = await self.mapping_store.get_suggested_category(keywords, user_id)
            if suggestion.source != "default":
                return suggestion
        guess = self.service.enhance(description)
        if guess is not None:
            return SuggestedCategory(category=guess.category, confidence=guess.confidence, source=guess.source)
        return SuggestedCategory(category="Altro", confidence=0.1, source="default")

    async def process_receipt(
        self,
        *,
        text: str | None = None,
        merchant: str | None = None,
        items: list[ReceiptItem] | None = None,
        total: float | None = None,
        date: dt.date | None = None,
        user_id: str | None = None,
    ) -> tuple[int, Transaction] | None:
        transaction = await asyncio.to_thread(
            self.receipts.process_structured,
            merchant,
            items,
            total,
            date,
            text,
        )
        if transaction is None:
            return None
        routed = self.router.prepare(transaction)
        return await self._store(routed, user_id), routed

    async def sync(self) -> dict[str, int]:
        if self.persistence is None:
            return {"synced": 0, "pending": 0}
        return await self.persistence.sync()
