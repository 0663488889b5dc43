import datetime as dt
import re
from collections.abc import Callable

from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.models import (
    DEFAULT_CATEGORY,
    Confidence,
    ReceiptInfo,
    ReceiptItem,
    Transaction,
    TransactionMetadata,
    TransactionType,
)

logger = get_logger(__name__)

RECEIPT_SOURCE = "receipt_image"

MERCHANT_KEYWORDS = (
    "esselunga", "conad", "coop", "carrefour", "lidl", "aldi", "eurospin",
    "iper", "pam", "simply", "auchan", "penny market", "despar", "tigros",
    "bennet", "famila", "interspar",
)

_STORE_PATTERNS = (
    re.compile(r"(?:supermercato|supermarket)\s+([a-z0-9 ]+)"),
    re.compile(r"(?:negozio|store)\s+([a-z0-9 ]+)"),
    re.compile(r"(?:ristorante|restaurant)\s+([a-z0-9 ]+)"),
)
_ITEM_LINE = re.compile(
    r"^(?P<name>[^\d€]*?[a-zà-ù][^\d€]*?)\s*(?:€|eur|euro)?\s*(?P<price>\d+(?:[.,]\d{1,2})?)\s*(?:€|eur|euro)?$"
)
_TOTAL_LINE = re.compile(r"\b(?:totale|total|importo)\b")
_SKIP_LINE = re.compile(r"\b(?:iva|resto|contanti|bancomat|carta|subtotale|sconto|scontrino|p\.?\s*iva)\b")
_HAS_DIGIT_OR_CURRENCY = re.compile(r"[€$£0-9]")


def _parse_price(raw: str) -> float:
    return float(raw.replace(",", "."))


def _describe(merchant: str | None, items: list[ReceiptItem], fallback: str) -> str:
    description = merchant or ""
    if items:
        main_item = items[0].name
        description = f"{description} - {main_item}" if description else main_item
        if len(items) > 1:
            description += f" and {len(items) - 1} more items"
    if not description:
        description = fallback
    return description.strip()


class ReceiptProcessor:
    """Turns OCR receipt text or structured receipt data into an expense."""

    def __init__(
        self,
        service: CategorizerService,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self.service = service
        self._today = today

    def extract_merchant(self, text: str) -> str | None:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if lines and not _HAS_DIGIT_OR_CURRENCY.search(lines[0]) and not _TOTAL_LINE.search(lines[0]):
            return lines[0]
        for pattern in _STORE_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(1).strip()
        for keyword in MERCHANT_KEYWORDS:
            if re.search(rf"\b{re.escape(keyword)}\b", text):
                return keyword
        return None

    def parse_text(self, text: str) -> tuple[ReceiptInfo, float | None]:
        """Split receipt text into merchant, priced items and the total."""
        normalized = text.lower().strip()
        merchant = self.extract_merchant(normalized)
        items: list[ReceiptItem] = []
        total: float | None = None

        for raw_line in normalized.splitlines():
            line = raw_line.strip()
            if not line or line == merchant:
                continue
            match = _ITEM_LINE.match(line)
            if not match:
                continue
            price = _parse_price(match.group("price"))
            if _TOTAL_LINE.search(line):
                total = price
                continue
            if _SKIP_LINE.search(line):
                continue
            items.append(ReceiptItem(name=match.group("name").strip(" :-."), price=price))

        if total is None and items:
            total = round(sum(item.price for item in items), 2)
        return ReceiptInfo(merchant=merchant, items=items, raw_text=text), total

    def categorize(self, merchant: str | None, items: list[ReceiptItem], description: str) -> tuple[str, float]:
        if merchant:
            matched = self.service.rules.categorize(merchant)
            if matched.category != DEFAULT_CATEGORY:
                return matched.category, self.service.rules.confidence
        food = self.service.food_items.classify(" ".join(item.name for item in items))
        if food is not None:
            return food.category, food.confidence
        guess = self.service.enhance(description)
        if guess is not None:
            return guess.category, guess.confidence
        return DEFAULT_CATEGORY, 0.1

    def build(
        self,
        receipt: ReceiptInfo,
        total: float | None,
        date: dt.date | None = None,
    ) -> Transaction:
        fallback = (receipt.raw_text or "").strip().splitlines()[0] if (receipt.raw_text or "").strip() else ""
        description = _describe(receipt.merchant.title() if receipt.merchant else None, receipt.items, fallback)
        category, score = self.categorize(receipt.merchant, receipt.items, description)
        keyword_source = " ".join([receipt.merchant or ""] + [item.name for item in receipt.items])
        warnings = [] if total else ["missing_amount"]
        if category == DEFAULT_CATEGORY:
            confidence = Confidence.LOW
        else:
            confidence = Confidence.HIGH if total else Confidence.MEDIUM

        transaction = Transaction(
            type=TransactionType.EXPENSE,
            amount=total or 0.0,
            category=category,
            description=description,
            date=date or self._today(),
            confidence=confidence,
            metadata=TransactionMetadata(
                confidence_score=score,
                source=RECEIPT_SOURCE,
                raw_input=receipt.raw_text,
                keywords=self.service.keywords_for(keyword_source or description),
                warnings=warnings,
                receipt=receipt,
            ),
        )
        logger.info(
            "[RECEIPT] %s: %.2f -> %s",
            description,
            transaction.amount,
            category,
        )
        return transaction

    def process_text(self, text: str) -> Transaction | None:
        if not text or not text.strip():
            logger.warning("[RECEIPT] Empty receipt text.")
            return None
        receipt, total = self.parse_text(text)
        return self.build(receipt, total)

    def process_structured(
        self,
        merchant: str | None = None,
        items: list[ReceiptItem] | None = None,
        total: float | None = None,
        date: dt.date | None = None,
        text: str | None = None,
    ) -> Transaction | None:
        if text and total is None and not merchant and not items:
            return self.process_text(text)
        items = items or []
        if total is None and items:
            total = round(sum(item.price for item in items), 2)
        receipt = ReceiptInfo(merchant=merchant, items=items, raw_text=text)
        if not merchant and not items and not (text and text.strip()):
            logger.warning("[RECEIPT] Empty receipt data.")
            return None
        return self.build(receipt, total, date)
