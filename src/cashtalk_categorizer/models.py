import datetime as dt
from enum import Enum

from pydantic import BaseModel, Field

DEFAULT_CATEGORY = "Altro"


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    INVESTMENT = "INVESTMENT"
    INCOME_INCREASE = "INCOME_INCREASE"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReceiptItem(BaseModel):
    name: str
    price: float


class ReceiptInfo(BaseModel):
    merchant: str | None = None
    items: list[ReceiptItem] = Field(default_factory=list)
    raw_text: str | None = None


class TransactionMetadata(BaseModel):
    confidence_score: float | None = None  # 0.0 to 1.0
    source: str = "text"  # "text", "direct_mapping", "receipt_image", ...
    raw_input: str | None = None
    baseline_amount: float | None = None  # expenses only
    intent: str | None = None
    keywords: list[str] = Field(default_factory=list)
    unknown_words: list[str] = Field(default_factory=list)
    needs_feedback: bool = False
    typo_corrected: bool = False
    warnings: list[str] = Field(default_factory=list)
    corrected: bool = False
    original_category: str | None = None
    receipt: ReceiptInfo | None = None


class Transaction(BaseModel):
    type: TransactionType = TransactionType.EXPENSE
    amount: float = 0.0
    currency: str = "EUR"
    category: str | None = None
    description: str = ""
    date: dt.date = Field(default_factory=dt.date.today)
    confidence: Confidence = Confidence.LOW
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)

    @property
    def signed_amount(self) -> float:
        magnitude = abs(self.amount)
        if self.type in (TransactionType.EXPENSE, TransactionType.INVESTMENT):
            return -magnitude
        return magnitude


class Entities(BaseModel):
    amount: float | None = None
    currency: str = "EUR"
    date: dt.date = Field(default_factory=dt.date.today)
    date_resolved: bool = False
    description: str = ""
    keywords: list[str] = Field(default_factory=list)


class IntentResult(BaseModel):
    intent: str | None = None
    type: TransactionType | None = None
    category: str | None = None

    @property
    def type_identified(self) -> bool:
        return self.type is not None


class CategoryGuess(BaseModel):
    word: str
    category: str
    confidence: float
    scores: dict[str, float] = Field(default_factory=dict)
    source: str = "adaptive"  # "adaptive", "learned", "probabilistic_mapping", "rules", "food_items"


class PendingFeedback(BaseModel):
    word: str
    guessed_category: str
    confidence: float
    context_window: list[str] = Field(default_factory=list)
    timestamp: dt.datetime = Field(default_factory=dt.datetime.now)


class SuggestedCategory(BaseModel):
    category: str
    confidence: float  # 0.0 to 1.0
    source: str = "probabilistic"


class SmartCategorization(BaseModel):
    transaction: Transaction
    confidence_score: float
    needs_feedback: bool
    source: str


class MappingSnapshot(BaseModel):
    """Read-only view of the three mapping tiers for one classification."""
    direct: dict[str, str] = Field(default_factory=dict)
    user: dict[str, dict[str, float]] = Field(default_factory=dict)
    shared: dict[str, dict[str, float]] = Field(default_factory=dict)
