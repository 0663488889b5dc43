import datetime as dt

from pydantic import BaseModel, Field

from cashtalk_categorizer.models import ReceiptItem, Transaction


class ClassifyRequest(BaseModel):
    text: str
    user_id: str | None = None
    smart: bool = False


class ClassifyResponse(BaseModel):
    id: int
    transaction: Transaction
    needs_feedback: bool = False
    confidence_score: float | None = None


class FeedbackRequest(BaseModel):
    transaction_id: int
    category: str
    user_id: str


class WordFeedbackRequest(BaseModel):
    word: str
    suggested_category: str
    is_correct: bool
    correct_category: str | None = None


class ReceiptRequest(BaseModel):
    text: str | None = None
    merchant: str | None = None
    items: list[ReceiptItem] = Field(default_factory=list)
    total: float | None = None
    date: dt.date | None = None
    user_id: str | None = None


class StoredTransaction(BaseModel):
    id: int
    transaction: Transaction
