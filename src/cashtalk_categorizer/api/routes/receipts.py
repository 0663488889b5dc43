from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from cashtalk_categorizer.api.dependencies import get_pipeline
from cashtalk_categorizer.api.schemas import ReceiptRequest, StoredTransaction
from cashtalk_categorizer.services.categorization import CategorizationPipeline

router = APIRouter()


@router.post("/receipts", response_model=StoredTransaction)
async def process_receipt(
    req: ReceiptRequest,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> StoredTransaction:
    result = await pipeline.process_receipt(
        text=req.text,
        merchant=req.merchant,
        items=req.items,
        total=req.total,
        date=req.date,
        user_id=req.user_id,
    )
    if result is None:
        raise HTTPException(status_code=400, detail="Receipt has no text, merchant or items")
    transaction_id, transaction = result
    return StoredTransaction(id=transaction_id, transaction=transaction)
