from typing import Annotated

from fastapi import APIRouter, Depends

from cashtalk_categorizer.api.dependencies import get_pipeline, get_store
from cashtalk_categorizer.api.schemas import StoredTransaction
from cashtalk_categorizer.models import TransactionType
from cashtalk_categorizer.services.categorization import CategorizationPipeline
from cashtalk_categorizer.services.store import TransactionStore

router = APIRouter()


@router.get("/transactions", response_model=list[StoredTransaction])
async def list_transactions(
    store: Annotated[TransactionStore, Depends(get_store)],
    type: TransactionType | None = None,
) -> list[StoredTransaction]:
    return [
        StoredTransaction(id=transaction_id, transaction=transaction)
        for transaction_id, transaction in store.list(type)
    ]


@router.post("/sync")
async def sync_transactions(
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> dict[str, int]:
    return await pipeline.sync()
