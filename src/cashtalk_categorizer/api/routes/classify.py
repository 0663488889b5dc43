from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from cashtalk_categorizer.api.dependencies import get_pipeline
from cashtalk_categorizer.api.schemas import ClassifyRequest, ClassifyResponse
from cashtalk_categorizer.models import SuggestedCategory
from cashtalk_categorizer.services.categorization import CategorizationPipeline

router = APIRouter()


@router.post("/classify", response_model=ClassifyResponse)
async def classify_text(
    req: ClassifyRequest,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> ClassifyResponse:
    if req.smart:
        transaction_id, smart = await pipeline.classify_smart(req.text, req.user_id)
        return ClassifyResponse(
            id=transaction_id,
            transaction=smart.transaction,
            needs_feedback=smart.needs_feedback,
            confidence_score=smart.confidence_score,
        )

    transaction_id, transaction = await pipeline.classify_with_id(req.text, req.user_id)
    return ClassifyResponse(
        id=transaction_id,
        transaction=transaction,
        needs_feedback=transaction.metadata.needs_feedback,
        confidence_score=transaction.metadata.confidence_score,
    )


@router.get("/suggest", response_model=SuggestedCategory)
async def suggest_category(
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    description: str,
    user_id: str | None = None,
) -> SuggestedCategory:
    if not description.strip():
        raise HTTPException(status_code=400, detail="Description must not be empty")
    return await pipeline.suggest(description, user_id)
