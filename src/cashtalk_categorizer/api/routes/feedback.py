from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from cashtalk_categorizer.api.dependencies import get_pipeline, get_service
from cashtalk_categorizer.api.schemas import FeedbackRequest, WordFeedbackRequest
from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.models import PendingFeedback
from cashtalk_categorizer.services.categorization import CategorizationPipeline

logger = get_logger(__name__)

router = APIRouter()


@router.post("/feedback")
async def submit_feedback(
    req: FeedbackRequest,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> dict[str, object]:
    success = await pipeline.process_feedback(req.transaction_id, req.category, req.user_id)
    if not success:
        logger.warning("[FEEDBACK] Could not apply feedback for transaction %s.", req.transaction_id)
    return {"status": "success" if success else "failed", "success": success}


@router.post("/feedback/word")
async def submit_word_feedback(
    req: WordFeedbackRequest,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> dict[str, object]:
    if not req.word.strip():
        raise HTTPException(status_code=400, detail="Word must not be empty")
    if not req.is_correct and not req.correct_category:
        raise HTTPException(status_code=400, detail="correct_category is required when is_correct is false")
    weights = await pipeline.process_word_feedback(
        req.word,
        req.suggested_category,
        req.is_correct,
        req.correct_category,
    )
    return {"status": "success", "word": req.word.strip().lower(), "weights": weights}


@router.get("/feedback/pending", response_model=list[PendingFeedback])
async def pending_feedback(
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> list[PendingFeedback]:
    return pipeline.pending_feedback()


@router.post("/clear-models")
async def clear_models(
    service: Annotated[CategorizerService, Depends(get_service)],
) -> dict[str, str]:
    service.clear_models()
    return {"status": "success", "message": "Learned word weights cleared"}
