from fastapi import HTTPException, Request

from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.services.categorization import CategorizationPipeline
from cashtalk_categorizer.services.store import TransactionStore


def get_service(request: Request) -> CategorizerService:
    service = getattr(request.app.state, "service", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service


def get_store(request: Request) -> TransactionStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return store


def get_pipeline(request: Request) -> CategorizationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if not pipeline:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return pipeline
