import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cashtalk_categorizer.api.routes import classify, config, feedback, receipts, transactions
from cashtalk_categorizer.core import settings
from cashtalk_categorizer.integration.persistence import create_backend
from cashtalk_categorizer.logger import get_logger, setup_logging
from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.services.categorization import CategorizationPipeline
from cashtalk_categorizer.services.mapping_store import MappingStore
from cashtalk_categorizer.services.persistence import TransactionPersistence
from cashtalk_categorizer.services.receipts import ReceiptProcessor
from cashtalk_categorizer.services.router import TransactionRouter
from cashtalk_categorizer.services.store import TransactionStore

logger = get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        backend = create_backend(settings.DATA_DIR)
        mapping_store = MappingStore(backend)
        service = CategorizerService(data_dir=settings.DATA_DIR)
        store = TransactionStore(mapping_store=mapping_store)
        router = TransactionRouter(store=store, service=service, mapping_store=mapping_store)
        persistence = TransactionPersistence(backend)
        pipeline = CategorizationPipeline(
            service=service,
            router=router,
            store=store,
            mapping_store=mapping_store,
            persistence=persistence,
            receipts=ReceiptProcessor(service),
        )

        app.state.backend = backend
        app.state.mapping_store = mapping_store
        app.state.service = service
        app.state.store = store
        app.state.router = router
        app.state.persistence = persistence
        app.state.pipeline = pipeline

        retry_task = asyncio.create_task(persistence.run_retry_loop())
        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        retry_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await retry_task
        await backend.aclose()

    app = FastAPI(title="CashTalk Categorizer", lifespan=lifespan)

    app.include_router(classify.router)
    app.include_router(feedback.router)
    app.include_router(transactions.router)
    app.include_router(receipts.router)
    app.include_router(config.router)

    return app


app = create_app()
