import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vocabdrill.config import settings
from vocabdrill.db import init_all_databases

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_all_databases(settings.data_dir)
    from vocabdrill.db.sqlite import connect
    from vocabdrill.services.grading import sweep_batches

    async with connect() as db:
        swept = await sweep_batches(db)
    if swept:
        logger.info("Swept %d expired batch records", swept)
    yield


def create_app() -> FastAPI:
    application = FastAPI(
        title="VocabDrill Backend", version="0.1.0", lifespan=lifespan
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from vocabdrill.routers import health, review, vocabulary

    application.include_router(health.router)
    application.include_router(
        vocabulary.router, prefix="/vocabulary", tags=["vocabulary"]
    )
    application.include_router(
        review.router, prefix="/review", tags=["review"]
    )

    return application


app = create_app()
