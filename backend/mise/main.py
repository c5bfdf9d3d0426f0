from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from .api.routes import router as recipes_router
from .core.config import Settings, get_settings
from .core.pipeline import RecipePipeline
from .core.recipe_store import RecipeStore
from .services.llm_client import OpenAIChatClient

log = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RecipeStore] = None,
    pipeline: Optional[RecipePipeline] = None,
) -> FastAPI:
    settings = settings or get_settings()

    # Configure logging
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if store is None:
        store = RecipeStore(settings.store_path)
        store.load()
    if pipeline is None:
        pipeline = RecipePipeline(
            store,
            extraction_llm=OpenAIChatClient(settings.extraction_model, settings),
            annotation_llm=OpenAIChatClient(settings.annotation_model, settings),
            settings=settings,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await pipeline.shutdown()
        await store.save_async()
        log.info("👋 Recipe store saved, shutting down")

    app = FastAPI(
        title="mise",
        version="0.1.0",
        description="Turns recipe webpages into annotated, step-by-step recipes",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(recipes_router)

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "ok",
            "message": "mise API is running",
            "openai_configured": bool(settings.openai_api_key),
            "recipes": len(store),
            "generating": sum(1 for r in store.all() if r.generating),
        }

    return app


app = create_app()
