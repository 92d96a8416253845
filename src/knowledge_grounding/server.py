"""
FastAPI application wiring for the knowledge grounding service.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse

from .config_manager import Config
from .kb_routes import init_kb_routes
from .knowledge_base import KnowledgeBaseManager


def init_health_route(kb_manager: KnowledgeBaseManager) -> APIRouter:
    """
    Create and return the health-check route.

    Args:
        kb_manager: KnowledgeBaseManager instance

    Returns:
        APIRouter: Router exposing `/health`
    """
    router = APIRouter()

    @router.get("/health")
    async def health():
        """Liveness probe with the embedding provider counters."""
        return JSONResponse(
            status_code=200,
            content={
                "success": True,
                "data": {"status": "ok", "embeddings": kb_manager.embeddings.stats},
            },
        )

    return router


def create_app(
    config: Optional[Config] = None, kb_manager: Optional[KnowledgeBaseManager] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Service configuration (defaults apply when omitted)
        kb_manager: Pre-built manager; one is built from `config` if omitted

    Returns:
        FastAPI app with the knowledge base routes mounted
    """
    manager = kb_manager or KnowledgeBaseManager.from_config(config or Config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await manager.initialize()
        yield
        await manager.close()

    app = FastAPI(title="Knowledge Grounding", lifespan=lifespan)
    app.state.kb_manager = manager
    app.include_router(init_health_route(manager))
    app.include_router(init_kb_routes(manager))
    return app
