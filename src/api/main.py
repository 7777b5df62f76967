"""
InfraScope FastAPI Application
==============================

REST API for the infrastructure transparency knowledge base.

Endpoints:
    GET /search                        - Cited answer + result page
    GET /intelligent-search            - Search + intelligence layers
    GET /intelligent-search/evolution  - Topic timeline
    GET /intelligent-search/predict    - Scenario projection
    GET /health                        - Health check

Usage:
    uvicorn src.api.main:app --reload --port 8000

    Or with CLI:
    python -m src.api.main
"""

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os

from ..config import load_settings
from ..orchestrator.logging_config import setup_from_settings
from ..orchestrator.search_service import SearchService
from .search_routes import router as search_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = load_settings()
    setup_from_settings(settings)

    logger.info("Starting InfraScope API...")

    # Fails fast on missing credentials
    service = SearchService(settings)
    await service.init()
    app.state.search_service = service

    yield

    await service.close()
    logger.info("Shutting down InfraScope API...")


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(
        title="InfraScope API",
        description="Semantic search over infrastructure transparency documents",
        version="1.0.0",
        lifespan=lifespan_handler,
    )

    # CORS_ORIGINS env var (comma-separated) adds deployed frontends
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    extra_origins = os.getenv("CORS_ORIGINS", "")
    if extra_origins:
        origins.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(search_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    print("=" * 60)
    print("INFRASCOPE API SERVER")
    print("=" * 60)
    print()
    print("Starting server at http://localhost:8000")
    print("  - Swagger UI: http://localhost:8000/docs")
    print()

    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        log_level="info",
    )
