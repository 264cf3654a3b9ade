"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from heartbridge.api.v1.router import api_router
from heartbridge.core.config import RetrievalPolicy, Settings, get_settings
from heartbridge.core.database import create_tables, dispose_engine, get_session_factory
from heartbridge.knowledge.embeddings import EmbeddingClient
from heartbridge.knowledge.retriever import RetrievalEngine
from heartbridge.knowledge.service import KnowledgeService
from heartbridge.knowledge.store import SQLKnowledgeStore
from heartbridge.knowledge.understanding import QueryUnderstander
from heartbridge.observability import (
    MetricsBackend,
    RequestLoggingMiddleware,
    configure_logging,
    get_metrics_backend,
    setup_tracing,
)
from heartbridge.services.chat import ChatService
from heartbridge.services.generator import AnswerGenerator
from heartbridge.services.llm_client import ChatModelClient
from heartbridge.services.telemetry import QueryLogSink

settings = get_settings()
logger = logging.getLogger(__name__)


def build_services(app: FastAPI, settings: Settings, metrics: MetricsBackend) -> None:
    """Create the shared collaborators and attach them to ``app.state``."""
    session_factory = get_session_factory()
    embedder = EmbeddingClient.from_settings(settings, metrics=metrics)
    model_client = ChatModelClient.from_settings(settings, metrics=metrics)

    engine = RetrievalEngine(
        store=SQLKnowledgeStore(session_factory),
        embedder=embedder,
        understander=QueryUnderstander(
            model_client,
            model=settings.understanding_model,
            temperature=settings.understanding_temperature,
        ),
        policy=RetrievalPolicy.from_settings(settings),
        timeout_seconds=settings.external_call_timeout_seconds,
    )
    generator = AnswerGenerator(
        model_client,
        telemetry=QueryLogSink(
            session_factory,
            timeout_seconds=settings.external_call_timeout_seconds,
        ),
        settings=settings,
    )

    app.state.chat_service = ChatService(
        engine,
        generator,
        session_factory=session_factory,
        metrics=metrics,
        max_query_chars=settings.max_query_chars,
    )
    app.state.knowledge_service = KnowledgeService(session_factory, embedder)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    # Startup
    configure_logging(settings.log_level)
    if settings.auto_create_tables:
        await create_tables()
    build_services(app, settings, metrics_backend)
    logger.info(f"{settings.app_name} {settings.app_version} started")
    yield
    # Shutdown
    await dispose_engine()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)

metrics_backend = get_metrics_backend()

# When allow_credentials=True, allow_origins cannot be ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware, metrics=metrics_backend)
setup_tracing(app, settings)

# Include API router
app.include_router(api_router, prefix=settings.api_prefix)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> PlainTextResponse:
    """Prometheus-style metrics endpoint."""
    return PlainTextResponse(metrics_backend.render_prometheus())
