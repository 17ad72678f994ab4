from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from parley.bootstrap import Container, build_container
from parley.infrastructure.config.settings import get_settings
from parley.infrastructure.observability.logging import metrics, setup_logging
from .route import costs, messages, prompt_tests, respond
from .schema.messages import HealthResponse

logger = structlog.get_logger(__name__)


def create_app(container: Optional[Container] = None) -> FastAPI:
    """Build the HTTP service around an engine container"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is None:
            settings = get_settings()
            log = settings.logging
            setup_logging(log.level, log.format, log.service_name, log.environment)
            app.state.container = build_container(settings)
        logger.info("api_server_started")
        yield
        await app.state.container.close()
        logger.info("api_server_stopped")

    app = FastAPI(title="Parley", lifespan=lifespan)
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("request_failed", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal error"})

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        engine: Container = request.app.state.container
        return HealthResponse(
            metrics=metrics.get_metrics_summary(),
            vector_cache=engine.vector_cache.get_stats(),
            context_cache=await engine.context_manager.get_cache_stats(),
            circuit_breakers=[
                provider.breaker.get_stats()
                for provider in (engine.embedding_provider, engine.completion_provider)
                if hasattr(provider, "breaker")
            ]
        )

    app.include_router(respond.router)
    app.include_router(messages.router)
    app.include_router(costs.router)
    app.include_router(prompt_tests.router)

    return app


def main():
    uvicorn.run(create_app, factory=True, host="0.0.0.0", port=8000)
