"""
FastAPI application factory.

The lifespan builds the service container once (unless one was injected),
starts the re-embedding scheduler and stops it on shutdown.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import load_settings
from ..container import ServiceContainer, build_container
from ..utils.errors import AuthError, RagError, RateLimitError
from ..utils.logger import get_logger
from .auth import RateLimiter
from .routes import router

logger = get_logger(__name__)


async def rag_error_handler(request: Request, exc: RagError) -> JSONResponse:
    """Render a RagError as {"success": false, "error", "detail"}."""
    headers = {}
    if isinstance(exc, AuthError):
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.kind, "detail": exc.user_message},
        headers=headers,
    )


def create_app(
    container: Optional[ServiceContainer] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Create the API application.

    Args:
        container: Pre-built services; built from the environment if None
        start_scheduler: Whether the lifespan starts the interval trigger
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.container is None:
            settings = load_settings()
            app.state.container = build_container(settings)
            app.state.rate_limiter = RateLimiter(
                settings.query_rate_limit, settings.query_rate_window_seconds
            )

        scheduler = app.state.container.scheduler
        if start_scheduler:
            scheduler.start()
        yield
        await scheduler.stop()
        logger.info("API shut down")

    app = FastAPI(
        title="ChatGenius RAG API",
        description="Embedding ingestion and retrieval-augmented answers over chat history",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.container = container
    app.state.rate_limiter = None
    if container is not None:
        app.state.rate_limiter = RateLimiter(
            container.settings.query_rate_limit,
            container.settings.query_rate_window_seconds,
        )

    app.add_exception_handler(RagError, rag_error_handler)
    app.include_router(router)
    return app
