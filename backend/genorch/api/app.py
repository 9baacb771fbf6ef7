"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from genorch import __version__
from genorch.api.routes import router
from genorch.config import settings
from genorch.orchestrator.session import GenerationSession
from genorch.services.provider import get_provider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Create the shared generation session

    Shutdown:
        - Stop the reconciler and close the provider client
    """
    logger.info("Starting Generation Orchestrator API...")
    if not settings.provider.api_key:
        logger.warning("provider.api_key is not set; provider calls will be rejected")
    app.state.generation_session = GenerationSession(get_provider())
    logger.info("API startup complete")

    yield

    logger.info("Shutting down Generation Orchestrator API...")
    await app.state.generation_session.close()
    logger.info("API shutdown complete")


app = FastAPI(
    title="Generation Orchestrator API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )
