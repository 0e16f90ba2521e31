from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import Settings, settings as default_settings
from app.core.logger import get_logger, set_log_level
from app.llm.api.handler import LLMHandler
from app.llm.api.route import llm_router
from app.llm.service.provider.base_provider import BaseProvider
from app.llm.service.provider_factory import create_provider
from app.web.static_route import build_static_router

logger = get_logger("translator-gateway")


def create_app(settings: Optional[Settings] = None, provider: Optional[BaseProvider] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The provider is constructed here, not lazily, so a missing credential
    (ConfigurationError) stops the process before it starts serving.
    """
    settings = settings or default_settings
    set_log_level(settings.LOG_LEVEL)

    if provider is None:
        try:
            provider = create_provider(settings)
        except Exception as e:
            logger.error(f"✗ Startup failed: {e}")
            raise

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.APP_NAME} starting up...")
        logger.info(f"LLM Provider: {provider.display_name.upper()}")
        logger.info(f"Static files: {settings.DIST_DIR}")
        if settings.TEST_MODE:
            logger.warning("TEST MODE ENABLED - All API requests will be intercepted")
        yield
        logger.info(f"{settings.APP_NAME} shutting down...")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Ollama-compatible gateway for local and cloud LLM backends",
        version="1.0.0",
        lifespan=lifespan,
    )

    origins = settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if origins == ["*"] else origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Expose on app.state for dependencies
    app.state.settings = settings
    app.state.llm_handler = LLMHandler(
        provider,
        test_mode=settings.TEST_MODE,
        passthrough=settings.OLLAMA_PASSTHROUGH,
    )

    @app.get("/health")
    async def health():
        """Service status and active provider."""
        return {
            "status": "ok",
            "service": settings.APP_NAME,
            "provider": provider.name,
            "test_mode": settings.TEST_MODE,
        }

    app.include_router(llm_router)
    # Catch-all GET, keep last
    app.include_router(build_static_router(settings.DIST_DIR))

    return app
