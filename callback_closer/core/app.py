"""
FastAPI application factory.
Creates and configures the main FastAPI application instance.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from callback_closer.config.settings import settings, validate_settings
from callback_closer.core.logging import setup_logging
from callback_closer.api.routes import stripe_routes, twilio_routes
from callback_closer.db.database import init_db

# Set up logging
setup_logging()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured application instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Validate configuration and create tables before serving webhooks.

        A bad production configuration stops startup.
        """
        logger = logging.getLogger(__name__)

        validate_settings()
        await init_db()
        logger.info(f"{settings.app_name} started (environment={settings.environment})")
        yield
        logger.info(f"{settings.app_name} shutting down")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Missed-call SMS follow-up webhooks",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # Include routers
    app.include_router(twilio_routes.router)
    app.include_router(stripe_routes.router)

    return app


# Create the application instance
app = create_app()
