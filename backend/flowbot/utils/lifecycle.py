# /flowbot/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from flowbot.utils.logging import setup_logging
from flowbot.services.cache_service import cache_service
from flowbot.services.http_service import external_api_client
from flowbot.services.project_service import project_repository
from flowbot.services import whatsapp_service

# Startup and shutdown of the shared clients.

logger = logging.getLogger(__name__)


async def shutdown_clients():
    await whatsapp_service.http_client.aclose()
    await external_api_client.close()
    await cache_service.close()
    project_repository.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    await project_repository.create_indexes()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    await shutdown_clients()
