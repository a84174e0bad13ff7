# /flowbot/routes/public.py

from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from flowbot.config.settings import settings
from flowbot.services.cache_service import cache_service
from flowbot.services.project_service import project_repository
from flowbot.utils.dependencies import verify_metrics_access

# Unauthenticated service endpoints: root, health probes and the (optionally
# API-key protected) Prometheus scrape endpoint.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Flowbot WhatsApp Flow Runtime",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.utcnow()}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe checking the state store and the project database."""
    try:
        await project_repository.db.command("ping")
        if not await cache_service.ping():
            raise RuntimeError("Redis is not configured")
        return {"status": "ready"}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service not ready: {e}")


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
