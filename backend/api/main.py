"""
FulfillOps API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("FulfillOps API starting up", version=settings.app_version)
    yield
    logger.info("FulfillOps API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Multi-tenant order-fulfillment backbone: carrier status ingestion, station routing, courier scoring",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import (
    audit_logs,
    couriers,
    dead_letters,
    shipments,
    stations,
    status_mappings,
)

app.include_router(shipments.router)
app.include_router(stations.router)
app.include_router(couriers.router)
app.include_router(status_mappings.router)
app.include_router(dead_letters.router)
app.include_router(audit_logs.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
