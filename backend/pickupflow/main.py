"""PickupFlow - pickup request lifecycle API"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pickupflow.core.config import get_settings
from pickupflow.core.logging import configure_logging, logger
from pickupflow.routers import requests


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    logger.info(
        "PickupFlow API starting",
        version="0.1.0",
        db_path=settings.db_path,
        auth_enabled=settings.auth_enabled,
    )
    yield
    logger.info("PickupFlow API shutting down")


app = FastAPI(
    title="PickupFlow API",
    description="Pickup request lifecycle: assignment, courier work, finalization and audit",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(requests.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "PickupFlow API",
        "version": "0.1.0",
        "endpoints": {
            "requests": "/pickup/requests",
            "assignments": "/pickup/assignments",
            "processed": "/pickup/processed",
            "changes": "/pickup/changes",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
