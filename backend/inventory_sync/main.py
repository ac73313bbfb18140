"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from inventory_sync import __version__
from inventory_sync.api.v1.api import api_router
from inventory_sync.config import settings
from inventory_sync.database import SessionLocal, init_db
from inventory_sync.logging_config import configure_logging
from inventory_sync.services.sync_coordinator import build_sync_coordinator

configure_logging(settings.log_level)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    coordinator = build_sync_coordinator(settings, SessionLocal)
    app.state.sync_coordinator = coordinator
    coordinator.config_service.initialize_default_settings()
    await coordinator.start()
    log.info("Inventory sync engine started")
    try:
        yield
    finally:
        await coordinator.close()
        log.info("Inventory sync engine stopped")


app = FastAPI(
    title="Inventory Sync",
    description="Synchronization engine between the POS ledger and the inventory system",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__
    }


@app.get("/")
async def root():
    """Root endpoint - redirect to docs."""
    return {
        "message": "Inventory Sync API",
        "version": __version__,
        "docs": "/docs"
    }


app.include_router(api_router, prefix=settings.api_v1_str)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("inventory_sync.main:app", host="0.0.0.0", port=8000)
