"""
Asset Forge - FastAPI Backend
Admin API for generating, approving and publishing game art.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    assets,
    configurations,
    composites,
)
from services.job_queue import recover_stalled_generations, recover_stalled_pipeline_runs


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Asset Forge API...")
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_pipeline_runs(settings.PIPELINE_LEASE_MINUTES)
        if recovered:
            print(f"♻️ Recovered {recovered} stalled pipeline runs after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled pipeline recovery skipped: {exc}")
    try:
        recovered_generations = await recover_stalled_generations(settings.GENERATION_STALL_MINUTES)
        if recovered_generations:
            print(f"♻️ Recovered {recovered_generations} stalled generations after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled generation recovery skipped: {exc}")
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Asset Forge API",
    description="Generate, review and publish game art assets",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers; configurations first so its two-segment paths never reach /assets/{asset_id}
app.include_router(health.router, tags=["Health"])
app.include_router(configurations.router, prefix="/assets/configurations", tags=["Configurations"])
app.include_router(assets.router, prefix="/assets", tags=["Assets"])
app.include_router(composites.router, prefix="/composites", tags=["Composites"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Asset Forge API",
        "version": "0.1.0",
        "status": "running"
    }
