"""
Match Rental Reconciler - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base, async_session_maker
import models  # noqa: F401
from routers import (
    health,
    rentals,
    billing,
    admin,
    jobs,
)
from services.accounts import reconcile_occupancy
from services.scheduler import start_sweep_tasks, stop_sweep_tasks

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Match Rental Reconciler API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.RECONCILE_OCCUPANCY_ON_STARTUP:
        try:
            async with async_session_maker() as session:
                repaired = await reconcile_occupancy(session)
            if any(repaired.values()):
                print(f"♻️ Occupancy reconciled after startup: {repaired}")
        except Exception as exc:
            print(f"⚠️ Occupancy reconciliation skipped: {exc}")
    sweep_tasks = start_sweep_tasks()
    if sweep_tasks:
        print(f"📅 {len(sweep_tasks)} sweep loop(s) enabled.")
    yield
    # Shutdown
    await stop_sweep_tasks(sweep_tasks)
    print("👋 Shutting down API...")


app = FastAPI(
    title="Match Rental Reconciler API",
    description="Account rentals billed by attributed matches",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(rentals.router, prefix="/rentals", tags=["Rentals"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Match Rental Reconciler API",
        "version": "0.1.0",
        "status": "running"
    }
