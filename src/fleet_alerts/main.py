"""
FastAPI application entry point for the fleet alerting service.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from fleet_alerts.api.alerts import router as alerts_router
from fleet_alerts.api.telemetry import router as telemetry_router
from fleet_alerts.database.connection import DatabaseManager, initialize_database, shutdown_database
from fleet_alerts.runtime import AlertingRuntime
from fleet_alerts.utils.config import Settings, get_settings
from fleet_alerts.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

VERSION = "1.0.0"


def create_app(settings: Optional[Settings] = None, db: Optional[DatabaseManager] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings override; defaults to the cached environment settings
        db: Database manager override; a fresh manager is created otherwise
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown with database and alerting lifecycle."""
        logger.info("Starting fleet alerting service...")
        start_time = datetime.now()

        manager = initialize_database(db or DatabaseManager(), settings.DATABASE_URL)
        runtime = AlertingRuntime.build(settings, manager)
        app.state.runtime = runtime
        await runtime.start()
        logger.info(f"Server started successfully at: {start_time}")

        yield  # App runs here

        logger.info("Shutting down fleet alerting service...")
        try:
            await runtime.stop()
        finally:
            shutdown_database(manager)

    app = FastAPI(
        title="Fleet Alerts",
        description="Telemetry-driven alert detection for fleet vehicles",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "message": "Fleet Alerts API",
            "version": VERSION,
            "documentation": "/docs",
            "health": "/health",
            "endpoints": {
                "ingest": "POST /api/v1/telemetry - Store a telemetry sample and run live alert detection",
                "evaluate": "POST /api/v1/telemetry/evaluate - Evaluate a sample without storing it",
                "alerts": "GET /api/v1/alerts - Alerts, newest first",
                "sweep": "POST /api/v1/alerts/sweep - Re-scan recent samples for alerts",
            },
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        runtime: AlertingRuntime = request.app.state.runtime
        db_health = runtime.db.health_check()
        return {
            "status": "healthy" if db_health["status"] == "healthy" else "degraded",
            "timestamp": datetime.now().isoformat(),
            "service": "fleet-alerts",
            "version": VERSION,
            "database": {
                "status": db_health["status"],
                "connection_pool": db_health.get("connection_pool"),
            },
            "live_subscription": {
                "running": runtime.live.running,
                **runtime.live.stats,
            },
            "sweep_scheduler": {
                "running": runtime.scheduler.running if runtime.scheduler else False,
                "sweeps_run": runtime.scheduler.sweeps_run if runtime.scheduler else 0,
            },
            "cooldown_seconds": runtime.settings.ALERT_COOLDOWN_SECONDS,
        }

    app.include_router(telemetry_router, prefix="/api/v1", tags=["Telemetry"])
    app.include_router(alerts_router, prefix="/api/v1", tags=["Alerts"])

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    logger.info("Starting Fleet Alerts API server...")

    try:
        uvicorn.run(
            "fleet_alerts.main:create_app",
            factory=True,
            host=settings.API_HOST,
            port=settings.API_PORT,
            workers=settings.API_WORKERS,
            log_level=settings.LOG_LEVEL.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    run()
