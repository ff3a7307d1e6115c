# main.py
"""Main application: wires services at startup and runs the job drain loop"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from config import settings
from services.logger_config import setup_logging
from database.session import init_models
from api.endpoints import router
from services.factory import build_services

setup_logging()
logger = logging.getLogger(settings.LOGGER_NAME)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting application...")

    # Database initialization
    await init_models()
    logger.info("Database initialized")

    services = build_services()
    app.state.services = services
    services.job_queue.start(settings.JOB_DRAIN_INTERVAL_SECONDS)
    logger.info("Services initialized")
    yield

    # Stop the drain loop after any in-flight batch finishes
    logger.info("Shutting down job queue...")
    await services.job_queue.stop()

    logger.info("Application shutdown complete")

app = FastAPI(
    title=settings.APP_TITLE,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

app.include_router(router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
