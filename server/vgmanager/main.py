"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .api.routes import API_VERSION, router
from .core.config import settings
from .services.manager import volume_group_manager
from .services.notification_service import notification_service
from .services.websocket_service import websocket_manager

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting %s", settings.app_name)
    logger.info("Debug mode: %s", settings.debug)
    logger.info("Inventory helper: %s", settings.lvm_helper_command)

    jobs = volume_group_manager.context.jobs
    notifications_started = False
    jobs_started = False
    manager_started = False

    try:
        await notification_service.start()
        notifications_started = True
        notification_service.set_websocket_manager(websocket_manager)

        await jobs.start()
        jobs_started = True

        await volume_group_manager.start()
        manager_started = True
        logger.info("Application services initialised; discovery continues in the background")

        yield
    finally:
        logger.info("Shutting down application")
        if manager_started:
            await volume_group_manager.stop()
        if jobs_started:
            await jobs.stop()
        if notifications_started:
            await notification_service.stop()
        logger.info("Application stopped")


app = FastAPI(
    title=settings.app_name,
    version=API_VERSION,
    description="Volume group management service for LVM",
    lifespan=lifespan,
)

app.include_router(router)


def main():
    """Run the application."""
    uvicorn.run(
        "vgmanager.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="debug" if settings.debug else "info",
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
