"""
Application lifespan management for startup and shutdown events
"""
import logging
from contextlib import asynccontextmanager

from .core.config import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    """Manage application lifespan events"""
    container = getattr(app.state, "container", None)
    if container is None:
        from .container import build_container
        container = build_container(get_settings())
        app.state.container = container

    # Startup
    logger.info(f"Starting multichannel auth service (ENV={container.settings.ENV})...")
    try:
        await container.startup()
        logger.info("Application startup completed successfully")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down multichannel auth service...")
    await container.shutdown()
    logger.info("Application shutdown completed successfully")


__all__ = ["lifespan"]
