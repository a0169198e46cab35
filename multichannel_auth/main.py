"""
FastAPI application entry point

Run with: uvicorn multichannel_auth.main:app
"""
import logging
import sys
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

# Load environment variables from .env before settings are read
load_dotenv()

from . import __version__  # noqa: E402
from .container import Container  # noqa: E402
from .core.config import settings  # noqa: E402
from .exception_handlers import register_exception_handlers  # noqa: E402
from .lifespan import lifespan  # noqa: E402
from .middleware.logging import LoggingMiddleware  # noqa: E402
from .middleware.rate_limit import RateLimitMiddleware  # noqa: E402
from .routers import auth, health, orders, webhooks  # noqa: E402

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    Build the application.

    Args:
        container: Pre-built services (tests); built from settings at startup otherwise
    """
    app = FastAPI(title="Multichannel Auth", version=__version__, lifespan=lifespan)
    if container is not None:
        app.state.container = container

    # Last added runs first: logging wraps rate limiting
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(LoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(orders.router)
    app.include_router(webhooks.router)

    return app


app = create_app()
