import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..container import Container
from ..dependencies import get_container

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(container: Container = Depends(get_container)):
    try:
        await container.store.ping()
    except Exception as e:
        logger.error(f"Health check failed: store unreachable: {e}")
        return JSONResponse(status_code=503, content={"ok": False, "store": "unreachable"})

    return {
        "ok": True,
        "store": "ok",
        "sms_providers": [p.name for p in container.sms_service.providers],
        "oauth_providers": container.oauth.list_providers(),
        "sms_queue": await container.sms_queue.counts(),
    }
