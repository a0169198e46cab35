from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.errors import RateLimitedError


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window rate limiting on the authentication endpoints"""

    def __init__(self, app, path_prefixes=("/api/auth/",)):
        super().__init__(app)
        self.path_prefixes = tuple(path_prefixes)

    def _get_client_id(self, request: Request) -> str:
        """Get client identifier for rate limiting"""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
        client_ip = request.client.host if request.client else "unknown"
        return f"ip:{client_ip}"

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        container = getattr(request.app.state, "container", None)
        if container is None or not path.startswith(self.path_prefixes):
            return await call_next(request)

        result = await container.rate_limiter.check(self._get_client_id(request), path)
        if not result.allowed:
            error = RateLimitedError("Too many requests. Please try again later.", retry_after=result.retry_after)
            return JSONResponse(status_code=429, content=error.to_dict(), headers=result.headers())

        response = await call_next(request)
        for name, value in result.headers().items():
            response.headers[name] = value
        return response
