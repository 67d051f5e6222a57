from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from oceanctl.config import get_config

OPEN_PATHS = ("/docs", "/openapi.json", "/healthz")


class AuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, token: str = None):
        super().__init__(app)
        self.token = token

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(OPEN_PATHS):
            return await call_next(request)

        token = self.token or get_config().api.api_key
        if request.headers.get("X-API-Key") != token:
            return JSONResponse(status_code=403, content={"detail": "Unauthorized"})
        return await call_next(request)
