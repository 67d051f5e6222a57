from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from oceanctl.api.middleware import AuthMiddleware
from oceanctl.api.routes import autoscaler, clusters
from oceanctl.logging import setup_logger
from oceanctl.modules.errors import (
    ClusterConflictError,
    ClusterNotFound,
    ConfigurationError,
    NotImplementedByProvider,
    OceanError,
)

load_dotenv()
logger = setup_logger("oceanctl.api")

app = FastAPI(title="oceanctl")
app.add_middleware(AuthMiddleware)

app.include_router(clusters.router)
app.include_router(autoscaler.router)


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.exception_handler(OceanError)
async def ocean_error_handler(request: Request, exc: OceanError):
    status_code = 500
    body = {"detail": str(exc)}
    if isinstance(exc, ClusterNotFound):
        status_code = 404
    elif isinstance(exc, ClusterConflictError):
        status_code = 409
    elif isinstance(exc, ConfigurationError):
        status_code = 400
    elif isinstance(exc, NotImplementedByProvider):
        status_code = 501
        body["code"] = NotImplementedByProvider.code
    else:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=body)
