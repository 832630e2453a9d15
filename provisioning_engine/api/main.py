import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from provisioning_engine.api.routes.applications import router as applications_router
from provisioning_engine.api.routes.domains import router as domains_router
from provisioning_engine.api.routes.hosts import router as hosts_router
from provisioning_engine.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ProvisioningError,
    RemoteExecutionError,
    ValidationError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Provisioning Engine API")


def status_for(error: ProvisioningError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (ConflictError, InvalidStateError)):
        return 409
    if isinstance(error, RemoteExecutionError):
        return 502
    return 500


@app.exception_handler(ProvisioningError)
async def provisioning_error_handler(request: Request, error: ProvisioningError):
    status_code = status_for(error)
    if status_code == 500:
        logger.error(f"[api] {request.method} {request.url.path} failed: {error}", exc_info=error)

    body = {"detail": str(error), "error_type": type(error).__name__}
    if isinstance(error, ValidationError) and error.missing_params:
        body["missing_params"] = error.missing_params
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(hosts_router)
app.include_router(domains_router)
app.include_router(applications_router)
