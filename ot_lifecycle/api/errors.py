"""Maps service refusals onto HTTP responses."""
import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ot_lifecycle.services.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    WorkOrderError,
    WorkOrderValidationError,
)

logger = logging.getLogger(__name__)


def status_code_for(error: WorkOrderError) -> int:
    if isinstance(error, WorkOrderValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, ForbiddenError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, InvalidStateError):
        # INVALID_STATE, NOT_ASSIGNED, RETURN_TO_PRODUCTION_REQUIRED, CONFLICT
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


async def work_order_error_handler(request: Request, exc: WorkOrderError) -> JSONResponse:
    code = status_code_for(exc)
    logger.info(f"{request.method} {request.url.path} refused with {code} {exc.kind}")
    return JSONResponse(status_code=code, content=exc.to_dict())


def _field_name(loc) -> str:
    # ("body", "eta") -> "eta"; ("header", "x-user-id") -> "x-user-id"
    if loc and loc[0] in ("body", "query", "path", "header"):
        loc = loc[1:]
    return ".".join(str(p) for p in loc) or "body"


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request bodies FastAPI cannot parse get the same VALIDATION body as service refusals."""
    error = WorkOrderValidationError(
        "Invalid request",
        errors=[{"field": _field_name(e.get("loc", ())), "message": e.get("msg", "is invalid")} for e in exc.errors()],
    )
    return await work_order_error_handler(request, error)
