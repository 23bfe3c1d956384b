"""Map commission errors onto HTTP responses."""

import logging

from fastapi import Request
from starlette.responses import JSONResponse

from app.services.commission.errors import CommissionError, NotFoundError

logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    "validation": 422,
    "state": 409,
    "transient": 503,
    "external": 502,
}


def status_for(exc: CommissionError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    return STATUS_BY_CATEGORY.get(exc.category, 500)


async def commission_error_handler(request: Request, exc: CommissionError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info("%s %s -> %s %s: %s", request.method, request.url.path, status_code,
                type(exc).__name__, exc.reason)
    headers = {"Retry-After": "30"} if status_code == 503 else None
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()}, headers=headers)
