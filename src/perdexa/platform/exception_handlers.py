"""
Exception handlers translating platform errors into JSON responses.
"""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from perdexa.platform.exceptions import PerdexaError

logger = structlog.get_logger(__name__)


async def perdexa_error_handler(request: Request, exc: PerdexaError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request.failed",
            path=request.url.path,
            error_code=exc.error_code,
            message=exc.message,
        )
    else:
        logger.info(
            "request.rejected",
            path=request.url.path,
            error_code=exc.error_code,
            status_code=exc.status_code,
        )
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "message": "Invalid input",
            "status_code": 422,
            "context": {"errors": details},
        },
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("request.conflict", path=request.url.path, error=str(exc.orig))
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "conflict", "message": "Resource already exists", "status_code": 409},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request.unhandled_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "server_error", "message": "Unexpected error", "status_code": 500},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PerdexaError, perdexa_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)


__all__ = ["register_exception_handlers"]
