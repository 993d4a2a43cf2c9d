"""Custom exception handlers for FastAPI application"""

from typing import Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from lab_platform.core.exceptions import LabPlatformError
from lab_platform.core.logging_config import get_logger


logger = get_logger(__name__)


async def lab_platform_exception_handler(
    request: Request,
    exc: LabPlatformError
) -> JSONResponse:
    """
    Handle every engine error.

    Client-side outcomes (4xx) log at warning, engine failures at error with
    the traceback.
    """
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "lab_platform_error_handled",
        request_path=request.url.path,
        request_method=request.method,
        error_code=exc.error_code,
        layer=exc.layer,
        message=exc.message,
        error_details=exc.details,
        exc_info=exc.status_code >= 500
    )

    headers = {}
    if exc.retryable:
        headers["Retry-After"] = "1"

    content = exc.get_api_response()
    content["timestamp"] = exc.timestamp.isoformat()
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError]
) -> JSONResponse:
    """Field-level detail for request validation failures"""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    logger.info(
        "request_validation_failed",
        request_path=request.url.path,
        request_method=request.method,
        errors=errors
    )

    return JSONResponse(
        status_code=422,
        content={
            "detail": "Request validation failed",
            "type": "validation_error",
            "errors": errors
        }
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LabPlatformError, lab_platform_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
