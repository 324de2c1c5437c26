"""Map exceptions escaping API routes to structured JSON errors."""
from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.errors import NotFoundError, TileCadError

logger = logging.getLogger("tilecad.api.errors")

ERROR_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}


class ErrorResponse(BaseModel):
    """Body of every error the API returns."""

    error: str = Field(..., description="Exception class name")
    detail: str = Field(..., description="Human-readable message")
    code: str = Field(..., description="Machine-readable code")
    status_code: int


def error_code(status_code: int) -> str:
    return ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _respond(exc: Exception, detail: str, status_code: int) -> JSONResponse:
    body = ErrorResponse(
        error=type(exc).__name__,
        detail=detail,
        code=error_code(status_code),
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _respond(exc, str(exc.detail), exc.status_code)


async def pipeline_exception_handler(request: Request, exc: TileCadError) -> JSONResponse:
    """Unknown resources are 404; any other pipeline failure is an upstream 502."""
    if isinstance(exc, NotFoundError):
        return _respond(exc, str(exc), status.HTTP_404_NOT_FOUND)
    logger.warning(
        "pipeline error in request",
        extra={"path": request.url.path, "error": str(exc), "upstream_status": exc.status_code},
    )
    return _respond(exc, str(exc), status.HTTP_502_BAD_GATEWAY)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled exception", extra={"path": request.url.path}, exc_info=exc)
    return _respond(exc, "An internal error occurred", status.HTTP_500_INTERNAL_SERVER_ERROR)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(TileCadError, pipeline_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
