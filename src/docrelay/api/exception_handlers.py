"""Custom exception handlers for FastAPI application.

Routers call result.unwrap() on engine results, which re-raises the domain exception
carried by an Err. The handlers below turn those into HTTP responses:

    ValidationError     -> 400
    EntityNotFoundError -> 404
    ConflictError       -> 409
    ExpiredError        -> 410
    RepositoryError     -> 500
    ConfigurationError  -> 503

Every error body has the same shape: {"detail": "<message>"}.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from docrelay.domain.exceptions import (
    ConfigurationError,
    ConflictError,
    EntityNotFoundError,
    ExpiredError,
    RepositoryError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# Hey future me - pydantic's exc.errors() can carry raw bytes and exception objects in
# "input"/"ctx", which are NOT JSON serializable. We only ever return loc + msg strings.
def _format_validation_errors(errors: list[dict[str, Any]]) -> str:
    parts: list[str] = []
    for error in errors:
        loc = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        msg = str(error.get("msg", "Invalid value"))
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid request"


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers for domain and request validation exceptions."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(
        request: Request, exc: ValidationError
    ) -> JSONResponse:
        logger.warning(
            "Validation error at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "error": exc.message},
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": exc.message},
        )

    @app.exception_handler(EntityNotFoundError)
    async def entity_not_found_handler(
        request: Request, exc: EntityNotFoundError
    ) -> JSONResponse:
        logger.info(
            "Not found at %s: %s %s",
            request.url.path,
            exc.entity_type,
            exc.entity_id,
            extra={"entity_type": exc.entity_type, "entity_id": str(exc.entity_id)},
        )
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": exc.message},
        )

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
        logger.warning("Conflict at %s: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": exc.message},
        )

    @app.exception_handler(ExpiredError)
    async def expired_handler(request: Request, exc: ExpiredError) -> JSONResponse:
        logger.info("Expired at %s: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=status.HTTP_410_GONE,
            content={"detail": exc.message},
        )

    @app.exception_handler(RepositoryError)
    async def repository_error_handler(
        request: Request, exc: RepositoryError
    ) -> JSONResponse:
        logger.error(
            "Storage failure at %s: %s",
            request.url.path,
            exc.message,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Storage failure, please retry"},
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        logger.error("Configuration error at %s: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": exc.message},
        )

    # Malformed bodies and path params are the caller's fault just like engine
    # validation failures, so they share the 400 status.
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        message = _format_validation_errors(list(exc.errors()))
        logger.warning(
            "Request validation error at %s: %s",
            request.url.path,
            message,
            extra={"path": request.url.path},
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": message},
        )
