"""Maps domain errors onto HTTP responses with a normalized JSON body."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from booking_engine.domain.exceptions import (
    BadGatewayError,
    BadRequestError,
    BookingEngineError,
    ConflictError,
    NotFoundError,
)


logger = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (BadRequestError, status.HTTP_400_BAD_REQUEST),
    (BadGatewayError, status.HTTP_502_BAD_GATEWAY),
)


def status_for(exc: BookingEngineError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(BookingEngineError)
    async def domain_exception_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        messages = []
        for error in exc.errors():
            location = [str(loc) for loc in error.get("loc", []) if loc != "body"]
            message = error.get("msg", "Invalid input")
            if location:
                messages.append(f"{'.'.join(location)}: {message}")
            else:
                messages.append(message)

        detail = "; ".join(messages) if messages else "Invalid request"
        return JSONResponse(status_code=422, content={"detail": detail})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled exception while processing %s %s", request.method, request.url
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


__all__ = ["register_exception_handlers", "status_for"]
