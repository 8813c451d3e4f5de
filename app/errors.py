import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base for errors raised by services and mapped to an HTTP response."""

    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFoundError(AppError):
    status_code = 404


class InvalidStateError(AppError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 403


class ExternalServiceError(AppError):
    status_code = 502


class SignatureError(AppError):
    status_code = 400


class InternalError(AppError):
    status_code = 500


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message} {exc.context}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(AppError, app_error_handler)
