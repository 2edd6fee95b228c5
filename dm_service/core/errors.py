import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


RECIPIENT_NOT_REGISTERED_MESSAGE = (
    "This user has not joined the site yet. They need to finish registering "
    "before you can send them messages."
)


class AppError(Exception):
    """Base error translated to ``{"error": tag, "message": text}`` at the request boundary."""

    status_code = 400
    error = "AppError"

    def __init__(self, message: str, status_code: Optional[int] = None, **extra: Any):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message, **self.extra}


class Unauthenticated(AppError):
    status_code = 401
    error = "Unauthenticated"


class AccessDenied(AppError):
    status_code = 403
    error = "AccessDenied"


class ValidationFailed(AppError):
    status_code = 400
    error = "ValidationError"


class NotFound(AppError):
    status_code = 404
    error = "NotFound"


class RecipientNotRegistered(AppError):
    status_code = 400
    error = "RecipientNotRegistered"

    def __init__(self, recipient_id: str, message: str = RECIPIENT_NOT_REGISTERED_MESSAGE):
        super().__init__(message, recipientId=recipient_id, userRegistered=False)
        self.recipient_id = recipient_id


class InternalError(AppError):
    """Backing-store failure. Details stay in the server log."""

    status_code = 500
    error = "InternalError"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "InternalError", "message": "Internal server error"}


class DirectoryUnavailable(InternalError):
    pass


class StoreUnavailable(InternalError):
    pass


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if isinstance(exc, InternalError):
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        else:
            logger.info("%s on %s %s: %s", exc.error, request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "ValidationError", "message": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": "HTTPError", "message": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "InternalError", "message": "Internal server error"})
