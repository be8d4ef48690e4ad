import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("expense_tracker.errors")


class AppError(Exception):
    """Base for errors that map onto a structured HTTP response."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "server_error"
    default_message = "An unexpected error occurred. Please try again later."

    def __init__(self, message: str = None, details=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details


class InvalidInput(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_input"
    default_message = "One or more required fields are missing or malformed."


class DuplicateIdentity(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "duplicate_identity"
    default_message = "Username or email already exists. Please choose a different username or email address."


class Unauthenticated(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"
    default_message = "Authentication is required."


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_message = "The requested resource could not be found."


class NotFoundOrUnauthorized(NotFound):
    # Absence and foreign ownership share one response
    default_message = "Expense not found or not authorized."


class StorageError(AppError):
    pass


def _error_body(request: Request, code: str, message: str, details=None) -> dict:
    body = {"error": code, "message": message}
    if details is not None and request.app.state.settings.debug:
        body["details"] = details
    return body


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.details or exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.code, exc.message, exc.details),
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        if loc:
            fields.append(".".join(loc))
    message = InvalidInput.default_message
    if fields:
        message = f"Missing or malformed field(s): {', '.join(dict.fromkeys(fields))}."
    details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content=_error_body(request, InvalidInput.code, message, details),
    )


async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=StorageError.status_code,
        content=_error_body(request, StorageError.code, StorageError.default_message, str(exc)),
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
