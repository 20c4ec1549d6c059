import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("vibecoder.errors")


class AppError(Exception):
    """Operational error whose message is safe to show to the client."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class Unauthenticated(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class InvalidInput(AppError):
    status_code = 400


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class SignatureInvalid(AppError):
    status_code = 400


class UpstreamFailure(AppError):
    status_code = 502


class StreamFailure(AppError):
    status_code = 500


def _error_body(message) -> dict:
    return {"success": False, "error": message}


def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.warning(
            "AppError %s path=%s: %s", exc.status_code, request.url.path, exc.message
        )
    else:
        logger.info("AppError %s path=%s", exc.status_code, request.url.path)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message))


def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # exc.detail is intended for clients; don't log it, it may echo input.
    logger.info("HTTPException %s path=%s", exc.status_code, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.detail),
        headers=getattr(exc, "headers", None),
    )


def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info("ValidationError path=%s", request.url.path)
    fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
    fields = [f for f in fields if f]
    message = "Invalid request"
    if fields:
        message = f"Invalid request: {', '.join(sorted(set(fields)))}"
    return JSONResponse(status_code=400, content=_error_body(message))


def unhandled_exception_handler(request: Request, exc: Exception):
    # Log stack trace server-side, but return generic message client-side.
    logger.exception("UnhandledException path=%s", request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Internal Server Error"))
