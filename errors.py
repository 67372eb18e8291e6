"""
Error taxonomy for the BookNest API.

Every error raised by the managers is an APIError subclass carrying a stable
``kind`` and an HTTP status. ``register_error_handlers`` renders them as

    {"success": false, "kind": "...", "message": "...", "errors": [...]}
"""
import logging
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure
from slowapi.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class APIError(Exception):
    kind = "APIError"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[dict]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"success": False, "kind": self.kind, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(APIError):
    kind = "ValidationError"
    status_code = 400
    default_message = "Validation failed"


class DuplicateError(APIError):
    kind = "DuplicateError"
    status_code = 409
    default_message = "Resource already exists"


class InvalidCredential(APIError):
    kind = "InvalidCredential"
    status_code = 401
    default_message = "Invalid credentials"


class ExpiredCredential(APIError):
    kind = "ExpiredCredential"
    status_code = 401
    default_message = "Token expired. Please login again."


class UnknownPrincipal(APIError):
    kind = "UnknownPrincipal"
    status_code = 404
    default_message = "User not found. Please register first."


class Forbidden(APIError):
    status_code = 403
    default_message = "Access denied"


class InsufficientRole(Forbidden):
    kind = "InsufficientRole"


class NotOwner(Forbidden):
    kind = "NotOwner"


class InvalidState(Forbidden):
    kind = "InvalidState"


class NotEligible(APIError):
    kind = "NotEligible"
    status_code = 403
    default_message = "You can only review books you have ordered and received"


class InvalidTransition(APIError):
    kind = "InvalidTransition"
    status_code = 409
    default_message = "Invalid status transition"


class NotFound(APIError):
    kind = "NotFound"
    status_code = 404
    default_message = "Resource not found"


class PaymentMismatch(APIError):
    kind = "PaymentMismatch"
    status_code = 400
    default_message = "Payment does not match order"


class RateLimited(APIError):
    kind = "RateLimited"
    status_code = 429
    default_message = "Too many requests, please try again later."


class Unavailable(APIError):
    kind = "Unavailable"
    status_code = 503
    default_message = "Service unavailable"


def field_errors(exc) -> List[dict]:
    """Flatten pydantic / FastAPI validation errors to [{field, message}]."""
    out = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        out.append({"field": ".".join(loc) or None, "message": err.get("msg")})
    return out


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def handle_api_error(request: Request, exc: APIError):
        if exc.status_code >= 500:
            logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        err = ValidationError(errors=field_errors(exc))
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(ConnectionFailure)
    async def handle_db_down(request: Request, exc: ConnectionFailure):
        logger.error(f"Database unreachable: {str(exc)[:80]}")
        err = Unavailable("Database unavailable")
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(RateLimitExceeded)
    async def handle_rate_limit(request: Request, exc: RateLimitExceeded):
        logger.warning(f"Rate limit hit on {request.method} {request.url.path}: {exc.detail}")
        err = RateLimited()
        return JSONResponse(status_code=err.status_code, content=err.to_dict())
