"""
Error taxonomy shared by the HTTP and socket surfaces, plus the FastAPI
exception handlers that render it.

Every error raised by the coordination core derives from LifeStreamError and
carries a stable ``code`` and the HTTP status used when it crosses the HTTP
boundary. The socket dispatcher turns the same errors into named error events
for the originating session.
"""
import logging
from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class LifeStreamError(Exception):
    code = "ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"message": self.message, "code": self.code}


# Authentication: bad/missing/expired credential

class AuthenticationError(LifeStreamError):
    code = "AUTHENTICATION_FAILED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Could not validate credentials"


class MissingCredentialError(AuthenticationError):
    code = "MISSING_CREDENTIAL"
    default_message = "Access token required"


class InvalidCredentialError(AuthenticationError):
    code = "INVALID_CREDENTIAL"
    default_message = "Invalid access token"


class ExpiredCredentialError(AuthenticationError):
    code = "EXPIRED_CREDENTIAL"
    default_message = "Access token has expired"


class UnknownIdentityError(AuthenticationError):
    code = "UNKNOWN_IDENTITY"
    default_message = "User account not found"


# Authorization: authenticated but not permitted

class AuthorizationError(LifeStreamError):
    code = "UNAUTHORIZED"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not permitted"


class AccessDeniedError(AuthorizationError):
    code = "ACCESS_DENIED"
    default_message = "Access denied to this conversation"


# Validation: missing or malformed input, rejected before any store access

class ValidationError(LifeStreamError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid payload"


class EmptyMessageError(ValidationError):
    code = "EMPTY_MESSAGE"
    default_message = "Message text cannot be empty"


class NotFoundError(LifeStreamError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class InvalidDonorError(NotFoundError):
    code = "INVALID_DONOR"
    default_message = "Invalid donor or donor has not responded to this request"


class ConflictError(LifeStreamError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflicting state change"


class DuplicateResponseError(ConflictError):
    code = "DUPLICATE_RESPONSE"
    default_message = "You have already responded to this request"


class InvalidStateError(ConflictError):
    code = "INVALID_STATE"
    default_message = "Request is no longer active"


class PersistenceError(LifeStreamError):
    code = "PERSISTENCE_ERROR"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Storage unavailable"


def _error_body(message: str, code: str, request: Request) -> dict:
    body = {"status": "error", "message": message, "code": code}
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        body["request_id"] = request_id
    return body


async def lifestream_exception_handler(request: Request, exc: LifeStreamError):
    if isinstance(exc, PersistenceError):
        logger.error(f"Persistence failure on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.message, exc.code, request),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail), "HTTP_ERROR", request),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
        for err in errors
    ) or "Invalid payload"
    body = _error_body(message, ValidationError.code, request)
    body["errors"] = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in errors]
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("Internal server error", "INTERNAL_ERROR", request),
    )
