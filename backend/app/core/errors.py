from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class AuthError(Exception):
    """Base class for failures returned to the client with a stable code."""

    code = "InternalError"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal server error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class MissingParameters(AuthError):
    code = "MissingParameters"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Missing parameters"


class MalformedMessage(AuthError):
    code = "MalformedMessage"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Malformed sign-in message"


class InvalidNonce(AuthError):
    code = "InvalidNonce"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Invalid, expired or reused nonce"


class InvalidSignature(AuthError):
    code = "InvalidSignature"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Invalid signature"


class VerificationUnavailable(AuthError):
    code = "VerificationUnavailable"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Signature verification is temporarily unavailable"


class InternalError(AuthError):
    pass


def error_body(exc: AuthError) -> dict:
    return {"ok": False, "error": exc.code, "detail": exc.detail}


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    detail = f"Missing or invalid parameters: {', '.join(fields)}" if fields else None
    return await auth_error_handler(request, MissingParameters(detail))
