"""
Error kinds raised by the market core.

Every component raises one of these; the exception handler installed by
``install_error_handlers`` is the only place they become HTTP responses.
"""

import logging
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode:
    """Machine-readable error codes returned to clients."""

    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    AUTH_MISMATCH = "AUTH_MISMATCH"
    BAD_REQUEST = "BAD_REQUEST"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    RESOURCE_NOT_BIDDABLE = "RESOURCE_NOT_BIDDABLE"
    BID_BELOW_FLOOR = "BID_BELOW_FLOOR"
    BID_NOT_COMPETITIVE = "BID_NOT_COMPETITIVE"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"


class MarketError(Exception):
    """Base class for every error the market core signals."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = ErrorCode.INTERNAL

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthMissing(MarketError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = ErrorCode.AUTH_MISSING

    def __init__(self, message: str = "missing token"):
        super().__init__(message)


class AuthInvalid(MarketError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = ErrorCode.AUTH_INVALID

    def __init__(self, message: str = "invalid username or password"):
        super().__init__(message)


class AuthMismatch(MarketError):
    """The caller is authenticated but does not own the target."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = ErrorCode.AUTH_MISMATCH


class BadRequest(MarketError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = ErrorCode.BAD_REQUEST


class NotFound(MarketError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = ErrorCode.NOT_FOUND


class InsufficientCredits(MarketError):
    """A placement would commit more credits than the user holds."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED
    error_code = ErrorCode.INSUFFICIENT_CREDITS

    def __init__(self, available: float, attempted: float):
        self.available = available
        self.attempted = attempted
        super().__init__(
            "insufficient credits to place bid, only %.2f credits available "
            "and your total bid amount is %.2f" % (available, attempted)
        )


class PreconditionFailed(MarketError):
    status_code = status.HTTP_412_PRECONDITION_FAILED
    error_code = ErrorCode.PRECONDITION_FAILED


class ResourceNotBiddable(PreconditionFailed):
    error_code = ErrorCode.RESOURCE_NOT_BIDDABLE


class BidBelowFloor(PreconditionFailed):
    error_code = ErrorCode.BID_BELOW_FLOOR

    def __init__(self, message: str = "bid amount is less than the resource cost per minute"):
        super().__init__(message)


class BidNotCompetitive(PreconditionFailed):
    error_code = ErrorCode.BID_NOT_COMPETITIVE

    def __init__(self, message: str = "existing bid is better or equal"):
        super().__init__(message)


class Internal(MarketError):
    """Store failure or invariant violation. The message never reaches clients."""


class InternalStoreFailure(Internal):
    pass


async def market_error_handler(request: Request, exc: MarketError) -> JSONResponse:
    """Map a MarketError to its HTTP status and a JSON body."""
    if isinstance(exc, Internal):
        error_id = uuid.uuid4().hex
        logger.error("Internal error %s on %s: %s", error_id, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error_code": exc.error_code,
                "detail": "internal server error",
                "error_id": error_id,
            },
        )

    logger.info("%s on %s: %s", exc.error_code, request.url.path, exc.message)
    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error_code": exc.error_code, "detail": exc.message},
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and parameters are plain bad requests."""
    errors = exc.errors()
    detail = "; ".join(
        "%s: %s" % (".".join(str(part) for part in error.get("loc", ())), error.get("msg", "invalid"))
        for error in errors
    )
    logger.info("Invalid request on %s: %s", request.url.path, detail)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error_code": ErrorCode.BAD_REQUEST, "detail": detail or "invalid request"},
    )


def install_error_handlers(app: FastAPI):
    """Register the MarketError and validation handlers on an application."""
    app.add_exception_handler(MarketError, market_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
