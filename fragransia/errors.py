"""Exception handlers mapping domain and library errors to JSON responses."""
import jwt
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from firebase_admin import auth as firebase_auth
from google.api_core.exceptions import (
    Aborted,
    FailedPrecondition,
    GoogleAPICallError,
    InvalidArgument,
    NotFound,
    PermissionDenied,
)
from pydantic import ValidationError
from razorpay.errors import BadRequestError as RazorpayBadRequestError
from razorpay.errors import ServerError as RazorpayServerError

from .coupons import CouponRejected
from .logger import get_logger
from .security import RateLimitExceeded
from .shipping import ShippingError
from .store import DocumentExists, DocumentNotFound

logger = get_logger("errors")


def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "error": error, "message": message, **extra}),
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
                "message": err.get("msg"),
                "type": err.get("type"),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder({"success": False, "error": "Validation failed", "details": details}),
        )

    # Documents validated inside handlers (coupon bodies, stored coupons)
    @app.exception_handler(ValidationError)
    async def document_validation_error_handler(request: Request, exc: ValidationError):
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"], "type": err["type"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder({"success": False, "error": "Validation failed", "details": details}),
        )

    @app.exception_handler(DocumentExists)
    async def document_exists_handler(request: Request, exc: DocumentExists):
        return _error(409, "Already exists", str(exc))

    @app.exception_handler(CouponRejected)
    async def coupon_rejected_handler(request: Request, exc: CouponRejected):
        return _error(exc.status_code, exc.error, exc.message, code=exc.reason)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        logger.warning("Rate limit exceeded on %s from %s", request.url.path, request.client.host if request.client else "?")
        response = _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "Too many requests",
            str(exc),
            retryAfter=exc.retry_after,
        )
        response.headers["Retry-After"] = str(exc.retry_after)
        return response

    # Firebase ID token problems (session exchange)
    @app.exception_handler(firebase_auth.ExpiredIdTokenError)
    async def expired_id_token_handler(request: Request, exc: firebase_auth.ExpiredIdTokenError):
        return _error(401, "Token expired", "Please login again", code="TOKEN_EXPIRED")

    @app.exception_handler(firebase_auth.RevokedIdTokenError)
    async def revoked_id_token_handler(request: Request, exc: firebase_auth.RevokedIdTokenError):
        return _error(401, "Token revoked", "Please login again", code="TOKEN_REVOKED")

    @app.exception_handler(firebase_auth.InvalidIdTokenError)
    async def invalid_id_token_handler(request: Request, exc: firebase_auth.InvalidIdTokenError):
        return _error(401, "Invalid token", "Please provide a valid token", code="INVALID_TOKEN")

    @app.exception_handler(jwt.PyJWTError)
    async def jwt_error_handler(request: Request, exc: jwt.PyJWTError):
        return _error(401, "Invalid token", "Invalid or expired token.")

    @app.exception_handler(RazorpayBadRequestError)
    async def razorpay_bad_request_handler(request: Request, exc: RazorpayBadRequestError):
        logger.warning("Razorpay rejected request: %s", exc)
        return _error(400, "Payment processing error", str(exc))

    @app.exception_handler(RazorpayServerError)
    async def razorpay_server_error_handler(request: Request, exc: RazorpayServerError):
        logger.error("Razorpay server error: %s", exc)
        return _error(400, "Payment processing error", "Payment gateway is unavailable. Please try again.")

    @app.exception_handler(ShippingError)
    async def shipping_error_handler(request: Request, exc: ShippingError):
        return _error(status.HTTP_502_BAD_GATEWAY, "Shipping provider error", exc.message)

    @app.exception_handler(DocumentNotFound)
    async def document_not_found_handler(request: Request, exc: DocumentNotFound):
        return _error(404, "Not found", str(exc))

    # Firestore / Google API errors
    @app.exception_handler(GoogleAPICallError)
    async def google_api_error_handler(request: Request, exc: GoogleAPICallError):
        if isinstance(exc, (Aborted, FailedPrecondition)):
            logger.warning("Firestore transaction conflict: %r", exc)
            return _error(409, "Conflict", "The request conflicted with a concurrent update. Please retry.")
        if isinstance(exc, NotFound):
            return _error(404, "Not found", "Resource not found")
        if isinstance(exc, PermissionDenied):
            return _error(403, "Permission denied", "Insufficient permissions")
        if isinstance(exc, InvalidArgument):
            return _error(400, "Invalid request", "Invalid request data")
        logger.error("Firestore error: %r", exc)
        return _error(500, "Internal server error", "Database error")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        settings = request.app.state.settings
        message = str(exc) if settings.is_development else "Something went wrong"
        return _error(500, "Internal server error", message)
