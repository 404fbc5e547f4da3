from fastapi.responses import JSONResponse

from services.errors import (
    BillingError,
    ConcurrentUpdateError,
    GatewayRejected,
    GatewayUnavailable,
    NoActiveSubscription,
    ProfileNotFound,
)

# HTTP status per billing error; anything unlisted is a 500
BILLING_ERROR_STATUS = {
    ProfileNotFound: 404,
    NoActiveSubscription: 409,
    GatewayRejected: 400,
    GatewayUnavailable: 503,
    ConcurrentUpdateError: 409,
}


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data or {},
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data or {},
            "error": error_code,
            "message": message,
        }
    )


def billing_error_response(exc: BillingError):
    """Structured error for a billing command; retryable errors say so in ``data``."""
    status = 500
    for error_type, error_status in BILLING_ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status = error_status
            break
    return error_response(
        exc.code,
        status=status,
        message=str(exc) or exc.code,
        data={"retryable": exc.retryable},
    )
