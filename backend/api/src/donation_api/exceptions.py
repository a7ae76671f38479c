"""FastAPI exception handlers converting DonationLedgerError to HTTP responses.

Status mapping:
- 400 Bad Request: signature or payload problems. Stripe should not need to
  retry, but a redelivery is harmless.
- 500 Internal Server Error: processing failures. Stripe redelivers the event.
- 500 also covers a webhook secret that cannot be loaded, so Stripe retries.

Usage:
    from donation_api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from donation_ledger.models.errors import DonationLedgerError, ErrorCode
from donation_ledger.utils.logging import get_logger

logger = get_logger(__name__)

ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_EVENT_PAYLOAD: HTTP_400_BAD_REQUEST,
    ErrorCode.WEBHOOK_PROCESSING_FAILED: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.CONCURRENT_MODIFICATION: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.WEBHOOK_SECRET_UNAVAILABLE: HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_http_status_for_error(code: ErrorCode) -> int:
    """Get HTTP status code for an ErrorCode, defaulting to 500."""
    return ERROR_CODE_TO_HTTP_STATUS.get(code, HTTP_500_INTERNAL_SERVER_ERROR)


async def donation_ledger_error_handler(
    request: Request, exc: DonationLedgerError
) -> JSONResponse:
    """Convert a DonationLedgerError to its JSON error body and status."""
    return JSONResponse(
        status_code=get_http_status_for_error(exc.code),
        content=exc.to_error_response().model_dump(mode="json"),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for uncaught exceptions (for example a store outage).

    Answers 500 so Stripe redelivers; internal details stay in the logs.
    """
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error_code": "ERR_INTERNAL",
            "message": "An unexpected error occurred",
            "recovery": "Stripe will redeliver the event automatically",
            "details": None,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(DonationLedgerError, donation_ledger_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
