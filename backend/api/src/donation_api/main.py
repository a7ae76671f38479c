"""FastAPI application for the donation ledger webhook API.

Endpoints:
- POST /api/webhooks/stripe: signed Stripe events
- GET /api/ping: health check
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI
from mangum import Mangum

from donation_api.exceptions import register_exception_handlers
from donation_api.middleware.correlation import CorrelationIdMiddleware
from donation_api.routes.webhooks import router as webhooks_router
from donation_ledger.utils.logging import configure_logging

configure_logging()

app = FastAPI(
    title="Donation Ledger API",
    description="Stripe webhook ingestion for donations and recurring donations",
    version="0.1.0",
)

app.add_middleware(CorrelationIdMiddleware)

# Register exception handlers for consistent error responses
register_exception_handlers(app)

# Routers live under /api, matching the API Gateway route
app.include_router(webhooks_router, prefix="/api")


@app.get("/api/ping")
async def ping() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": "donation-ledger-api",
    }


# Lambda handler - Mangum wraps FastAPI for AWS Lambda + API Gateway
handler = Mangum(app, lifespan="off")


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = True) -> None:
    """Run the FastAPI server locally.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to listen on (default: 8080)
        reload: Enable hot reload for development (default: True)
    """
    import uvicorn

    if reload:
        # Use string reference for reload mode (uvicorn requirement)
        uvicorn.run(
            "donation_api.main:app",
            host=host,
            port=port,
            reload=True,
            reload_dirs=["backend/api/src", "backend/ledger/src"],
        )
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
