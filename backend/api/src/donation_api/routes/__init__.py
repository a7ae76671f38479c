"""API routes package.

Routers are registered in main.py with the /api prefix.
"""

from donation_api.routes.webhooks import router as webhooks_router

__all__ = ["webhooks_router"]
