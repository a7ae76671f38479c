"""FastAPI application receiving Stripe webhooks for the donation ledger."""
