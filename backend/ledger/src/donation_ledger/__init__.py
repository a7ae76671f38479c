"""Stripe webhook ingestion and idempotent donation ledger."""
