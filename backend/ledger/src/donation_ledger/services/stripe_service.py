"""Stripe integration: webhook signature verification and object lookups.

Uses the StripeClient pattern. Credentials come from environment variables
when set, otherwise from SSM Parameter Store.
"""

import json
import os
from functools import lru_cache
from typing import Any, TypeVar

import stripe
from pydantic import BaseModel
from stripe import StripeClient

from ..models.errors import is_stripe_error_retryable
from ..models.stripe_events import (
    Charge,
    Customer,
    PaymentIntent,
    PaymentMethod,
    Subscription,
)
from ..utils.logging import get_logger
from .ssm_service import SSMServiceError, get_ssm_service

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class StripeServiceError(Exception):
    """Raised when a Stripe operation fails."""

    def __init__(self, message: str, stripe_error_code: str | None = None) -> None:
        """Initialize with message and optional Stripe error code.

        Args:
            message: Human-readable error message.
            stripe_error_code: Stripe-specific error code if available.
        """
        super().__init__(message)
        self.stripe_error_code = stripe_error_code


class StripeService:
    """Service for the Stripe calls the webhook pipeline needs.

    Handles:
    - Webhook signature validation
    - Lookups of charges, payment methods, subscriptions and customers

    Usage:
        stripe_svc = get_stripe_service()
        event = stripe_svc.verify_webhook_signature(payload, signature)
    """

    def __init__(self, environment: str | None = None) -> None:
        """Initialize Stripe service; credentials are resolved lazily.

        Args:
            environment: Environment name (dev, prod). Defaults to ENVIRONMENT env var.
        """
        self._environment = environment or os.environ.get("ENVIRONMENT", "dev")
        self._client: StripeClient | None = None
        self._webhook_secret: str | None = None

    def _get_secret(self, env_var: str, parameter: str) -> str:
        value = os.environ.get(env_var)
        if value:
            return value
        return get_ssm_service().get_parameter(
            f"/donations/{self._environment}/stripe/{parameter}"
        )

    def _get_client(self) -> StripeClient:
        """Get or create the Stripe client (lazy initialization).

        Raises:
            StripeServiceError: If credentials cannot be retrieved.
        """
        if self._client is None:
            try:
                secret_key = self._get_secret("STRIPE_SECRET_KEY", "secret_key")
            except SSMServiceError as e:
                raise StripeServiceError(f"Failed to initialize Stripe client: {e}") from e
            self._client = StripeClient(secret_key)
            logger.info("Stripe client initialized for environment: %s", self._environment)
        return self._client

    def _get_webhook_secret(self) -> str:
        """Get the webhook signing secret.

        Raises:
            SSMServiceError: If the secret is not in the environment and
                cannot be read from SSM.
        """
        if self._webhook_secret is None:
            self._webhook_secret = self._get_secret("STRIPE_WEBHOOK_SECRET", "webhook_secret")
        return self._webhook_secret

    def verify_webhook_signature(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify a webhook signature and parse the event.

        The returned event is decoded from the same raw bytes that were
        verified, never from a re-serialized body.

        Args:
            payload: Raw request body bytes.
            signature: Stripe-Signature header value.

        Returns:
            Parsed Stripe event dictionary.

        Raises:
            StripeServiceError: If the signature is invalid or the body is not JSON.
            SSMServiceError: If the webhook secret cannot be loaded.
        """
        webhook_secret = self._get_webhook_secret()

        try:
            event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature: %s", str(e))
            raise StripeServiceError("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning("Webhook payload is not valid JSON: %s", str(e))
            raise StripeServiceError("Invalid webhook payload") from e

        logger.info("Webhook signature verified for event: %s", event["id"])
        parsed: dict[str, Any] = json.loads(payload)
        return parsed

    def _retrieve(self, resource: str, object_id: str, model: type[ModelT]) -> ModelT:
        client = self._get_client()
        try:
            obj = getattr(client, resource).retrieve(object_id)
        except stripe.StripeError as e:
            error_code = getattr(e, "code", None)
            logger.error(
                "Stripe %s lookup failed for %s: %s (code: %s, retryable: %s)",
                resource,
                object_id,
                str(e),
                error_code,
                is_stripe_error_retryable(error_code),
            )
            raise StripeServiceError(
                f"Failed to retrieve {resource} {object_id}: {e}",
                stripe_error_code=error_code,
            ) from e
        return model.model_validate(json.loads(str(obj)))

    def retrieve_charge(self, charge_id: str) -> Charge:
        """Retrieve a charge (used to resolve invoices and disputed payments)."""
        return self._retrieve("charges", charge_id, Charge)

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Retrieve a payment intent to find its payment method."""
        return self._retrieve("payment_intents", payment_intent_id, PaymentIntent)

    def retrieve_payment_method(self, payment_method_id: str) -> PaymentMethod:
        """Retrieve a payment method for card brand and last4."""
        return self._retrieve("payment_methods", payment_method_id, PaymentMethod)

    def retrieve_subscription(self, subscription_id: str) -> Subscription:
        """Retrieve a subscription for its metadata, amount and customer."""
        return self._retrieve("subscriptions", subscription_id, Subscription)

    def retrieve_customer(self, customer_id: str) -> Customer:
        """Retrieve a customer for the donor's email and name."""
        return self._retrieve("customers", customer_id, Customer)


@lru_cache(maxsize=1)
def get_stripe_service() -> StripeService:
    """Get the shared StripeService instance."""
    return StripeService()
