"""Transactional email delivery through SES templates.

Templates are stored in SES as ``{EMAIL_TEMPLATE_PREFIX}-{template}``; the
ledger only supplies the template data. Sending is best effort: failures are
logged and reported as False, never raised.
"""

import json
import os
from functools import lru_cache
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..models.enums import EmailTemplate
from ..utils.donors import is_valid_email, normalize_email
from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FROM_ADDRESS = "donations@example.org"


def _mask(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}"


class EmailDispatcher:
    """Sends templated emails; returns whether the send succeeded."""

    def __init__(self, client: Any | None = None) -> None:
        environment = os.getenv("ENVIRONMENT", "dev")
        self._from_address = os.getenv("SES_FROM_EMAIL", DEFAULT_FROM_ADDRESS)
        self._template_prefix = os.getenv(
            "EMAIL_TEMPLATE_PREFIX", f"donations-{environment}"
        )
        self._enabled = os.getenv("EMAIL_DELIVERY_ENABLED", "true").lower() != "false"
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ses", region_name=os.getenv("SES_REGION"))
        return self._client

    def template_name(self, template: EmailTemplate) -> str:
        return f"{self._template_prefix}-{template.value}"

    def send(self, template: EmailTemplate, to: str | None, data: dict[str, Any]) -> bool:
        """Send one templated email.

        Args:
            template: Template to render
            to: Recipient address (normalized before sending)
            data: Template variables

        Returns:
            True if the message was accepted (or delivery is disabled),
            False for an invalid address or a delivery failure
        """
        recipient = normalize_email(to)
        if recipient is None or not is_valid_email(recipient):
            logger.warning("Not sending %s: invalid recipient address", template.value)
            return False

        if not self._enabled:
            logger.info(
                "Email delivery disabled, simulated %s to %s",
                template.value,
                _mask(recipient),
            )
            return True

        try:
            response = self._get_client().send_templated_email(
                Source=self._from_address,
                Destination={"ToAddresses": [recipient]},
                Template=self.template_name(template),
                TemplateData=json.dumps(data, default=str),
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to send %s to %s: %s", template.value, _mask(recipient), e)
            return False

        logger.info(
            "Sent %s to %s (message %s)",
            template.value,
            _mask(recipient),
            response.get("MessageId"),
        )
        return True


@lru_cache(maxsize=1)
def get_email_dispatcher() -> EmailDispatcher:
    return EmailDispatcher()
