"""SSM Parameter Store reads for secrets missing from the environment."""

from functools import lru_cache

import boto3
from botocore.exceptions import ClientError

from ..utils.logging import get_logger

logger = get_logger(__name__)


class SSMServiceError(Exception):
    """Raised when SSM parameter retrieval fails."""


class SSMService:
    """Decrypts SecureString parameters, caching each for the process lifetime."""

    def __init__(self) -> None:
        self._client = boto3.client("ssm")
        self._values: dict[str, str] = {}

    def get_parameter(self, name: str) -> str:
        """Retrieve a decrypted parameter value.

        Args:
            name: Full parameter path, e.g. /donations/dev/stripe/webhook_secret

        Raises:
            SSMServiceError: If the parameter is missing or access is denied.
        """
        if name in self._values:
            return self._values[name]

        try:
            logger.info("Fetching SSM parameter: %s", name)
            response = self._client.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "ParameterNotFound":
                raise SSMServiceError(f"SSM parameter not found: {name}") from e
            raise SSMServiceError(f"Failed to retrieve SSM parameter {name}: {error_code}") from e

        value: str = response["Parameter"]["Value"]
        self._values[name] = value
        return value


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    """Get the shared SSMService instance."""
    return SSMService()
