"""Unit tests for SSMService against moto SSM."""

from collections.abc import Generator
from typing import Any

import boto3
import pytest
from moto import mock_aws

from donation_ledger.services.ssm_service import SSMService, SSMServiceError

SECRET_PATH = "/donations/dev/stripe/webhook_secret"


@pytest.fixture
def ssm_client() -> Generator[Any, None, None]:
    with mock_aws():
        yield boto3.client("ssm")


class TestGetParameter:
    def test_returns_decrypted_value(self, ssm_client: Any) -> None:
        ssm_client.put_parameter(Name=SECRET_PATH, Value="whsec_live", Type="SecureString")

        assert SSMService().get_parameter(SECRET_PATH) == "whsec_live"

    def test_value_is_cached(self, ssm_client: Any) -> None:
        ssm_client.put_parameter(Name=SECRET_PATH, Value="whsec_live", Type="SecureString")
        service = SSMService()
        service.get_parameter(SECRET_PATH)

        ssm_client.delete_parameter(Name=SECRET_PATH)

        assert service.get_parameter(SECRET_PATH) == "whsec_live"

    def test_missing_parameter_raises(self, ssm_client: Any) -> None:
        with pytest.raises(SSMServiceError, match="not found"):
            SSMService().get_parameter(SECRET_PATH)
