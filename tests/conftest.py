import os
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from aws_cpi.config import ConfigManager

REGION = "eu-central-1"


def client_error(code, operation="Operation", message=None):
    """Build a botocore ClientError carrying the given AWS error code."""
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


def no_sleep(_seconds):
    return None


def raw_config(**aws_overrides):
    aws = {
        "region": REGION,
        "access_key_id": "testing",
        "secret_access_key": "testing",
        "default_key_name": "bosh",
        "max_retries": 2,
        "default_security_groups": ["sg-0123456789abcdef0"],
    }
    aws.update(aws_overrides)
    return {"cloud": {"plugin": "aws", "properties": {"aws": aws, "agent": {"mbus": "nats://nats:4222"}}}}


def registry_stub(enabled=False, settings=None):
    registry = MagicMock()
    registry.enabled = enabled
    registry.read_settings.return_value = settings if settings is not None else {}
    return registry


@pytest.fixture(scope="function")
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = REGION


@pytest.fixture
def cpi_config():
    return ConfigManager.build(raw_config())


@pytest.fixture(scope="function")
def ec2(aws_credentials):
    """Real moto EC2 client for round-trip tests."""
    with mock_aws():
        yield boto3.client("ec2", region_name=REGION)


@pytest.fixture
def mock_ec2():
    return MagicMock()


@pytest.fixture
def mock_clients(mock_ec2):
    return {"ec2": mock_ec2, "elb": MagicMock(), "elbv2": MagicMock()}
