from dataclasses import replace

import pytest
from unittest.mock import MagicMock, patch

from awstools.aws import AWSContext
from awstools.config import Settings
from awstools.console import Reporter


@pytest.fixture
def settings():
    """Settings with no retry delay and a fixed region."""
    return Settings(region="us-east-1", retry_delay=0, use_color=False)


@pytest.fixture
def reporter():
    """Reporter whose output is swallowed by mocked consoles."""
    return Reporter(use_color=False, out=MagicMock(), err=MagicMock())


@pytest.fixture
def clients():
    """One MagicMock client per service name."""
    created = {}

    def client(service, **kwargs):
        if service not in created:
            created[service] = MagicMock(name=f"{service}-client")
        return created[service]

    client.created = created
    return client


@pytest.fixture
def make_context(settings, reporter, clients):
    """Build an AWSContext on a mocked boto3 session."""

    def factory(dry_run=False, **overrides):
        context_settings = replace(settings, **overrides)
        with patch("boto3.Session") as mock_session:
            mock_session.return_value.client.side_effect = clients
            mock_session.return_value.region_name = None
            context = AWSContext(
                context_settings, dry_run=dry_run, sleep=lambda seconds: None, reporter=reporter
            )
        sts = clients("sts")
        sts.get_caller_identity.return_value = {
            "Account": "123456789012",
            "Arn": "arn:aws:iam::123456789012:user/test",
            "UserId": "AIDTEST",
            "ResponseMetadata": {"RequestId": "sts-request"},
        }
        return context

    return factory
