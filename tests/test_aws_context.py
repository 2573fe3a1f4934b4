import pytest
from unittest.mock import MagicMock, patch
from botocore.exceptions import ClientError

from awstools.aws import AWSContext
from awstools.config import Settings
from awstools.envelope import get_payload, is_success
from awstools.errors import InitializationError


class TestAWSContext:
    """Test cases for session, client and call handling."""

    def test_session_with_profile(self, reporter):
        with patch("boto3.Session") as mock_session:
            mock_session.return_value.region_name = "eu-central-1"
            context = AWSContext(Settings(profile="test-profile"), reporter=reporter)

        mock_session.assert_called_once_with(profile_name="test-profile")
        assert context.region == "eu-central-1"

    def test_session_without_profile(self, reporter):
        with patch("boto3.Session") as mock_session:
            mock_session.return_value.region_name = None
            context = AWSContext(Settings(), reporter=reporter)

        mock_session.assert_called_once_with()
        assert context.region == "us-east-1"

    def test_settings_region_wins(self, reporter):
        with patch("boto3.Session") as mock_session:
            mock_session.return_value.region_name = "eu-central-1"
            context = AWSContext(Settings(region="ap-southeast-2"), reporter=reporter)

        assert context.region == "ap-southeast-2"

    def test_client_cached_and_botocore_retries_disabled(self, reporter):
        with patch("boto3.Session") as mock_session:
            context = AWSContext(Settings(region="us-east-1"), reporter=reporter)

        first = context.client("quicksight")
        second = context.client("quicksight")

        assert first is second
        mock_session.return_value.client.assert_called_once()
        kwargs = mock_session.return_value.client.call_args.kwargs
        assert kwargs["region_name"] == "us-east-1"
        assert kwargs["config"].retries["total_max_attempts"] == 1

    def test_call_success(self, make_context, clients):
        context = make_context()
        clients("ec2").describe_regions.return_value = {
            "Regions": [],
            "ResponseMetadata": {"RequestId": "req-9"},
        }

        result = context.call("ec2", "describe_regions", "describe_regions", "region")

        assert is_success(result)
        assert get_payload(result) == {"Regions": []}
        assert result.request_id == "req-9"

    def test_call_retries_throttling(self, make_context, clients):
        context = make_context()
        throttled = ClientError(
            {"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}}, "ListAnalyses"
        )
        clients("quicksight").list_analyses.side_effect = [throttled, {"AnalysisSummaryList": []}]

        result = context.call("quicksight", "list_analyses", "list_analyses", "analysis")

        assert is_success(result)
        assert clients("quicksight").list_analyses.call_count == 2

    def test_dry_run_skips_mutating_call(self, make_context, clients, reporter):
        context = make_context(dry_run=True)

        result = context.call(
            "quicksight", "delete_analysis", "delete_analysis", "analysis",
            mutating=True, AnalysisId="abc",
        )

        assert is_success(result)
        assert get_payload(result)["DryRun"] is True
        clients("quicksight").delete_analysis.assert_not_called()
        printed = reporter.out.print.call_args.args[0]
        assert printed.startswith("[DRY RUN] Would call quicksight.delete_analysis(")
        assert '"AnalysisId": "abc"' in printed

    def test_dry_run_still_reads(self, make_context, clients):
        context = make_context(dry_run=True)
        clients("quicksight").describe_analysis.return_value = {"Analysis": {}}

        result = context.call("quicksight", "describe_analysis", "describe_analysis", "analysis")

        assert is_success(result)
        clients("quicksight").describe_analysis.assert_called_once_with()

    def test_account_id_cached(self, make_context, clients):
        context = make_context()

        assert context.account_id() == "123456789012"
        assert context.account_id() == "123456789012"
        clients("sts").get_caller_identity.assert_called_once()

    def test_account_id_failure(self, make_context, clients):
        context = make_context()
        clients("sts").get_caller_identity.side_effect = ClientError(
            {"Error": {"Code": "ExpiredToken", "Message": "token expired"}}, "GetCallerIdentity"
        )

        with pytest.raises(InitializationError, match="token expired"):
            context.account_id()
