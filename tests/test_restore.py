import json
import os

import pytest
from botocore.exceptions import ClientError

from awstools.envelope import get_payload, is_success
from awstools.errors import ALREADY_EXISTS, INVALID_PARAMETER, NOT_FOUND
from awstools.quicksight.api import QuickSightAPI
from awstools.quicksight.backup import BackupError, write_ids, write_json
from awstools.quicksight.restore import (
    apply_backup,
    apply_directory,
    apply_file,
    description_files,
)

PERMISSIONS = [{"Principal": "arn:user", "Actions": ["quicksight:DescribeAnalysis"]}]
DEFINITION = {"DataSetIdentifierDeclarations": [], "Sheets": []}
TABLES = {"t1": {"RelationalTable": {"Name": "orders"}}}


def not_found(operation):
    return ClientError({"Error": {"Code": "ResourceNotFoundException", "Message": "missing"}}, operation)


def make_analysis_backup(root, analysis_id="a1", name="Sales", with_definition=True):
    os.makedirs(os.path.join(root, "analyses"), exist_ok=True)
    os.makedirs(os.path.join(root, "definitions"), exist_ok=True)
    os.makedirs(os.path.join(root, "permissions"), exist_ok=True)
    base = f"{name}-{analysis_id}"
    path = os.path.join(root, "analyses", f"{base}.json")
    write_json(path, {"Analysis": {
        "AnalysisId": analysis_id, "Name": name, "Arn": "arn", "Status": "CREATION_SUCCESSFUL",
    }})
    if with_definition:
        write_json(os.path.join(root, "definitions", f"{base}-definition.json"), {"Definition": DEFINITION})
    write_json(os.path.join(root, "permissions", f"{base}-permissions.json"), {"Permissions": PERMISSIONS})
    write_ids(os.path.join(root, "analysis-ids.json"), [analysis_id])
    return path


def make_dataset_backup(root, dataset_id="d1", name="Orders", import_mode="SPICE"):
    os.makedirs(os.path.join(root, "datasets"), exist_ok=True)
    path = os.path.join(root, "datasets", f"{name}-{dataset_id}.json")
    write_json(path, {"DataSet": {
        "DataSetId": dataset_id, "Name": name, "ImportMode": import_mode,
        "PhysicalTableMap": TABLES, "ConsumedSpiceCapacityInBytes": 0, "OutputColumns": [],
    }})
    write_ids(os.path.join(root, "dataset-ids.json"), [dataset_id])
    write_json(os.path.join(root, "dataset-summary.json"), [])
    return path


@pytest.fixture
def quicksight(clients):
    client = clients("quicksight")
    client.describe_analysis.side_effect = not_found("DescribeAnalysis")
    client.describe_data_set.side_effect = not_found("DescribeDataSet")
    return client


@pytest.fixture
def api(make_context, quicksight):
    return QuickSightAPI(make_context())


class TestApplyAnalysis:
    """Test cases for applying analysis files."""

    def test_upsert_creates_from_definition_file(self, api, quicksight, reporter, tmp_path):
        path = make_analysis_backup(str(tmp_path))

        result = apply_file(api, reporter, path, "analysis")

        assert is_success(result)
        quicksight.create_analysis.assert_called_once_with(
            AwsAccountId="123456789012", AnalysisId="a1", Name="Sales", Definition=DEFINITION
        )
        quicksight.update_analysis_permissions.assert_not_called()

    def test_inline_definition(self, api, quicksight, reporter, tmp_path):
        path = str(tmp_path / "inline.json")
        write_json(path, {"Analysis": {"AnalysisId": "a9", "Name": "Inline"}, "Definition": DEFINITION})

        result = apply_file(api, reporter, path, "analysis")

        assert is_success(result)
        assert quicksight.create_analysis.call_args.kwargs["Definition"] == DEFINITION

    def test_missing_definition(self, api, quicksight, reporter, tmp_path):
        path = make_analysis_backup(str(tmp_path), with_definition=False)

        result = apply_file(api, reporter, path, "analysis")

        assert result.error_code == INVALID_PARAMETER
        quicksight.create_analysis.assert_not_called()

    def test_create_refuses_existing(self, api, quicksight, reporter, tmp_path):
        quicksight.describe_analysis.side_effect = None
        quicksight.describe_analysis.return_value = {"Analysis": {"AnalysisId": "a1"}}
        path = make_analysis_backup(str(tmp_path))

        result = apply_file(api, reporter, path, "analysis", operation="create")

        assert result.error_code == ALREADY_EXISTS
        quicksight.create_analysis.assert_not_called()

    def test_update_refuses_missing(self, api, quicksight, reporter, tmp_path):
        path = make_analysis_backup(str(tmp_path))

        result = apply_file(api, reporter, path, "analysis", operation="update")

        assert result.error_code == NOT_FOUND
        quicksight.update_analysis.assert_not_called()

    def test_upsert_updates_existing_with_permissions(self, api, quicksight, reporter, tmp_path):
        quicksight.describe_analysis.side_effect = None
        quicksight.describe_analysis.return_value = {"Analysis": {"AnalysisId": "a1"}}
        path = make_analysis_backup(str(tmp_path))

        result = apply_file(api, reporter, path, "analysis", apply_permissions=True)

        assert is_success(result)
        quicksight.update_analysis.assert_called_once()
        quicksight.update_analysis_permissions.assert_called_once_with(
            AwsAccountId="123456789012", AnalysisId="a1", GrantPermissions=PERMISSIONS
        )

    def test_permission_failure_is_only_a_warning(self, api, quicksight, reporter, tmp_path):
        quicksight.update_analysis_permissions.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "no"}}, "UpdateAnalysisPermissions"
        )
        path = make_analysis_backup(str(tmp_path))

        result = apply_file(api, reporter, path, "analysis", apply_permissions=True)

        assert is_success(result)

    def test_dry_run_makes_no_calls(self, api, quicksight, reporter, tmp_path):
        path = make_analysis_backup(str(tmp_path))

        result = apply_file(api, reporter, path, "analysis", dry_run=True)

        assert get_payload(result) == {"DryRun": True, "AnalysisId": "a1"}
        quicksight.describe_analysis.assert_not_called()
        quicksight.create_analysis.assert_not_called()

    def test_invalid_operation(self, api, reporter, tmp_path):
        path = make_analysis_backup(str(tmp_path))

        assert apply_file(api, reporter, path, "analysis", operation="merge").error_code == INVALID_PARAMETER

    def test_unreadable_file(self, api, reporter, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        assert apply_file(api, reporter, str(path), "analysis").error_code == INVALID_PARAMETER

    def test_missing_id(self, api, reporter, tmp_path):
        path = str(tmp_path / "noid.json")
        write_json(path, {"Analysis": {"Name": "x"}})

        assert apply_file(api, reporter, path, "analysis").error_code == INVALID_PARAMETER


class TestApplyDataset:
    """Test cases for applying dataset files."""

    def test_create_strips_backup_fields(self, api, quicksight, reporter, tmp_path):
        path = make_dataset_backup(str(tmp_path))

        result = apply_file(api, reporter, path, "dataset")

        assert is_success(result)
        quicksight.create_data_set.assert_called_once_with(
            AwsAccountId="123456789012", DataSetId="d1", Name="Orders",
            PhysicalTableMap=TABLES, ImportMode="SPICE",
        )

    def test_refresh_only_for_spice(self, api, quicksight, reporter, tmp_path):
        spice = make_dataset_backup(str(tmp_path / "spice"))
        direct = make_dataset_backup(str(tmp_path / "direct"), "d2", "Live", "DIRECT_QUERY")

        apply_file(api, reporter, spice, "dataset", refresh=True)
        apply_file(api, reporter, direct, "dataset", refresh=True)

        quicksight.create_ingestion.assert_called_once()
        assert quicksight.create_ingestion.call_args.kwargs["DataSetId"] == "d1"

    def test_failed_write_skips_refresh(self, api, quicksight, reporter, tmp_path):
        quicksight.create_data_set.side_effect = ClientError(
            {"Error": {"Code": "LimitExceededException", "Message": "too many"}}, "CreateDataSet"
        )
        path = make_dataset_backup(str(tmp_path))

        result = apply_file(api, reporter, path, "dataset", refresh=True)

        assert result.error_code == "LimitExceededException"
        quicksight.create_ingestion.assert_not_called()


class TestApplyDirectory:
    """Test cases for applying directories and whole backups."""

    def test_description_files_skip_metadata(self, tmp_path):
        make_dataset_backup(str(tmp_path))

        files = description_files(str(tmp_path), "dataset")

        assert [os.path.basename(f) for f in files] == ["Orders-d1.json"]

    def test_description_files_plain_folder(self, tmp_path):
        (tmp_path / "one.json").write_text("{}")
        (tmp_path / "x-ids.json").write_text("[]")

        files = description_files(str(tmp_path), "analysis")

        assert [os.path.basename(f) for f in files] == ["one.json"]

    def test_counts_success_and_failure(self, api, reporter, tmp_path):
        root = str(tmp_path)
        make_analysis_backup(root, "a1", "Good")
        make_analysis_backup(root, "a2", "Bad", with_definition=False)

        report = apply_directory(api, reporter, root, "analysis")

        assert report.succeeded == 1
        assert report.failed == 1
        assert not report.ok

    def test_missing_directory(self, api, reporter, tmp_path):
        with pytest.raises(BackupError, match="Directory not found"):
            apply_directory(api, reporter, str(tmp_path / "nope"), "analysis")

    def test_empty_directory(self, api, reporter, tmp_path):
        with pytest.raises(BackupError, match="No JSON files"):
            apply_directory(api, reporter, str(tmp_path), "analysis")

    def test_apply_backup_datasets_first(self, api, quicksight, reporter, tmp_path):
        root = str(tmp_path)
        make_analysis_backup(os.path.join(root, "analyses"))
        make_dataset_backup(os.path.join(root, "datasets"))
        calls = []
        quicksight.create_data_set.side_effect = lambda **kw: calls.append("dataset") or {}
        quicksight.create_analysis.side_effect = lambda **kw: calls.append("analysis") or {}

        reports = apply_backup(api, reporter, root)

        assert calls == ["dataset", "analysis"]
        assert reports["dataset"].ok and reports["analysis"].ok

    def test_apply_backup_nothing_found(self, api, reporter, tmp_path):
        with pytest.raises(BackupError, match="No analysis or dataset backup"):
            apply_backup(api, reporter, str(tmp_path))
