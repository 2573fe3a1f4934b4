"""
QuickSight API layer.

Thin wrappers around the QuickSight client that validate input, fill in the
account id, log each call and return Envelopes instead of raising.
"""

import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from awstools.aws import AWSContext
from awstools.envelope import Envelope, get_payload, is_success, make_error, make_success
from awstools.errors import INITIALIZATION_ERROR, INVALID_PARAMETER, InitializationError
from awstools.resources import ResourceManager, validate_resource_id

logger = logging.getLogger(__name__)

ANALYSIS_BACKUP_ONLY_KEYS = ("Arn", "CreatedTime", "LastUpdatedTime", "Status")
DATASET_BACKUP_ONLY_KEYS = (
    "Arn",
    "CreatedTime",
    "LastUpdatedTime",
    "ConsumedSpiceCapacityInBytes",
    "OutputColumns",
)
DATASET_OPTIONAL_PARAMS = {
    "column_groups": "ColumnGroups",
    "field_folders": "FieldFolders",
    "row_level_permission_data_set": "RowLevelPermissionDataSet",
    "column_level_permission_rules": "ColumnLevelPermissionRules",
    "data_set_usage_configuration": "DataSetUsageConfiguration",
}
LIST_PAGE_SIZE = 100


class QuickSightAPI:
    """QuickSight analysis and dataset operations for one account."""

    def __init__(self, context: AWSContext, resources: Optional[ResourceManager] = None):
        self.context = context
        self.resources = resources or ResourceManager()
        self.resources.register("analysis", self.describe_analysis)
        self.resources.register("dataset", self.describe_dataset)

    @property
    def dry_run(self) -> bool:
        return self.context.dry_run

    def _call(
        self,
        method: str,
        resource_type: str,
        mutating: bool = False,
        **params,
    ) -> Envelope:
        try:
            account_id = self.context.account_id()
        except InitializationError as e:
            logger.error(f"Failed to initialize QuickSight API: {e}")
            return make_error(method, resource_type, INITIALIZATION_ERROR, str(e))

        logger.debug(f"Calling quicksight.{method}")
        result = self.context.call(
            "quicksight",
            method,
            method,
            resource_type,
            mutating=mutating,
            AwsAccountId=account_id,
            **params,
        )
        if is_success(result):
            logger.debug(f"{method} succeeded (Request ID: {result.request_id})")
        else:
            logger.error(
                f"{method} failed: {result.error_code}: {result.error_message} "
                f"(Request ID: {result.request_id})"
            )
        return result

    def _invalid(self, operation: str, resource_type: str, message: str) -> Envelope:
        logger.error(message)
        return make_error(operation, resource_type, INVALID_PARAMETER, message)

    def _check_id(self, operation: str, resource_type: str, resource_id: str) -> Optional[Envelope]:
        if not validate_resource_id(resource_type, resource_id):
            return self._invalid(
                operation, resource_type, f"Invalid {resource_type} ID: {resource_id!r}"
            )
        return None

    def _list_all(
        self,
        method: str,
        resource_type: str,
        summary_key: str,
        max_results: Optional[int],
        next_token: Optional[str],
    ) -> Envelope:
        """List a resource, following NextToken unless a token was supplied."""
        params: Dict[str, Any] = {"MaxResults": max_results or LIST_PAGE_SIZE}
        if next_token:
            params["NextToken"] = next_token
            return self._call(method, resource_type, **params)

        summaries: List[Dict[str, Any]] = []
        while True:
            page = self._call(method, resource_type, **params)
            if not is_success(page):
                return page
            data = get_payload(page)
            summaries.extend(data.get(summary_key, []))
            token = data.get("NextToken")
            if not token:
                break
            params["NextToken"] = token
        return make_success(method, resource_type, {summary_key: summaries}, page.request_id)

    def _find(self, listing: Envelope, summary_key: str, pattern: str) -> Envelope:
        if not is_success(listing):
            return listing
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            return self._invalid(listing.operation, listing.resource_type,
                                 f"Invalid name pattern {pattern!r}: {e}")
        matches = [
            item for item in get_payload(listing).get(summary_key, [])
            if regex.search(item.get("Name", ""))
        ]
        return make_success(
            listing.operation, listing.resource_type, {summary_key: matches}, listing.request_id
        )

    # Analyses

    def list_analyses(self, max_results: Optional[int] = None, next_token: Optional[str] = None) -> Envelope:
        return self._list_all(
            "list_analyses", "analysis", "AnalysisSummaryList", max_results, next_token
        )

    def find_analyses(self, pattern: str) -> Envelope:
        """List analyses whose name matches a case-insensitive regex."""
        return self._find(self.list_analyses(), "AnalysisSummaryList", pattern)

    def describe_analysis(self, analysis_id: str) -> Envelope:
        invalid = self._check_id("describe_analysis", "analysis", analysis_id)
        if invalid:
            return invalid
        return self._call("describe_analysis", "analysis", AnalysisId=analysis_id)

    def describe_analysis_definition(self, analysis_id: str) -> Envelope:
        invalid = self._check_id("describe_analysis_definition", "analysis", analysis_id)
        if invalid:
            return invalid
        return self._call("describe_analysis_definition", "analysis", AnalysisId=analysis_id)

    def describe_analysis_permissions(self, analysis_id: str) -> Envelope:
        invalid = self._check_id("describe_analysis_permissions", "analysis", analysis_id)
        if invalid:
            return invalid
        return self._call("describe_analysis_permissions", "analysis", AnalysisId=analysis_id)

    def get_analysis_full(self, analysis_id: str) -> Envelope:
        """Fetch description, definition and permissions of an analysis.

        Returns:
            Envelope with payload {"analysis", "definition", "permissions"},
            or the first failed part
        """
        parts = {}
        for key, fetch in (
            ("analysis", self.describe_analysis),
            ("definition", self.describe_analysis_definition),
            ("permissions", self.describe_analysis_permissions),
        ):
            result = fetch(analysis_id)
            if not is_success(result):
                return result
            parts[key] = get_payload(result)
        return make_success("get_analysis_full", "analysis", parts)

    def create_analysis(
        self,
        analysis_id: str,
        name: str,
        definition: Optional[Dict[str, Any]] = None,
        theme_arn: Optional[str] = None,
        source_entity: Optional[Dict[str, Any]] = None,
        permissions: Optional[List[Dict[str, Any]]] = None,
    ) -> Envelope:
        """Create an analysis from a definition or a source template.

        Args:
            analysis_id: Analysis ID
            name: Display name
            definition: Analysis definition document
            theme_arn: Optional theme ARN
            source_entity: Template source entity, used when no definition is given
            permissions: Optional resource permissions to set at creation

        Returns:
            Result envelope
        """
        return self._write_analysis(
            "create_analysis", analysis_id, name, definition, theme_arn, source_entity, permissions
        )

    def update_analysis(
        self,
        analysis_id: str,
        name: str,
        definition: Optional[Dict[str, Any]] = None,
        theme_arn: Optional[str] = None,
        source_entity: Optional[Dict[str, Any]] = None,
    ) -> Envelope:
        return self._write_analysis(
            "update_analysis", analysis_id, name, definition, theme_arn, source_entity
        )

    def _write_analysis(self, method, analysis_id, name, definition, theme_arn,
                        source_entity, permissions=None) -> Envelope:
        invalid = self._check_id(method, "analysis", analysis_id)
        if invalid:
            return invalid
        if not name:
            return self._invalid(method, "analysis", "Analysis name is required")
        if not definition and not source_entity:
            return self._invalid(
                method, "analysis", "Either a definition or a source entity is required"
            )

        params: Dict[str, Any] = {"AnalysisId": analysis_id, "Name": name}
        if definition:
            params["Definition"] = definition
        else:
            params["SourceEntity"] = source_entity
        if theme_arn:
            params["ThemeArn"] = theme_arn
        if permissions:
            params["Permissions"] = permissions

        logger.info(f"{method}: {name} ({analysis_id})")
        return self._call(method, "analysis", mutating=True, **params)

    def update_analysis_permissions(
        self,
        analysis_id: str,
        grant: Optional[List[Dict[str, Any]]] = None,
        revoke: Optional[List[Dict[str, Any]]] = None,
    ) -> Envelope:
        return self._update_permissions(
            "update_analysis_permissions", "analysis", "AnalysisId", analysis_id, grant, revoke
        )

    def delete_analysis(
        self,
        analysis_id: str,
        recovery_window_days: Optional[int] = None,
        force: bool = False,
    ) -> Envelope:
        """Delete an analysis.

        Args:
            analysis_id: Analysis ID
            recovery_window_days: Days the analysis stays restorable (7-30)
            force: Delete immediately without a recovery window

        Returns:
            Result envelope
        """
        invalid = self._check_id("delete_analysis", "analysis", analysis_id)
        if invalid:
            return invalid
        params: Dict[str, Any] = {"AnalysisId": analysis_id}
        if force:
            params["ForceDeleteWithoutRecovery"] = True
        elif recovery_window_days is not None:
            if not 7 <= recovery_window_days <= 30:
                return self._invalid(
                    "delete_analysis", "analysis",
                    "Recovery window must be between 7 and 30 days",
                )
            params["RecoveryWindowInDays"] = recovery_window_days
        logger.info(f"Deleting analysis {analysis_id}")
        return self._call("delete_analysis", "analysis", mutating=True, **params)

    def analysis_exists(self, analysis_id: str) -> bool:
        return self.resources.exists("analysis", analysis_id)

    def upsert_analysis(self, analysis_id: str, name: str,
                        definition: Optional[Dict[str, Any]] = None,
                        theme_arn: Optional[str] = None,
                        source_entity: Optional[Dict[str, Any]] = None) -> Envelope:
        return self.resources.upsert(
            "analysis",
            analysis_id,
            lambda: self.create_analysis(analysis_id, name, definition, theme_arn, source_entity),
            lambda: self.update_analysis(analysis_id, name, definition, theme_arn, source_entity),
        )

    @staticmethod
    def analysis_params_from_backup(document: Dict[str, Any]) -> Dict[str, Any]:
        """Strip service-managed fields from a backed-up analysis description."""
        analysis = document.get("Analysis", document)
        return {k: v for k, v in analysis.items() if k not in ANALYSIS_BACKUP_ONLY_KEYS}

    # Datasets

    def list_datasets(self, max_results: Optional[int] = None, next_token: Optional[str] = None) -> Envelope:
        return self._list_all(
            "list_data_sets", "dataset", "DataSetSummaries", max_results, next_token
        )

    def find_datasets(self, pattern: str) -> Envelope:
        return self._find(self.list_datasets(), "DataSetSummaries", pattern)

    def describe_dataset(self, dataset_id: str) -> Envelope:
        invalid = self._check_id("describe_data_set", "dataset", dataset_id)
        if invalid:
            return invalid
        return self._call("describe_data_set", "dataset", DataSetId=dataset_id)

    def describe_dataset_permissions(self, dataset_id: str) -> Envelope:
        invalid = self._check_id("describe_data_set_permissions", "dataset", dataset_id)
        if invalid:
            return invalid
        return self._call("describe_data_set_permissions", "dataset", DataSetId=dataset_id)

    def get_dataset_full(self, dataset_id: str) -> Envelope:
        parts = {}
        for key, fetch in (
            ("dataset", self.describe_dataset),
            ("permissions", self.describe_dataset_permissions),
        ):
            result = fetch(dataset_id)
            if not is_success(result):
                return result
            parts[key] = get_payload(result)
        return make_success("get_dataset_full", "dataset", parts)

    def create_dataset(
        self,
        dataset_id: str,
        name: str,
        physical_table_map: Dict[str, Any],
        logical_table_map: Optional[Dict[str, Any]] = None,
        import_mode: str = "SPICE",
        permissions: Optional[List[Dict[str, Any]]] = None,
        **optional,
    ) -> Envelope:
        """Create a dataset.

        Args:
            dataset_id: Dataset ID
            name: Display name
            physical_table_map: Physical tables, required
            logical_table_map: Logical tables
            import_mode: SPICE or DIRECT_QUERY
            permissions: Optional resource permissions to set at creation
            **optional: column_groups, field_folders,
                row_level_permission_data_set, column_level_permission_rules,
                data_set_usage_configuration

        Returns:
            Result envelope
        """
        params = self._dataset_params(
            "create_data_set", dataset_id, name, physical_table_map,
            logical_table_map, import_mode, optional,
        )
        if isinstance(params, Envelope):
            return params
        if permissions:
            params["Permissions"] = permissions
        logger.info(f"Creating dataset: {name} ({dataset_id})")
        return self._call("create_data_set", "dataset", mutating=True, **params)

    def update_dataset(
        self,
        dataset_id: str,
        name: str,
        physical_table_map: Dict[str, Any],
        logical_table_map: Optional[Dict[str, Any]] = None,
        import_mode: str = "SPICE",
        **optional,
    ) -> Envelope:
        params = self._dataset_params(
            "update_data_set", dataset_id, name, physical_table_map,
            logical_table_map, import_mode, optional,
        )
        if isinstance(params, Envelope):
            return params
        logger.info(f"Updating dataset: {name} ({dataset_id})")
        return self._call("update_data_set", "dataset", mutating=True, **params)

    def _dataset_params(self, method, dataset_id, name, physical_table_map,
                        logical_table_map, import_mode, optional):
        invalid = self._check_id(method, "dataset", dataset_id)
        if invalid:
            return invalid
        if not name:
            return self._invalid(method, "dataset", "Dataset name is required")
        if not physical_table_map:
            return self._invalid(method, "dataset", "PhysicalTableMap is required")
        unknown = set(optional) - set(DATASET_OPTIONAL_PARAMS)
        if unknown:
            return self._invalid(
                method, "dataset", f"Unknown dataset parameters: {', '.join(sorted(unknown))}"
            )

        params: Dict[str, Any] = {
            "DataSetId": dataset_id,
            "Name": name,
            "PhysicalTableMap": physical_table_map,
            "ImportMode": import_mode or "SPICE",
        }
        if logical_table_map:
            params["LogicalTableMap"] = logical_table_map
        for key, value in optional.items():
            if value:
                params[DATASET_OPTIONAL_PARAMS[key]] = value
        return params

    def update_dataset_permissions(
        self,
        dataset_id: str,
        grant: Optional[List[Dict[str, Any]]] = None,
        revoke: Optional[List[Dict[str, Any]]] = None,
    ) -> Envelope:
        return self._update_permissions(
            "update_data_set_permissions", "dataset", "DataSetId", dataset_id, grant, revoke
        )

    def delete_dataset(self, dataset_id: str) -> Envelope:
        invalid = self._check_id("delete_data_set", "dataset", dataset_id)
        if invalid:
            return invalid
        logger.info(f"Deleting dataset {dataset_id}")
        return self._call("delete_data_set", "dataset", mutating=True, DataSetId=dataset_id)

    def create_ingestion(
        self,
        dataset_id: str,
        ingestion_id: Optional[str] = None,
        ingestion_type: str = "INCREMENTAL_REFRESH",
    ) -> Envelope:
        """Start a SPICE refresh of a dataset."""
        invalid = self._check_id("create_ingestion", "dataset", dataset_id)
        if invalid:
            return invalid
        if not ingestion_id:
            ingestion_id = f"refresh-{datetime.now():%Y%m%d-%H%M%S}-{os.getpid()}"
        logger.info(f"Starting {ingestion_type} for dataset {dataset_id} ({ingestion_id})")
        return self._call(
            "create_ingestion",
            "dataset",
            mutating=True,
            DataSetId=dataset_id,
            IngestionId=ingestion_id,
            IngestionType=ingestion_type,
        )

    def dataset_exists(self, dataset_id: str) -> bool:
        return self.resources.exists("dataset", dataset_id)

    def upsert_dataset(self, dataset_id: str, name: str,
                       physical_table_map: Dict[str, Any],
                       logical_table_map: Optional[Dict[str, Any]] = None,
                       import_mode: str = "SPICE", **optional) -> Envelope:
        return self.resources.upsert(
            "dataset",
            dataset_id,
            lambda: self.create_dataset(dataset_id, name, physical_table_map,
                                        logical_table_map, import_mode, **optional),
            lambda: self.update_dataset(dataset_id, name, physical_table_map,
                                        logical_table_map, import_mode, **optional),
        )

    @staticmethod
    def dataset_params_from_backup(document: Dict[str, Any]) -> Dict[str, Any]:
        """Strip service-managed fields from a backed-up dataset description."""
        dataset = document.get("DataSet", document)
        return {k: v for k, v in dataset.items() if k not in DATASET_BACKUP_ONLY_KEYS}

    # Shared

    def _update_permissions(self, method, resource_type, id_key, resource_id,
                            grant, revoke) -> Envelope:
        invalid = self._check_id(method, resource_type, resource_id)
        if invalid:
            return invalid
        if not grant and not revoke:
            return self._invalid(
                method, resource_type,
                "At least one of grant or revoke permissions is required",
            )
        params: Dict[str, Any] = {id_key: resource_id}
        if grant:
            params["GrantPermissions"] = grant
        if revoke:
            params["RevokePermissions"] = revoke
        return self._call(method, resource_type, mutating=True, **params)

