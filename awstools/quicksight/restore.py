"""
Apply QuickSight analyses and datasets from backup files.
"""

import glob
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from awstools.console import Reporter
from awstools.envelope import Envelope, get_payload, is_success, make_error, make_success
from awstools.errors import ALREADY_EXISTS, INVALID_PARAMETER, NOT_FOUND
from awstools.quicksight.api import DATASET_OPTIONAL_PARAMS, QuickSightAPI
from awstools.quicksight.backup import (
    ANALYSIS,
    DATASET,
    BackupError,
    companion_file,
    kind_for,
    read_json,
    resolve_backup_root,
)

logger = logging.getLogger(__name__)

OPERATIONS = ("create", "update", "upsert")
# Files in a backup root that are not resource descriptions
METADATA_SUFFIXES = ("-ids.json", "-summary.json")


@dataclass
class ApplyReport:
    resource_type: str
    succeeded: int = 0
    failed: int = 0
    results: List[Envelope] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


def _fail(operation, resource_type, code, message, reporter) -> Envelope:
    reporter.error(message)
    return make_error(operation, resource_type, code, message)


def _check_operation(api, reporter, resource_type, operation, resource_id) -> Optional[Envelope]:
    """Refuse create of an existing resource and update of a missing one."""
    if operation == "upsert":
        return None
    exists = api.resources.exists(resource_type, resource_id)
    if operation == "create" and exists:
        return _fail(operation, resource_type, ALREADY_EXISTS,
                     f"{resource_type.capitalize()} already exists: {resource_id}", reporter)
    if operation == "update" and not exists:
        return _fail(operation, resource_type, NOT_FOUND,
                     f"{resource_type.capitalize()} does not exist: {resource_id}", reporter)
    return None


def _load_permissions(path: str) -> List[Dict[str, Any]]:
    permissions_file = companion_file(path, "permissions", "permissions")
    if not os.path.isfile(permissions_file):
        return []
    return read_json(permissions_file).get("Permissions") or []


def apply_file(
    api: QuickSightAPI,
    reporter: Reporter,
    path: str,
    resource_type: str,
    operation: str = "upsert",
    dry_run: bool = False,
    apply_permissions: bool = False,
    refresh: bool = False,
) -> Envelope:
    """Create or update one resource from its backup description file.

    Args:
        api: QuickSight API
        reporter: Console output
        path: Path of the description file
        resource_type: "analysis" or "dataset"
        operation: create, update or upsert
        dry_run: Show what would happen without writing
        apply_permissions: Grant the permissions stored next to the file
        refresh: Start a SPICE refresh after a dataset write

    Returns:
        Envelope of the create/update call, or an error envelope
    """
    kind_for(resource_type)
    if operation not in OPERATIONS:
        return _fail(operation, resource_type, INVALID_PARAMETER,
                     f"Invalid operation '{operation}'. Use create, update or upsert", reporter)
    try:
        document = read_json(path)
    except (OSError, ValueError) as e:
        return _fail(operation, resource_type, INVALID_PARAMETER,
                     f"Cannot read {path}: {e}", reporter)
    if not isinstance(document, dict):
        return _fail(operation, resource_type, INVALID_PARAMETER,
                     f"Not a {resource_type} description: {path}", reporter)

    dry_run = dry_run or api.dry_run
    if resource_type == "analysis":
        return _apply_analysis(api, reporter, path, document, operation, dry_run, apply_permissions)
    return _apply_dataset(api, reporter, path, document, operation, dry_run,
                          apply_permissions, refresh)


def _apply_analysis(api, reporter, path, document, operation, dry_run, apply_permissions):
    params = api.analysis_params_from_backup(document)
    analysis_id = params.get("AnalysisId")
    name = params.get("Name")
    if not analysis_id or not name:
        return _fail(operation, "analysis", INVALID_PARAMETER,
                     f"AnalysisId and Name are required in {path}", reporter)

    definition = None
    definition_file = companion_file(path, "definitions", "definition")
    if os.path.isfile(definition_file):
        definition = read_json(definition_file).get("Definition")
        logger.info(f"Using definition file {definition_file}")
    elif document.get("Definition") or params.get("Definition"):
        definition = document.get("Definition") or params.get("Definition")
        reporter.info("Using definition from main JSON file")

    reporter.plain(f"Analysis: {name} (ID: {analysis_id})")
    if dry_run:
        reporter.warning("DRY RUN MODE - No actual changes will be made")
        reporter.plain(f"  Operation: {operation}")
        reporter.plain(f"  Has definition: {'Yes' if definition else 'No'}")
        reporter.plain(f"  Update permissions: {apply_permissions}")
        return make_success(operation, "analysis", {"DryRun": True, "AnalysisId": analysis_id})

    if not definition:
        return _fail(operation, "analysis", INVALID_PARAMETER,
                     f"No definition found for analysis {analysis_id}", reporter)

    refused = _check_operation(api, reporter, "analysis", operation, analysis_id)
    if refused:
        return refused

    theme_arn = params.get("ThemeArn")
    if operation == "create":
        result = api.create_analysis(analysis_id, name, definition, theme_arn)
    elif operation == "update":
        result = api.update_analysis(analysis_id, name, definition, theme_arn)
    else:
        result = api.upsert_analysis(analysis_id, name, definition, theme_arn)
    _report_write(reporter, result, "Analysis", name)

    if is_success(result) and apply_permissions:
        permissions = _load_permissions(path)
        if permissions:
            _report_permissions(reporter, api.update_analysis_permissions(analysis_id, grant=permissions))
        else:
            reporter.warning(f"No permissions file found for {analysis_id}")
    return result


def _apply_dataset(api, reporter, path, document, operation, dry_run, apply_permissions, refresh):
    params = api.dataset_params_from_backup(document)
    dataset_id = params.get("DataSetId")
    name = params.get("Name")
    if not dataset_id or not name:
        return _fail(operation, "dataset", INVALID_PARAMETER,
                     f"DataSetId and Name are required in {path}", reporter)
    import_mode = params.get("ImportMode") or "SPICE"

    reporter.plain(f"Dataset: {name} (ID: {dataset_id})")
    if dry_run:
        reporter.warning("DRY RUN MODE - No actual changes will be made")
        reporter.plain(f"  Operation: {operation}")
        reporter.plain(f"  Import mode: {import_mode}")
        reporter.plain(f"  Physical tables: {len(params.get('PhysicalTableMap') or {})}")
        reporter.plain(f"  Update permissions: {apply_permissions}")
        reporter.plain(f"  Refresh: {refresh and import_mode == 'SPICE'}")
        return make_success(operation, "dataset", {"DryRun": True, "DataSetId": dataset_id})

    refused = _check_operation(api, reporter, "dataset", operation, dataset_id)
    if refused:
        return refused

    optional = {
        argument: params[key]
        for argument, key in DATASET_OPTIONAL_PARAMS.items()
        if params.get(key)
    }
    args = (dataset_id, name, params.get("PhysicalTableMap"), params.get("LogicalTableMap"), import_mode)
    if operation == "create":
        result = api.create_dataset(*args, **optional)
    elif operation == "update":
        result = api.update_dataset(*args, **optional)
    else:
        result = api.upsert_dataset(*args, **optional)
    _report_write(reporter, result, "Dataset", name)
    if not is_success(result):
        return result

    if apply_permissions:
        permissions = _load_permissions(path)
        if permissions:
            _report_permissions(reporter, api.update_dataset_permissions(dataset_id, grant=permissions))
        else:
            reporter.warning(f"No permissions file found for {dataset_id}")

    if refresh:
        if import_mode == "SPICE":
            ingestion = api.create_ingestion(dataset_id)
            if is_success(ingestion):
                reporter.success(f"  ✓ Refresh started: {get_payload(ingestion).get('IngestionId', '')}")
            else:
                reporter.warning(f"  Refresh failed: {ingestion.error_message}")
        else:
            reporter.info(f"  Skipping refresh for {import_mode} dataset")
    return result


def _report_write(reporter: Reporter, result: Envelope, label: str, name: str) -> None:
    if is_success(result):
        reporter.success(f"  ✓ {label} {result.operation.split('_')[0]}d: {name}")
    else:
        reporter.error(f"{label} {name}: {result.error_code}: {result.error_message}")


def _report_permissions(reporter: Reporter, result: Envelope) -> None:
    if is_success(result):
        reporter.success("  ✓ Permissions updated")
    else:
        reporter.warning(f"  Permission update failed: {result.error_message}")


def description_files(directory: str, resource_type: str) -> List[str]:
    """List the description files to apply from a directory.

    A backup directory (single-type or full) is accepted as well as a plain
    folder of description files.
    """
    kind = kind_for(resource_type)
    try:
        directory = os.path.join(resolve_backup_root(directory, resource_type), kind.directory)
    except BackupError:
        logger.debug(f"{directory} is not a backup root, reading it as a plain folder")
    return [
        path
        for path in sorted(glob.glob(os.path.join(directory, "*.json")))
        if not path.endswith(METADATA_SUFFIXES)
    ]


def apply_directory(
    api: QuickSightAPI,
    reporter: Reporter,
    directory: str,
    resource_type: str,
    **options,
) -> ApplyReport:
    """Apply every description file in a directory, one after another."""
    if not os.path.isdir(directory):
        raise BackupError(f"Directory not found: {directory}")
    files = description_files(directory, resource_type)
    if not files:
        raise BackupError(f"No JSON files found in {directory}")

    report = ApplyReport(resource_type=resource_type)
    reporter.info(f"Processing {len(files)} {resource_type} file(s) in {directory}")
    for path in files:
        reporter.plain(f"\nProcessing: {os.path.basename(path)}")
        result = apply_file(api, reporter, path, resource_type, **options)
        report.results.append(result)
        if is_success(result):
            report.succeeded += 1
        else:
            report.failed += 1

    reporter.header("Processing summary")
    reporter.success(f"Succeeded: {report.succeeded}")
    if report.failed:
        reporter.error(f"Failed: {report.failed}")
    return report


def apply_backup(
    api: QuickSightAPI,
    reporter: Reporter,
    backup_dir: str,
    **options,
) -> Dict[str, ApplyReport]:
    """Apply a whole backup, datasets before the analyses that use them."""
    reports = {}
    for kind in (DATASET, ANALYSIS):
        try:
            root = resolve_backup_root(backup_dir, kind.resource_type)
        except BackupError:
            logger.debug(f"No {kind.resource_type} backup in {backup_dir}")
            continue
        reporter.header(f"Applying {kind.directory}")
        reports[kind.resource_type] = apply_directory(
            api, reporter, os.path.join(root, kind.directory), kind.resource_type, **options
        )
    if not reports:
        raise BackupError(f"No analysis or dataset backup found in {backup_dir}")
    return reports
