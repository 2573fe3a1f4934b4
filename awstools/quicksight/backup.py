"""
QuickSight backups.

Backup layout::

    <backup-dir>/
      analyses|datasets/<safe-name>-<id>.json
      definitions/<safe-name>-<id>-definition.json
      permissions/<safe-name>-<id>-permissions.json
      analysis-ids.json | dataset-ids.json
      analysis-summary.json | dataset-summary.json

A full backup holds one such directory per resource type under
``analyses/`` and ``datasets/``.

The ids file is a compact JSON array and is byte-stable. Summary files
are standard two-space indented JSON. Compare them as JSON documents,
not byte for byte.
"""

import glob
import json
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from awstools.console import Reporter
from awstools.envelope import get_payload, is_success, unwrap
from awstools.errors import AWSToolsError
from awstools.quicksight.api import QuickSightAPI
from awstools.resources import safe_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceKind:
    resource_type: str
    prefix: str
    directory: str
    id_key: str
    summary_key: str
    document_key: str


ANALYSIS = ResourceKind(
    "analysis", "analysis", "analyses", "AnalysisId", "AnalysisSummaryList", "Analysis"
)
DATASET = ResourceKind(
    "dataset", "dataset", "datasets", "DataSetId", "DataSetSummaries", "DataSet"
)
KINDS = {"analysis": ANALYSIS, "dataset": DATASET}


class BackupError(AWSToolsError):
    """Raised when a backup cannot be written or read."""


@dataclass
class BackupReport:
    backup_dir: str
    resource_type: str
    ids: List[str] = field(default_factory=list)
    succeeded: int = 0
    warnings: int = 0


def kind_for(resource_type: str) -> ResourceKind:
    try:
        return KINDS[resource_type]
    except KeyError:
        raise BackupError(
            f"Unknown resource type '{resource_type}'. Use 'analysis' or 'dataset'"
        ) from None


def to_jsonable(data: Any) -> Any:
    """Convert boto3 response values (datetimes) to plain JSON values."""
    return json.loads(json.dumps(data, default=_json_default))


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def write_json(path: str, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=_json_default)
        f.write("\n")


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_ids(path: str, ids: Iterable[str]) -> None:
    """Write ids as a compact JSON array, e.g. ``["a","b"]``."""
    with open(path, "w", encoding="utf-8") as f:
        f.write(json.dumps(list(ids), separators=(",", ":")))
        f.write("\n")


def default_backup_dir(label: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"quicksight-{label}-backup-{now:%Y%m%d-%H%M%S}"


@contextmanager
def staged_directory(final_dir: str) -> Iterator[str]:
    """Yield a staging directory that becomes ``final_dir`` on success.

    The staging directory is removed if the block raises.

    Raises:
        BackupError: If ``final_dir`` already exists
    """
    if os.path.exists(final_dir):
        raise BackupError(f"Backup directory already exists: {final_dir}")
    parent = os.path.dirname(os.path.abspath(final_dir))
    os.makedirs(parent, exist_ok=True)
    staging = tempfile.mkdtemp(prefix=f".{os.path.basename(final_dir)}-", dir=parent)
    try:
        yield staging
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise
    os.chmod(staging, 0o755)
    os.rename(staging, final_dir)


def select_targets(
    summaries: List[Dict[str, Any]], targets: Iterable[str], reporter: Reporter
) -> List[Dict[str, Any]]:
    """Pick the summaries whose Name is one of the targets, in listing order.

    No targets selects everything.
    """
    targets = list(targets)
    if not targets:
        return list(summaries)
    names = set(targets)
    selected = [item for item in summaries if item.get("Name") in names]
    found = {item.get("Name") for item in selected}
    for name in targets:
        if name not in found:
            reporter.warning(f"Not found: {name}")
    return selected


def _list_summaries(api: QuickSightAPI, kind: ResourceKind) -> List[Dict[str, Any]]:
    listing = api.list_analyses() if kind is ANALYSIS else api.list_datasets()
    return unwrap(listing).get(kind.summary_key, [])


def count_sheets_and_visuals(definition: Optional[Dict[str, Any]]):
    """Return (sheet count, visual count) of an analysis definition document."""
    sheets = ((definition or {}).get("Definition") or {}).get("Sheets") or []
    visuals = sum(len(sheet.get("Visuals") or []) for sheet in sheets)
    return len(sheets), visuals


def _backup_analysis(api, reporter, backup_dir, summary, base) -> Optional[Dict[str, Any]]:
    analysis_id = summary["AnalysisId"]
    name = summary.get("Name", "")

    described = api.describe_analysis(analysis_id)
    if not is_success(described):
        reporter.error(f"  Basic information retrieval failed: {described.error_message}")
        return None
    write_json(os.path.join(backup_dir, "analyses", f"{base}.json"), get_payload(described))
    reporter.success("    ✓ Basic information saved")

    sheets, visuals = 0, 0
    definition = api.describe_analysis_definition(analysis_id)
    if is_success(definition):
        write_json(
            os.path.join(backup_dir, "definitions", f"{base}-definition.json"),
            get_payload(definition),
        )
        sheets, visuals = count_sheets_and_visuals(get_payload(definition))
        reporter.success("    ✓ Definition information saved")
    else:
        reporter.warning("    Definition information retrieval failed")

    _backup_permissions(api.describe_analysis_permissions(analysis_id), reporter, backup_dir, base)
    return {"Name": name, "AnalysisId": analysis_id, "SheetCount": sheets, "VisualCount": visuals}


def _backup_dataset(api, reporter, backup_dir, summary, base) -> Optional[Dict[str, Any]]:
    dataset_id = summary["DataSetId"]
    name = summary.get("Name", "")

    described = api.describe_dataset(dataset_id)
    if not is_success(described):
        reporter.error(f"  Detailed information retrieval failed: {described.error_message}")
        return None
    write_json(os.path.join(backup_dir, "datasets", f"{base}.json"), get_payload(described))
    reporter.success("    ✓ Detailed information saved")

    _backup_permissions(api.describe_dataset_permissions(dataset_id), reporter, backup_dir, base)
    return {
        "Name": name,
        "DataSetId": dataset_id,
        "ImportMode": summary.get("ImportMode") or "SPICE",
    }


def _backup_permissions(result, reporter, backup_dir, base) -> None:
    if is_success(result):
        write_json(
            os.path.join(backup_dir, "permissions", f"{base}-permissions.json"),
            get_payload(result),
        )
        reporter.success("    ✓ Permission information saved")
    else:
        reporter.warning("    Permission information retrieval failed")


def write_backup(
    api: QuickSightAPI,
    reporter: Reporter,
    resource_type: str,
    backup_dir: str,
    targets: Iterable[str] = (),
) -> BackupReport:
    """Back up analyses or datasets into an existing or new directory.

    Resources are processed one at a time in listing order. A resource whose
    description can't be fetched is skipped with a warning; its id is still
    recorded in the ids file.

    Args:
        api: QuickSight API
        reporter: Console output
        resource_type: "analysis" or "dataset"
        backup_dir: Directory to write into
        targets: Display names to back up, empty for all

    Returns:
        BackupReport

    Raises:
        RemoteCallError: If the listing fails
        BackupError: If nothing matches
    """
    kind = kind_for(resource_type)
    summaries = _list_summaries(api, kind)
    reporter.info(f"Total {kind.directory}: {len(summaries)}")

    selected = select_targets(summaries, targets, reporter)
    if not selected:
        raise BackupError(f"No {kind.directory} to backup")
    reporter.info(f"Target {kind.directory} count: {len(selected)}")

    subdirs = [kind.directory, "permissions"]
    if kind is ANALYSIS:
        subdirs.append("definitions")
    for subdir in subdirs:
        os.makedirs(os.path.join(backup_dir, subdir), exist_ok=True)

    report = BackupReport(backup_dir=backup_dir, resource_type=resource_type)
    summary_rows = []
    for summary in selected:
        resource_id = summary[kind.id_key]
        name = summary.get("Name", "")
        report.ids.append(resource_id)
        reporter.plain(f"  Backing up: {name} (ID: {resource_id})")
        base = f"{safe_name(name)}-{resource_id}"

        if kind is ANALYSIS:
            row = _backup_analysis(api, reporter, backup_dir, summary, base)
        else:
            row = _backup_dataset(api, reporter, backup_dir, summary, base)
        if row is None:
            report.warnings += 1
            continue
        summary_rows.append(row)
        report.succeeded += 1

    write_ids(os.path.join(backup_dir, f"{kind.prefix}-ids.json"), report.ids)
    write_json(os.path.join(backup_dir, f"{kind.prefix}-summary.json"), summary_rows)
    logger.info(
        f"Backed up {report.succeeded} {kind.directory} to {backup_dir} "
        f"({report.warnings} warnings)"
    )
    return report


def _report_completion(reporter: Reporter, report: BackupReport, final_dir: str) -> None:
    kind = kind_for(report.resource_type)
    if report.warnings:
        reporter.warning("Backup completed with warnings")
    else:
        reporter.success("Backup completed")
    reporter.info(f"Backup location: {final_dir}")
    reporter.info(f"Successful: {report.succeeded} {kind.directory}")
    if report.warnings:
        reporter.warning(f"Warnings: {report.warnings} {kind.directory}")


def backup_resources(
    api: QuickSightAPI,
    reporter: Reporter,
    resource_type: str,
    output_dir: Optional[str] = None,
    targets: Iterable[str] = (),
) -> BackupReport:
    """Back up one resource type into a new backup directory."""
    kind = kind_for(resource_type)
    final_dir = output_dir or default_backup_dir(kind.resource_type)
    with staged_directory(final_dir) as staging:
        report = write_backup(api, reporter, resource_type, staging, targets)
    report.backup_dir = final_dir
    _report_completion(reporter, report, final_dir)
    return report


def backup_analyses(api, reporter, output_dir=None, targets=()) -> BackupReport:
    return backup_resources(api, reporter, "analysis", output_dir, targets)


def backup_datasets(api, reporter, output_dir=None, targets=()) -> BackupReport:
    return backup_resources(api, reporter, "dataset", output_dir, targets)


def backup_all(
    api: QuickSightAPI,
    reporter: Reporter,
    output_dir: Optional[str] = None,
    analysis_targets: Iterable[str] = (),
    dataset_targets: Iterable[str] = (),
) -> Dict[str, BackupReport]:
    """Back up analyses and datasets into ``analyses/`` and ``datasets/``."""
    final_dir = output_dir or default_backup_dir("full")
    reports = {}
    with staged_directory(final_dir) as staging:
        reporter.header("Backing up analyses")
        reports["analysis"] = write_backup(
            api, reporter, "analysis", os.path.join(staging, ANALYSIS.directory), analysis_targets
        )
        reporter.header("Backing up datasets")
        reports["dataset"] = write_backup(
            api, reporter, "dataset", os.path.join(staging, DATASET.directory), dataset_targets
        )
    for kind in (ANALYSIS, DATASET):
        reports[kind.resource_type].backup_dir = os.path.join(final_dir, kind.directory)
    reporter.success("Full backup completed")
    reporter.info(f"Backup location: {final_dir}")
    return reports


def resolve_backup_root(backup_dir: str, resource_type: str) -> str:
    """Find the directory holding a resource type's backup files.

    Accepts either a single-type backup directory or a full backup.

    Raises:
        BackupError: If no backup of the type is found
    """
    kind = kind_for(resource_type)
    nested = os.path.join(backup_dir, kind.directory)
    for candidate in (backup_dir, nested):
        if os.path.isfile(os.path.join(candidate, f"{kind.prefix}-ids.json")):
            return candidate
    # Without an ids file, a full backup is <dir>/analyses/analyses/*.json
    for candidate in (nested, backup_dir):
        if os.path.isdir(os.path.join(candidate, kind.directory)):
            return candidate
    raise BackupError(f"No {resource_type} backup found in {backup_dir}")


def read_backup_ids(backup_dir: str, resource_type: str) -> List[str]:
    """Read the ids recorded in a backup.

    Falls back to the ids inside the resource description files when the
    ids file is missing.
    """
    kind = kind_for(resource_type)
    root = resolve_backup_root(backup_dir, resource_type)
    ids_file = os.path.join(root, f"{kind.prefix}-ids.json")
    if os.path.isfile(ids_file):
        ids = read_json(ids_file)
        if not isinstance(ids, list):
            raise BackupError(f"Malformed ids file: {ids_file}")
        return [str(resource_id) for resource_id in ids]
    return list(index_backup_files(backup_dir, resource_type))


def index_backup_files(backup_dir: str, resource_type: str) -> Dict[str, str]:
    """Map resource id to its description file in a backup."""
    kind = kind_for(resource_type)
    root = resolve_backup_root(backup_dir, resource_type)
    index = {}
    for path in sorted(glob.glob(os.path.join(root, kind.directory, "*.json"))):
        try:
            document = read_json(path)
        except ValueError as e:
            logger.warning(f"Skipping unreadable backup file {path}: {e}")
            continue
        if not isinstance(document, dict):
            continue
        resource_id = (document.get(kind.document_key) or {}).get(kind.id_key)
        if resource_id:
            index[resource_id] = path
    return index


def companion_file(path: str, folder: str, suffix: str) -> str:
    """Path of the definitions/permissions file next to a description file."""
    base = os.path.splitext(os.path.basename(path))[0]
    return os.path.join(os.path.dirname(os.path.dirname(path)), folder, f"{base}-{suffix}.json")


def check_diff(api: QuickSightAPI, backup_dir: str, resource_type: str) -> Dict[str, List[str]]:
    """Compare the ids in a backup with the ids in the account.

    Returns:
        {"added": ids only in the account, "removed": ids only in the backup,
        "unchanged": ids in both}, each sorted
    """
    kind = kind_for(resource_type)
    backup_ids = set(read_backup_ids(backup_dir, resource_type))
    current_ids = {item[kind.id_key] for item in _list_summaries(api, kind)}
    return {
        "added": sorted(current_ids - backup_ids),
        "removed": sorted(backup_ids - current_ids),
        "unchanged": sorted(current_ids & backup_ids),
    }


def check_content_diff(
    api: QuickSightAPI, backup_dir: str, resource_type: str
) -> List[Dict[str, Any]]:
    """Compare backed-up resources with their current state.

    Only resources present in both the backup and the account are compared.

    Returns:
        One entry per resource: {"id", "name", "changes": [(field, backup,
        current), ...]}. An empty changes list means no difference.
    """
    kind = kind_for(resource_type)
    files = index_backup_files(backup_dir, resource_type)
    current_ids = {item[kind.id_key] for item in _list_summaries(api, kind)}

    results = []
    for resource_id, path in files.items():
        if resource_id not in current_ids:
            continue
        backup = read_json(path).get(kind.document_key, {})
        if kind is ANALYSIS:
            changes = _analysis_changes(api, resource_id, backup, path)
        else:
            changes = _dataset_changes(api, resource_id, backup)
        results.append({"id": resource_id, "name": backup.get("Name", ""), "changes": changes})
    return results


def _describe_current(api: QuickSightAPI, resource_type: str, resource_id: str) -> Dict[str, Any]:
    kind = kind_for(resource_type)
    if kind is ANALYSIS:
        document = unwrap(api.describe_analysis(resource_id))
    else:
        document = unwrap(api.describe_dataset(resource_id))
    return to_jsonable(document).get(kind.document_key, {})


def _analysis_changes(api, analysis_id, backup, path):
    current = _describe_current(api, "analysis", analysis_id)
    changes = []
    if backup.get("LastUpdatedTime") != current.get("LastUpdatedTime"):
        changes.append(("LastUpdatedTime", backup.get("LastUpdatedTime"), current.get("LastUpdatedTime")))

    definition_file = companion_file(path, "definitions", "definition")
    if os.path.isfile(definition_file):
        backup_counts = count_sheets_and_visuals(read_json(definition_file))
        current_definition = api.describe_analysis_definition(analysis_id)
        if is_success(current_definition):
            current_counts = count_sheets_and_visuals(get_payload(current_definition))
            if backup_counts[0] != current_counts[0]:
                changes.append(("SheetCount", backup_counts[0], current_counts[0]))
            if backup_counts[1] != current_counts[1]:
                changes.append(("VisualCount", backup_counts[1], current_counts[1]))
    return changes


def _dataset_changes(api, dataset_id, backup):
    current = _describe_current(api, "dataset", dataset_id)
    changes = []
    for key in ("LastUpdatedTime", "ImportMode"):
        if backup.get(key) != current.get(key):
            changes.append((key, backup.get(key), current.get(key)))
    backup_tables = len(backup.get("PhysicalTableMap") or {})
    current_tables = len(current.get("PhysicalTableMap") or {})
    if backup_tables != current_tables:
        changes.append(("PhysicalTableCount", backup_tables, current_tables))
    return changes
