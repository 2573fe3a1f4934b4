#!/usr/bin/env python3
"""
AWS Tools command line.

Usage:
    awstools [--debug] [--no-color] [--log-file PATH] [--config PATH] <command> ...

Global commands:
    detect-auth   Detect the authentication source
    version       Show version information

Services:
    ec2           EC2 instance management
    quicksight    QuickSight analysis and dataset backup and restore
    auth          AWS authentication management
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import yaml

from awstools import __version__
from awstools.auth import AuthManager, detect_auth_simple, render_exports
from awstools.auth.detect import describe_method
from awstools.aws import AWSContext
from awstools.config import Settings, describe_settings, load_settings
from awstools.console import Reporter, confirm
from awstools.ec2 import EC2Manager
from awstools.envelope import Envelope, get_payload, is_success, to_dict, unwrap
from awstools.errors import AWSToolsError, EXIT_FAILURE, EXIT_SUCCESS
from awstools.logging_setup import configure_logging
from awstools.quicksight import backup, restore
from awstools.quicksight.api import QuickSightAPI

logger = logging.getLogger(__name__)

GLOBAL_COMMANDS = {
    "detect-auth": "Detect authentication source (profile, env-vars, iam-role)",
    "version": "Show version information",
}


@dataclass(frozen=True)
class ServiceManifest:
    name: str
    description: str
    version: str
    add_parser: Callable[[Any, argparse.ArgumentParser], None]


class ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors with exit status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def _service_options() -> argparse.ArgumentParser:
    common = ArgumentParser(add_help=False)
    common.add_argument("--profile", "-P", help="AWS profile name to use for authentication")
    common.add_argument("--region", "-R", help="AWS region")
    common.add_argument(
        "--dry-run", action="store_true", help="Show mutating calls without making them"
    )
    common.add_argument("--yes", "-y", action="store_true", help="Skip confirmation prompts")
    common.add_argument(
        "--output", choices=["text", "json"], default="text", help="Output format"
    )
    return common


def _print_envelope(reporter: Reporter, envelope: Envelope) -> None:
    reporter.out.print_json(json.dumps(to_dict(envelope), default=str))


def _finish(reporter: Reporter, envelope: Envelope, success_message: Optional[str] = None) -> int:
    """Report an operation outcome and return the exit status."""
    if is_success(envelope):
        if success_message:
            reporter.success(success_message)
        return EXIT_SUCCESS
    reporter.error(f"{envelope.error_message} ({envelope.error_code})")
    return envelope.exit_status or EXIT_FAILURE


# Global commands

def run_detect_auth(args, settings: Settings, reporter: Reporter) -> int:
    print(detect_auth_simple(os.environ))
    return EXIT_SUCCESS


def run_version(args, settings: Settings, reporter: Reporter) -> int:
    print(f"AWS Tools v{__version__}")
    print()
    print("For help and available commands:")
    print("  awstools --help")
    print("  awstools <service> --help")
    return EXIT_SUCCESS


# EC2

def add_ec2_parser(subparsers, common: argparse.ArgumentParser) -> None:
    parser = subparsers.add_parser(
        "ec2", help=SERVICES["ec2"].description,
        description=SERVICES["ec2"].description,
    )
    actions = parser.add_subparsers(dest="action", metavar="<command>")
    actions.required = True
    actions.add_parser("list", parents=[common], help="List EC2 instances")
    for name, help_text in (
        ("describe", "Show details of an instance"),
        ("start", "Start a stopped instance"),
        ("stop", "Stop a running instance"),
    ):
        action = actions.add_parser(name, parents=[common], help=help_text)
        action.add_argument("instance_id", help="Instance ID (i-xxxxxxxx)")
        if name != "describe":
            action.add_argument(
                "--no-wait", action="store_true", help="Return without waiting for the new state"
            )
    parser.set_defaults(handler=run_ec2)


def run_ec2(args, settings: Settings, reporter: Reporter) -> int:
    context = AWSContext(settings, dry_run=args.dry_run, reporter=reporter)
    manager = EC2Manager(context, reporter)

    if args.action == "list":
        result = manager.list_instances()
        if args.output == "json":
            _print_envelope(reporter, result)
        elif is_success(result):
            instances = get_payload(result)["Instances"]
            if instances:
                reporter.table(
                    f"EC2 instances ({context.region})",
                    ["Instance ID", "State", "Name", "Type"],
                    [[i["InstanceId"], i["State"], i["Name"], i["InstanceType"]] for i in instances],
                )
            else:
                reporter.warning("No instances found")
        return _finish(reporter, result)

    if args.action == "describe":
        result = manager.describe_instance(args.instance_id)
        if args.output == "json":
            _print_envelope(reporter, result)
        elif is_success(result):
            reporter.table(None, ["Field", "Value"], get_payload(result).items())
        return _finish(reporter, result)

    if args.action == "start":
        result = manager.start_instance(args.instance_id, wait=not args.no_wait)
        return _finish(reporter, result)

    result = manager.stop_instance(args.instance_id, assume_yes=args.yes, wait=not args.no_wait)
    return _finish(reporter, result)


# QuickSight

def add_quicksight_parser(subparsers, common: argparse.ArgumentParser) -> None:
    parser = subparsers.add_parser(
        "quicksight", help=SERVICES["quicksight"].description,
        description=SERVICES["quicksight"].description,
    )
    actions = parser.add_subparsers(dest="action", metavar="<command>")
    actions.required = True

    for name, alias, help_text in (
        ("list-analyses", "list-analysis", "List analyses"),
        ("list-datasets", "list-dataset", "List datasets"),
    ):
        action = actions.add_parser(name, aliases=[alias], parents=[common], help=help_text)
        action.add_argument("--name", help="Case-insensitive name pattern (regex)")

    for name, help_text in (
        ("backup-analysis", "Back up analyses"),
        ("backup-dataset", "Back up datasets"),
        ("backup-all", "Back up analyses and datasets"),
    ):
        action = actions.add_parser(name, parents=[common], help=help_text)
        action.add_argument("-d", "--dir", help="Backup directory (default: timestamped)")

    apply_parser = actions.add_parser(
        "apply", parents=[common], help="Create or update resources from backup files"
    )
    source = apply_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("-f", "--file", help="Single JSON description file")
    source.add_argument("-d", "--dir", help="Directory of JSON description files")
    apply_parser.add_argument(
        "-t", "--type", dest="resource_type", choices=["analysis", "dataset"], required=True
    )
    _add_apply_options(apply_parser)

    apply_backup_parser = actions.add_parser(
        "apply-backup", parents=[common], help="Apply a whole backup, datasets first"
    )
    apply_backup_parser.add_argument("backup_dir", help="Backup directory")
    _add_apply_options(apply_backup_parser)

    for name, help_text in (
        ("diff", "Compare resource IDs in a backup with the account"),
        ("content-diff", "Compare backed-up resources with their current state"),
    ):
        action = actions.add_parser(name, parents=[common], help=help_text)
        action.add_argument("backup_dir", help="Backup directory")
        action.add_argument(
            "-t", "--type", dest="resource_type", choices=["analysis", "dataset"],
            default="analysis",
        )

    actions.add_parser("show-config", parents=[common], help="Show the effective configuration")
    parser.set_defaults(handler=run_quicksight)


def _add_apply_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-o", "--operation", choices=list(restore.OPERATIONS), default="upsert",
        help="create, update or upsert (default: upsert)",
    )
    parser.add_argument(
        "-p", "--permissions", action="store_true", help="Also apply saved permissions"
    )
    parser.add_argument(
        "-r", "--refresh", action="store_true", help="Refresh SPICE datasets after applying"
    )


def run_quicksight(args, settings: Settings, reporter: Reporter) -> int:
    if args.action == "show-config":
        reporter.table("QuickSight configuration", ["Setting", "Value"], describe_settings(settings))
        return EXIT_SUCCESS

    context = AWSContext(settings, dry_run=args.dry_run, reporter=reporter)
    api = QuickSightAPI(context)

    if args.action in ("list-analyses", "list-analysis", "list-datasets", "list-dataset"):
        return _quicksight_list(api, args, reporter)

    if args.action == "backup-analysis":
        backup.backup_analyses(api, reporter, args.dir, settings.target_analyses)
        return EXIT_SUCCESS
    if args.action == "backup-dataset":
        backup.backup_datasets(api, reporter, args.dir, settings.target_datasets)
        return EXIT_SUCCESS
    if args.action == "backup-all":
        backup.backup_all(
            api, reporter, args.dir, settings.target_analyses, settings.target_datasets
        )
        return EXIT_SUCCESS

    if args.action in ("apply", "apply-backup"):
        return _quicksight_apply(api, args, settings, reporter)

    if args.action == "diff":
        diff = backup.check_diff(api, args.backup_dir, args.resource_type)
        reporter.header(f"{args.resource_type} ID differences")
        for resource_id in diff["added"]:
            reporter.success(f"+ {resource_id} (only in account)")
        for resource_id in diff["removed"]:
            reporter.error(f"- {resource_id} (only in backup)")
        reporter.info(
            f"Added: {len(diff['added'])}, removed: {len(diff['removed'])}, "
            f"unchanged: {len(diff['unchanged'])}"
        )
        return EXIT_SUCCESS

    results = backup.check_content_diff(api, args.backup_dir, args.resource_type)
    rows = [
        [item["id"], item["name"], field, backup_value, current_value]
        for item in results
        for field, backup_value, current_value in item["changes"]
    ]
    if rows:
        reporter.table(
            f"{args.resource_type} content differences",
            ["ID", "Name", "Field", "Backup", "Current"],
            rows,
        )
    else:
        reporter.success(f"No content differences in {len(results)} {args.resource_type} resource(s)")
    return EXIT_SUCCESS


def _quicksight_list(api: QuickSightAPI, args, reporter: Reporter) -> int:
    analyses = args.action.startswith("list-analys")
    if args.name:
        result = api.find_analyses(args.name) if analyses else api.find_datasets(args.name)
    else:
        result = api.list_analyses() if analyses else api.list_datasets()

    if args.output == "json":
        _print_envelope(reporter, result)
        return _finish(reporter, result)

    items = unwrap(result).get("AnalysisSummaryList" if analyses else "DataSetSummaries", [])
    if analyses:
        rows = [[i.get("Name"), i.get("AnalysisId"), i.get("Status"), i.get("LastUpdatedTime")]
                for i in items]
        columns = ["Name", "Analysis ID", "Status", "Last Updated"]
    else:
        rows = [[i.get("Name"), i.get("DataSetId"), i.get("ImportMode", "N/A"), i.get("LastUpdatedTime")]
                for i in items]
        columns = ["Name", "Dataset ID", "Import Mode", "Last Updated"]
    reporter.table(f"{'Analyses' if analyses else 'Datasets'} ({len(rows)})", columns, rows)
    return EXIT_SUCCESS


def _quicksight_apply(api: QuickSightAPI, args, settings: Settings, reporter: Reporter) -> int:
    options: Dict[str, Any] = {
        "operation": args.operation,
        "dry_run": args.dry_run,
        "apply_permissions": args.permissions,
        "refresh": args.refresh,
    }
    target = getattr(args, "file", None) or getattr(args, "dir", None) or args.backup_dir
    if not args.dry_run and not confirm(
        f"Apply {target} with operation '{args.operation}'?",
        default=False,
        auto_confirm=settings.auto_confirm,
        assume_yes=args.yes,
    ):
        reporter.warning("Operation cancelled")
        return EXIT_FAILURE

    if args.action == "apply-backup":
        reports = restore.apply_backup(api, reporter, args.backup_dir, **options)
        return EXIT_SUCCESS if all(r.ok for r in reports.values()) else EXIT_FAILURE
    if args.file:
        result = restore.apply_file(api, reporter, args.file, args.resource_type, **options)
        return _finish(reporter, result)
    report = restore.apply_directory(api, reporter, args.dir, args.resource_type, **options)
    return EXIT_SUCCESS if report.ok else EXIT_FAILURE


# Auth

def add_auth_parser(subparsers, common: argparse.ArgumentParser) -> None:
    parser = subparsers.add_parser(
        "auth", help=SERVICES["auth"].description,
        description=SERVICES["auth"].description,
    )
    actions = parser.add_subparsers(dest="action", metavar="<command>")
    actions.required = True
    actions.add_parser("status", parents=[common], help="Show the current authentication status")
    actions.add_parser("detect", parents=[common], help="Detect the authentication method in detail")
    login = actions.add_parser(
        "login", parents=[common], help="Log in with a profile, choosing SSO, assume-role or access keys"
    )
    login.add_argument("profile_name", nargs="?", help="Profile name")
    sso_login = actions.add_parser("sso-login", parents=[common], help="Log in to AWS SSO with a profile")
    sso_login.add_argument("profile_name", nargs="?", help="SSO profile name")
    actions.add_parser("sso-logout", parents=[common], help="Log out of all AWS SSO sessions")

    assume = actions.add_parser("assume", parents=[common], help="Assume a role; prints export lines")
    assume.add_argument("role", help="Role ARN or assume-role profile name")
    assume.add_argument("--session-name", help="Role session name")
    assume.add_argument("--duration", type=int, help="Session duration in seconds")
    assume.add_argument("--external-id", help="External ID")
    assume.add_argument("--mfa-serial", help="MFA device serial number or ARN")
    assume.add_argument("--mfa-token", help="MFA token code")

    set_profile = actions.add_parser(
        "set-profile", parents=[common], help="Switch to a profile; prints export lines"
    )
    set_profile.add_argument("profile_name", help="Profile name")
    actions.add_parser("list-profiles", parents=[common], help="List configured profiles")
    handlers = actions.add_parser("list-handlers", parents=[common], help="List authentication handlers")
    handlers.add_argument("--format", choices=["table", "json", "names"], default="table")
    test = actions.add_parser("test", parents=[common], help="Test credentials against a service")
    test.add_argument("service", nargs="?", default="sts", choices=["sts", "s3", "ec2"])
    actions.add_parser("clear", parents=[common], help="Print unset lines for AWS credential variables")
    actions.add_parser("show-env", parents=[common], help="Show AWS environment variables")
    info = actions.add_parser("profile-info", parents=[common], help="Show a profile's configuration")
    info.add_argument("profile_name", help="Profile name")
    parser.set_defaults(handler=run_auth)


def _print_exports(envelope: Envelope) -> None:
    for line in render_exports(get_payload(envelope).get("exports") or {}):
        print(line)


def run_auth(args, settings: Settings, reporter: Reporter) -> int:
    manager = AuthManager(settings, reporter)
    action = args.action

    if action == "status":
        result = manager.status()
        if not is_success(result):
            reporter.error("Not authenticated")
            reporter.plain("Suggestions:")
            reporter.plain("  1. Configure AWS credentials: aws configure")
            reporter.plain("  2. Use SSO login: awstools auth sso-login <profile>")
            reporter.plain("  3. Set profile: awstools auth set-profile <profile>")
            reporter.plain("  4. Check available profiles: awstools auth list-profiles")
            return _finish(reporter, result)
        reporter.table("Authentication status", ["Field", "Value"], get_payload(result).items())
        return EXIT_SUCCESS

    if action == "detect":
        method = manager.detect()
        reporter.plain(f"Detected authentication method: {method}")
        reporter.plain(describe_method(method))
        if method.startswith("profile-sso:"):
            reporter.plain(f"SSO session status: {manager.sso_status(method.split(':', 1)[1])}")
        return EXIT_FAILURE if method == "unknown" else EXIT_SUCCESS

    if action in ("login", "sso-login"):
        if action == "login":
            result = manager.login(args.profile_name)
        else:
            result = manager.sso_login(args.profile_name)
        if is_success(result):
            _print_exports(result)
        return _finish(reporter, result, "Login successful" if action == "login" else "SSO login successful")

    if action == "sso-logout":
        return _finish(reporter, manager.sso_logout(), "Logged out of AWS SSO")

    if action == "assume":
        result = manager.assume(
            args.role,
            session_name=args.session_name,
            duration=args.duration,
            external_id=args.external_id,
            mfa_serial=args.mfa_serial,
            mfa_token=args.mfa_token,
        )
        if is_success(result):
            _print_exports(result)
        return _finish(reporter, result)

    if action == "set-profile":
        result = manager.set_profile(args.profile_name)
        if is_success(result):
            _print_exports(result)
        return _finish(reporter, result)

    if action == "list-profiles":
        rows = manager.list_profiles()
        if not rows:
            reporter.warning("No AWS profiles configured")
            return EXIT_SUCCESS
        reporter.table(
            "AWS profiles", ["Profile", "Type", "Session", "Current"],
            [list(row.values()) for row in rows],
        )
        return EXIT_SUCCESS

    if action == "list-handlers":
        rows = manager.list_handlers()
        if args.format == "json":
            print(json.dumps(rows, indent=2))
        elif args.format == "names":
            for row in rows:
                print(row["Name"])
        else:
            reporter.table(
                "Authentication handlers", ["Name", "Version", "Description", "Dependencies"],
                [list(row.values()) for row in rows],
            )
        return EXIT_SUCCESS

    if action == "test":
        result = manager.test(args.service)
        return _finish(reporter, result, f"{args.service.upper()} authentication test passed")

    if action == "clear":
        for line in render_exports(manager.clear()):
            print(line)
        return EXIT_SUCCESS

    if action == "show-env":
        reporter.table(
            "AWS environment", ["Variable", "Value"],
            [list(row.values()) for row in manager.show_env()],
        )
        return EXIT_SUCCESS

    result = manager.profile_info(args.profile_name)
    if is_success(result):
        config = get_payload(result)["Config"]
        reporter.table(f"Profile: {args.profile_name}", ["Key", "Value"], sorted(config.items()))
    return _finish(reporter, result)


SERVICES: Dict[str, ServiceManifest] = {
    "ec2": ServiceManifest("ec2", "EC2 instance management", "1.0.0", add_ec2_parser),
    "quicksight": ServiceManifest(
        "quicksight", "QuickSight analysis and dataset backup and restore", "1.0.0",
        add_quicksight_parser,
    ),
    "auth": ServiceManifest("auth", "AWS authentication management", "2.0.0", add_auth_parser),
}


def _epilog() -> str:
    lines = ["Global commands:"]
    lines += [f"  {name:<14}{text}" for name, text in GLOBAL_COMMANDS.items()]
    lines.append("")
    lines.append("Services:")
    lines += [
        f"  {m.name:<14}{m.description} (v{m.version})" for m in SERVICES.values()
    ]
    return "\n".join(lines)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="awstools",
        description="AWS Tools - QuickSight, EC2 and authentication utilities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=_epilog(),
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--config", help="YAML config file")

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")
    detect = subparsers.add_parser("detect-auth", help=GLOBAL_COMMANDS["detect-auth"])
    detect.set_defaults(handler=run_detect_auth)
    version = subparsers.add_parser("version", help=GLOBAL_COMMANDS["version"])
    version.set_defaults(handler=run_version)

    common = _service_options()
    for manifest in SERVICES.values():
        manifest.add_parser(subparsers, common)
    return parser


def _command_word(argv: List[str]) -> Optional[str]:
    """Return the first positional word, skipping global options."""
    skip_next = False
    for word in argv:
        if skip_next:
            skip_next = False
            continue
        if word in ("--log-file", "--config"):
            skip_next = True
            continue
        if word.startswith("-"):
            continue
        return word
    return None


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the awstools command line."""
    argv = sys.argv[1:] if argv is None else list(argv)
    parser = build_parser()

    if not argv:
        parser.print_help()
        return EXIT_FAILURE

    command = _command_word(argv)
    if command and command not in GLOBAL_COMMANDS and command not in SERVICES:
        print(f"Error: Unknown service or command: {command}", file=sys.stderr)
        print("Available services:", file=sys.stderr)
        for manifest in SERVICES.values():
            print(f"  - {manifest.name:<12} {manifest.description}", file=sys.stderr)
        return EXIT_FAILURE

    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return EXIT_FAILURE

    try:
        settings = load_settings(
            args.config,
            log_level="DEBUG" if args.debug else None,
            log_file=args.log_file,
            use_color=False if args.no_color else None,
            profile=getattr(args, "profile", None),
            region=getattr(args, "region", None),
        )
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    configure_logging(settings.log_level, settings.log_file)
    reporter = Reporter(use_color=settings.use_color)

    try:
        return args.handler(args, settings, reporter)
    except AWSToolsError as e:
        reporter.error(str(e))
        return e.exit_status
    except KeyboardInterrupt:
        reporter.error("Interrupted")
        return EXIT_FAILURE
    except Exception as e:
        logger.debug("Unhandled error", exc_info=True)
        reporter.error(str(e))
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
