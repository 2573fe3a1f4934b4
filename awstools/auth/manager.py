"""
Authentication commands: status, login, role assumption and profile switching.

A child process cannot change its parent shell's environment, so commands
that switch credentials return the variables to set as ``exports``. The
CLI prints them as ``export``/``unset`` lines for use with
``eval "$(awstools auth ...)"``.
"""

import getpass
import logging
import os
import re
import shlex
import shutil
import subprocess
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional

import botocore.session
from botocore.exceptions import BotoCoreError

from awstools.auth.detect import (
    detect_auth_method,
    instance_metadata_available,
    is_sso_profile,
    profile_type,
)
from awstools.auth.registry import AuthRegistry, register_logging_hooks
from awstools.aws import AWSContext
from awstools.config import Settings
from awstools.console import Reporter
from awstools.envelope import Envelope, get_payload, is_success, make_error, make_success
from awstools.errors import INITIALIZATION_ERROR, INVALID_PARAMETER, NOT_FOUND

logger = logging.getLogger(__name__)

CREDENTIAL_VARIABLES = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN")
ENV_VARIABLES = ("AWS_PROFILE",) + CREDENTIAL_VARIABLES + ("AWS_REGION", "AWS_DEFAULT_REGION")
SECRET_VARIABLES = ("AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN")
SECRET_PROFILE_KEYS = ("aws_secret_access_key", "aws_session_token")
ROLE_ARN_PATTERN = re.compile(r"^arn:aws[a-zA-Z-]*:iam::[0-9]{12}:role/[\w+=,.@/-]+$")
TEST_SERVICES = ("sts", "s3", "ec2")
# Login handler by profile type, and by detected method when no profile is given
PROFILE_HANDLERS = {"sso": "sso", "assume-role": "assume", "accesskey": "accesskey"}
METHOD_HANDLERS = {
    "env-vars": "env-vars",
    "env-vars-session": "env-vars",
    "instance-profile": "instance-profile",
    "web-identity": "web-identity",
}


def render_exports(exports: Mapping[str, Optional[str]]) -> List[str]:
    """Render shell lines; a None value unsets the variable."""
    lines = []
    for name, value in exports.items():
        if value is None:
            lines.append(f"unset {name}")
        else:
            lines.append(f"export {name}={shlex.quote(str(value))}")
    return lines


def mask(value: Optional[str]) -> str:
    if not value:
        return "<not set>"
    if len(value) <= 4:
        return "****"
    return f"{value[:4]}****"


class AuthManager:
    """Authentication operations bound to one set of settings."""

    def __init__(
        self,
        settings: Settings,
        reporter: Reporter,
        environ: Optional[Mapping[str, str]] = None,
        registry: Optional[AuthRegistry] = None,
        session_factory: Optional[Callable[..., Any]] = None,
        profile_loader: Optional[Callable[[], Dict[str, Dict[str, Any]]]] = None,
        metadata_probe: Callable[[], bool] = instance_metadata_available,
        runner: Callable[..., Any] = subprocess.run,
        getpass_func: Callable[[str], str] = getpass.getpass,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.reporter = reporter
        self.environ = os.environ if environ is None else environ
        self.registry = registry or default_registry(settings.auth_log_file)
        self.session_factory = session_factory
        self.profile_loader = profile_loader or self._load_profiles
        self.metadata_probe = metadata_probe
        self.runner = runner
        self.getpass_func = getpass_func
        self.sleep = sleep

    @staticmethod
    def _load_profiles() -> Dict[str, Dict[str, Any]]:
        return botocore.session.Session().full_config.get("profiles", {})

    def profiles(self) -> Dict[str, Dict[str, Any]]:
        return self.profile_loader()

    def context(self, profile: Optional[str] = None) -> AWSContext:
        settings = self.settings if profile is None else replace(self.settings, profile=profile)
        return AWSContext(settings, session_factory=self.session_factory,
                          sleep=self.sleep, reporter=self.reporter)

    def identity(self, profile: Optional[str] = None) -> Envelope:
        """Call sts:GetCallerIdentity with the current or a given profile."""
        try:
            return self.context(profile).caller_identity()
        except BotoCoreError as e:
            # Unknown profile or broken config file
            logger.debug(f"Could not create session: {e}")
            return make_error("get_caller_identity", "identity", INITIALIZATION_ERROR, str(e))

    def detect(self) -> str:
        return detect_auth_method(self.environ, self.profiles(), self.metadata_probe)

    def current_profile(self) -> Optional[str]:
        return self.settings.profile or self.environ.get("AWS_PROFILE")

    def sso_status(self, profile: str) -> str:
        return "active" if is_success(self.identity(profile)) else "expired"

    def status(self) -> Envelope:
        """Return the active identity with method, account, region and profile."""
        identity = self.identity()
        if not is_success(identity):
            return identity
        data = get_payload(identity)
        context = self.context()
        status = {
            "Method": self.detect(),
            "Account": data.get("Account"),
            "Arn": data.get("Arn"),
            "UserId": data.get("UserId"),
            "Region": context.region,
            "Profile": self.current_profile(),
        }
        if status["Profile"] and "sso" in status["Method"]:
            status["SSOSession"] = self.sso_status(status["Profile"])
        return make_success("status", "auth", status, identity.request_id)

    def require_profile(self, profile: Optional[str], operation: str) -> Optional[Envelope]:
        if not profile:
            return make_error(operation, "auth", INVALID_PARAMETER, "Profile name is required")
        if profile not in self.profiles():
            return make_error(operation, "auth", NOT_FOUND, f"Profile not found: {profile}")
        return None

    def login(self, profile: Optional[str] = None) -> Envelope:
        """Start a session, choosing the handler from the profile type.

        SSO profiles run ``aws sso login``, assume-role profiles assume
        their role and any other profile is switched to. Without a profile
        the detected credential source is validated.
        """
        profile = profile or self.current_profile()
        if not profile:
            method = self.detect()
            if ":" in method:
                profile = method.split(":", 1)[1]
            else:
                handler = METHOD_HANDLERS.get(method)
                if not handler:
                    return make_error(
                        "login", "auth", INITIALIZATION_ERROR,
                        "No credentials found. Specify a profile: awstools auth login <profile>",
                    )
                logger.info(f"Validating {method} credentials")
                return self.registry.execute(handler, self)

        missing = self.require_profile(profile, "login")
        if missing:
            return missing
        handler = PROFILE_HANDLERS[profile_type(self.profiles()[profile])]
        logger.info(f"Logging in with profile {profile} using the {handler} handler")
        return self.registry.execute(handler, self, profile=profile)

    def sso_login(self, profile: Optional[str] = None) -> Envelope:
        return self.registry.execute("sso", self, profile=profile or self.current_profile())

    def sso_logout(self) -> Envelope:
        aws = shutil.which("aws")
        if not aws:
            return make_error("sso_logout", "auth", INITIALIZATION_ERROR,
                              "AWS CLI is required for SSO logout")
        completed = self.runner([aws, "sso", "logout"], check=False)
        if completed.returncode != 0:
            return make_error("sso_logout", "auth", "SSOLogoutFailed",
                              "aws sso logout failed", exit_status=completed.returncode)
        return make_success("sso_logout", "auth", {})

    def assume(self, role_or_profile: str, **kwargs) -> Envelope:
        """Assume a role given by ARN or by an assume-role profile name."""
        if role_or_profile and role_or_profile.startswith("arn:"):
            return self.registry.execute("assume", self, role_arn=role_or_profile, **kwargs)
        return self.registry.execute("assume", self, profile=role_or_profile, **kwargs)

    def set_profile(self, profile: str) -> Envelope:
        return self.registry.execute("accesskey", self, profile=profile)

    def list_profiles(self) -> List[Dict[str, str]]:
        current = self.current_profile()
        rows = []
        for name, config in sorted(self.profiles().items()):
            kind = profile_type(config)
            rows.append({
                "Profile": name,
                "Type": kind,
                "Session": self.sso_status(name) if kind == "sso" else "",
                "Current": "*" if name == current else "",
            })
        return rows

    def list_handlers(self) -> List[Dict[str, str]]:
        return [
            {
                "Name": entry.name,
                "Version": entry.version,
                "Description": entry.description,
                "Dependencies": ", ".join(entry.dependencies),
            }
            for entry in (self.registry.get(name) for name in self.registry.names())
        ]

    def test(self, service: str = "sts") -> Envelope:
        """Check that the current credentials can call a service."""
        if service not in TEST_SERVICES:
            return make_error(
                "test", "auth", INVALID_PARAMETER,
                f"Unknown service for authentication test: {service}. "
                f"Supported services: {', '.join(TEST_SERVICES)}",
            )
        try:
            context = self.context()
        except BotoCoreError as e:
            return make_error("test", "auth", INITIALIZATION_ERROR, str(e))
        if service == "sts":
            return context.caller_identity()
        if service == "s3":
            return context.call("s3", "list_buckets", "test_s3", "auth")
        return context.call("ec2", "describe_regions", "test_ec2", "auth")

    def clear(self) -> Dict[str, Optional[str]]:
        return {name: None for name in ("AWS_PROFILE",) + CREDENTIAL_VARIABLES}

    def show_env(self) -> List[Dict[str, str]]:
        rows = []
        for name in ENV_VARIABLES:
            value = self.environ.get(name)
            if name in SECRET_VARIABLES or name == "AWS_ACCESS_KEY_ID":
                shown = "<set>" if value else "<not set>"
            else:
                shown = value or "<not set>"
            rows.append({"Variable": name, "Value": shown})
        return rows

    def profile_info(self, profile: str) -> Envelope:
        missing = self.require_profile(profile, "profile_info")
        if missing:
            return missing
        config = dict(self.profiles()[profile])
        for key in SECRET_PROFILE_KEYS:
            if key in config:
                config[key] = "****"
        if "aws_access_key_id" in config:
            config["aws_access_key_id"] = mask(config["aws_access_key_id"])
        config["type"] = profile_type(config)
        return make_success("profile_info", "auth", {"Profile": profile, "Config": config})


# Built-in handlers. Each takes the AuthManager and keyword arguments and
# returns an Envelope whose payload may carry "exports".

def _verified(manager: AuthManager, operation: str, profile: Optional[str],
              exports: Dict[str, Optional[str]]) -> Envelope:
    identity = manager.identity(profile)
    if not is_success(identity):
        return make_error(operation, "auth", identity.error_code,
                          f"Credential check failed: {identity.error_message}",
                          exit_status=identity.exit_status)
    return make_success(operation, "auth",
                        {"Identity": get_payload(identity), "exports": exports},
                        identity.request_id)


def handle_sso(manager: AuthManager, profile: Optional[str] = None) -> Envelope:
    missing = manager.require_profile(profile, "sso_login")
    if missing:
        return missing
    if not is_sso_profile(manager.profiles()[profile]):
        return make_error("sso_login", "auth", INVALID_PARAMETER,
                          f"Profile {profile} is not an SSO profile")

    aws = shutil.which("aws")
    if not aws:
        return make_error("sso_login", "auth", INITIALIZATION_ERROR,
                          "AWS CLI is required for SSO login")
    logger.info(f"Starting SSO login for profile: {profile}")
    completed = manager.runner([aws, "sso", "login", "--profile", profile], check=False)
    if completed.returncode != 0:
        return make_error("sso_login", "auth", "SSOLoginFailed",
                          f"SSO login failed for profile {profile}",
                          exit_status=completed.returncode)
    return _verified(manager, "sso_login", profile, _profile_exports(profile))


def _profile_exports(profile: str) -> Dict[str, Optional[str]]:
    exports: Dict[str, Optional[str]] = {name: None for name in CREDENTIAL_VARIABLES}
    exports["AWS_PROFILE"] = profile
    return exports


def handle_profile(manager: AuthManager, profile: Optional[str] = None) -> Envelope:
    missing = manager.require_profile(profile, "set_profile")
    if missing:
        return missing
    config = manager.profiles()[profile]
    if is_sso_profile(config) and manager.sso_status(profile) != "active":
        manager.reporter.warning(
            f"SSO session for {profile} is not active. Run: awstools auth sso-login {profile}"
        )
        return make_success("set_profile", "auth", {"exports": _profile_exports(profile)})
    return _verified(manager, "set_profile", profile, _profile_exports(profile))


def handle_assume(
    manager: AuthManager,
    role_arn: Optional[str] = None,
    profile: Optional[str] = None,
    session_name: Optional[str] = None,
    duration: Optional[int] = None,
    external_id: Optional[str] = None,
    mfa_serial: Optional[str] = None,
    mfa_token: Optional[str] = None,
) -> Envelope:
    source_profile = None
    if profile and not role_arn:
        missing = manager.require_profile(profile, "assume_role")
        if missing:
            return missing
        config = manager.profiles()[profile]
        role_arn = config.get("role_arn")
        if not role_arn:
            return make_error("assume_role", "auth", INVALID_PARAMETER,
                              f"Profile {profile} has no role_arn")
        source_profile = config.get("source_profile")
        external_id = external_id or config.get("external_id")
        mfa_serial = mfa_serial or config.get("mfa_serial")
        if duration is None and config.get("duration_seconds"):
            duration = int(config["duration_seconds"])

    if not role_arn or not ROLE_ARN_PATTERN.match(role_arn):
        return make_error("assume_role", "auth", INVALID_PARAMETER,
                          f"Invalid role ARN: {role_arn!r}")
    if mfa_serial and not mfa_token:
        mfa_token = manager.getpass_func(f"MFA code for {mfa_serial}: ")

    params: Dict[str, Any] = {
        "RoleArn": role_arn,
        "RoleSessionName": session_name or manager.settings.session_name,
        "DurationSeconds": duration or manager.settings.session_duration,
    }
    if external_id:
        params["ExternalId"] = external_id
    if mfa_serial and mfa_token:
        params["SerialNumber"] = mfa_serial
        params["TokenCode"] = mfa_token

    logger.info(f"Assuming role: {role_arn}")
    try:
        context = manager.context(source_profile)
    except BotoCoreError as e:
        return make_error("assume_role", "auth", INITIALIZATION_ERROR, str(e))
    result = context.call("sts", "assume_role", "assume_role", "auth", **params)
    if not is_success(result):
        return result
    credentials = get_payload(result).get("Credentials") or {}
    if not all(credentials.get(key) for key in ("AccessKeyId", "SecretAccessKey", "SessionToken")):
        return make_error("assume_role", "auth", "InvalidCredentials",
                          "Invalid credentials received from assume role operation")
    exports: Dict[str, Optional[str]] = {
        "AWS_ACCESS_KEY_ID": credentials["AccessKeyId"],
        "AWS_SECRET_ACCESS_KEY": credentials["SecretAccessKey"],
        "AWS_SESSION_TOKEN": credentials["SessionToken"],
        "AWS_PROFILE": None,
    }
    return make_success(
        "assume_role",
        "auth",
        {
            "AssumedRoleUser": get_payload(result).get("AssumedRoleUser", {}),
            "Expiration": str(credentials.get("Expiration", "")),
            "exports": exports,
        },
        result.request_id,
    )


def handle_instance_profile(manager: AuthManager) -> Envelope:
    if not manager.metadata_probe():
        return make_error("instance_profile", "auth", INITIALIZATION_ERROR,
                          "EC2 instance metadata credentials are not available")
    exports = {name: None for name in ("AWS_PROFILE",) + CREDENTIAL_VARIABLES}
    return _verified(manager, "instance_profile", None, exports)


def handle_web_identity(manager: AuthManager) -> Envelope:
    token_file = manager.environ.get("AWS_WEB_IDENTITY_TOKEN_FILE")
    if not token_file or not manager.environ.get("AWS_ROLE_ARN"):
        return make_error("web_identity", "auth", INITIALIZATION_ERROR,
                          "AWS_WEB_IDENTITY_TOKEN_FILE and AWS_ROLE_ARN must be set")
    if not os.path.isfile(token_file):
        return make_error("web_identity", "auth", NOT_FOUND,
                          f"Web identity token file not found: {token_file}")
    return _verified(manager, "web_identity", None, {})


def handle_env_vars(manager: AuthManager) -> Envelope:
    if not (manager.environ.get("AWS_ACCESS_KEY_ID") and manager.environ.get("AWS_SECRET_ACCESS_KEY")):
        return make_error("env_vars", "auth", INITIALIZATION_ERROR,
                          "AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY must be set")
    return _verified(manager, "env_vars", None, {"AWS_PROFILE": None})


def default_registry(log_file: Optional[str] = None) -> AuthRegistry:
    """Registry with the built-in handlers and logging hooks."""
    registry = AuthRegistry()
    registry.register("sso", handle_sso, "AWS SSO (IAM Identity Center) authentication",
                      "2.0.0", ("aws-cli>=2.0",))
    registry.register("accesskey", handle_profile, "Named profile authentication", "2.0.0")
    registry.register("assume", handle_assume, "AWS role assumption authentication", "2.0.0")
    registry.register("instance-profile", handle_instance_profile,
                      "EC2 instance profile authentication", "2.0.0")
    registry.register("web-identity", handle_web_identity,
                      "Web identity token authentication (EKS, etc.)", "2.0.0")
    registry.register("env-vars", handle_env_vars, "Environment variable authentication", "2.0.0")
    register_logging_hooks(registry, log_file)
    return registry
