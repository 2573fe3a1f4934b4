"""
Detection of the credential source in use.
"""

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from botocore.utils import InstanceMetadataFetcher

logger = logging.getLogger(__name__)

ProfileConfig = Mapping[str, Mapping[str, Any]]


def detect_auth_simple(environ: Mapping[str, str]) -> str:
    """Return ``profile:<name>``, ``env-vars`` or ``iam-role``."""
    if environ.get("AWS_PROFILE"):
        return f"profile:{environ['AWS_PROFILE']}"
    if environ.get("AWS_ACCESS_KEY_ID"):
        return "env-vars"
    return "iam-role"


def is_sso_profile(config: Mapping[str, Any]) -> bool:
    return bool(config.get("sso_start_url") or config.get("sso_session"))


def is_assume_role_profile(config: Mapping[str, Any]) -> bool:
    return bool(config.get("role_arn"))


def profile_type(config: Mapping[str, Any]) -> str:
    if is_sso_profile(config):
        return "sso"
    if is_assume_role_profile(config):
        return "assume-role"
    return "accesskey"


def _profile_method(name: str, profiles: ProfileConfig) -> str:
    kind = profile_type(profiles.get(name) or {})
    if kind == "assume-role":
        kind = "assume"
    return f"profile-{kind}:{name}"


def instance_metadata_available(timeout: float = 2) -> bool:
    """Check whether EC2 instance metadata offers role credentials."""
    fetcher = InstanceMetadataFetcher(timeout=timeout, num_attempts=1)
    return bool(fetcher.retrieve_iam_role_credentials())


def detect_auth_method(
    environ: Mapping[str, str],
    profiles: ProfileConfig,
    metadata_available: Optional[Callable[[], bool]] = None,
) -> str:
    """Detect the credential source in the order the AWS SDK would use it.

    Args:
        environ: Environment variables
        profiles: Profile name to profile settings from the AWS config files
        metadata_available: Probe for EC2 instance metadata credentials

    Returns:
        One of env-vars-session, env-vars, profile-sso:<p>,
        profile-assume:<p>, profile-accesskey:<p>, instance-profile,
        web-identity or unknown
    """
    if environ.get("AWS_ACCESS_KEY_ID") and environ.get("AWS_SECRET_ACCESS_KEY"):
        return "env-vars-session" if environ.get("AWS_SESSION_TOKEN") else "env-vars"

    if environ.get("AWS_PROFILE"):
        return _profile_method(environ["AWS_PROFILE"], profiles)

    if metadata_available is None:
        metadata_available = instance_metadata_available
    if metadata_available():
        return "instance-profile"

    if environ.get("AWS_WEB_IDENTITY_TOKEN_FILE") and environ.get("AWS_ROLE_ARN"):
        return "web-identity"

    if "default" in profiles:
        return _profile_method("default", profiles)

    logger.debug("No authentication method detected")
    return "unknown"


def describe_method(method: str) -> str:
    """Human-readable description of a detected method."""
    kind, _, profile = method.partition(":")
    descriptions: Dict[str, str] = {
        "env-vars": "Using environment variables (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY)",
        "env-vars-session": "Using environment variables with a session token",
        "profile-sso": f"Using SSO profile: {profile}",
        "profile-assume": f"Using assume role profile: {profile}",
        "profile-accesskey": f"Using access key profile: {profile}",
        "instance-profile": "Using EC2 instance profile",
        "web-identity": "Using web identity token (EKS, etc.)",
    }
    return descriptions.get(kind, "No authentication method detected")
