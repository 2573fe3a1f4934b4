"""
Runtime settings for awstools.

Settings are resolved once at startup from built-in defaults, an optional
YAML config file, environment variables and command-line overrides (in
that order of precedence) and then passed to every component.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "awstools.yaml"
DEFAULT_REGION = "us-east-1"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
TRUE_VALUES = ("1", "true", "yes", "y", "on")

# YAML section/key -> Settings field
YAML_KEYS = {
    ("aws", "profile"): "profile",
    ("aws", "region"): "region",
    ("logging", "level"): "log_level",
    ("logging", "file"): "log_file",
    ("logging", "color"): "use_color",
    ("confirm", "auto"): "auto_confirm",
    ("retry", "max_attempts"): "max_attempts",
    ("retry", "delay_seconds"): "retry_delay",
    ("retry", "timeout_seconds"): "call_timeout",
    ("quicksight", "target_analyses"): "target_analyses",
    ("quicksight", "target_datasets"): "target_datasets",
    ("ec2", "wait_timeout"): "ec2_wait_timeout",
    ("ec2", "poll_interval"): "ec2_poll_interval",
    ("auth", "session_name"): "session_name",
    ("auth", "duration_seconds"): "session_duration",
    ("auth", "log_file"): "auth_log_file",
}


@dataclass(frozen=True)
class Settings:
    profile: Optional[str] = None
    region: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None
    use_color: bool = True
    auto_confirm: bool = False
    max_attempts: int = 3
    retry_delay: float = 2
    call_timeout: int = 300
    target_analyses: Tuple[str, ...] = ()
    target_datasets: Tuple[str, ...] = ()
    ec2_wait_timeout: int = 180
    ec2_poll_interval: int = 10
    session_name: str = "aws-utilities-session"
    session_duration: int = 3600
    auth_log_file: Optional[str] = None
    config_file: Optional[str] = field(default=None, compare=False)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


def _as_names(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(str(item).strip() for item in value if str(item).strip())


def load_config_file(path: str) -> Dict[str, Any]:
    """Load a YAML config file and flatten it into Settings field values.

    Args:
        path: Path to the YAML file

    Returns:
        Mapping of Settings field name to value

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If the YAML is invalid
        ValueError: If the document isn't a mapping of sections
    """
    try:
        with open(path, "r") as f:
            document = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"Config file not found: {path}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in config file: {e}")
        raise

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    values = {}
    for (section, key), name in YAML_KEYS.items():
        block = document.get(section)
        if block is None:
            continue
        if not isinstance(block, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
        if key in block:
            values[name] = block[key]
    logger.debug(f"Loaded config from {path}")
    return values


def _from_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if environ.get("AWS_PROFILE"):
        values["profile"] = environ["AWS_PROFILE"]
    region = environ.get("AWS_REGION") or environ.get("AWS_DEFAULT_REGION")
    if region:
        values["region"] = region
    if environ.get("LOG_LEVEL"):
        values["log_level"] = environ["LOG_LEVEL"]
    if environ.get("LOG_FILE"):
        values["log_file"] = environ["LOG_FILE"]
    if environ.get("NO_COLOR"):
        values["use_color"] = False
    if environ.get("AUTO_CONFIRM"):
        values["auto_confirm"] = environ["AUTO_CONFIRM"]
    if environ.get("QS_MAX_RETRIES"):
        values["max_attempts"] = environ["QS_MAX_RETRIES"]
    if environ.get("QS_RETRY_DELAY"):
        values["retry_delay"] = environ["QS_RETRY_DELAY"]
    if environ.get("QS_TIMEOUT"):
        values["call_timeout"] = environ["QS_TIMEOUT"]
    if environ.get("TARGET_ANALYSES"):
        values["target_analyses"] = environ["TARGET_ANALYSES"]
    if environ.get("TARGET_DATASETS"):
        values["target_datasets"] = environ["TARGET_DATASETS"]
    return values


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert raw file/environment values to the Settings field types."""
    coerced = dict(values)
    try:
        for name in ("max_attempts", "call_timeout", "ec2_wait_timeout",
                     "ec2_poll_interval", "session_duration"):
            if name in coerced:
                coerced[name] = int(coerced[name])
        if "retry_delay" in coerced:
            coerced["retry_delay"] = float(coerced["retry_delay"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid numeric setting: {e}") from e
    for name in ("use_color", "auto_confirm"):
        if name in coerced:
            coerced[name] = _as_bool(coerced[name])
    for name in ("target_analyses", "target_datasets"):
        if name in coerced:
            coerced[name] = _as_names(coerced[name])
    if coerced.get("log_level"):
        coerced["log_level"] = str(coerced["log_level"]).upper()
    return coerced


def validate_settings(settings: Settings) -> None:
    """Validate resolved settings.

    Raises:
        ValueError: If a setting is out of range
    """
    if settings.log_level not in LOG_LEVELS:
        raise ValueError(
            f"Invalid log level '{settings.log_level}'. Must be one of: "
            f"{', '.join(LOG_LEVELS)}"
        )
    if settings.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if settings.retry_delay < 0:
        raise ValueError("retry delay cannot be negative")
    if settings.call_timeout <= 0:
        raise ValueError("call timeout must be positive")
    if settings.ec2_poll_interval <= 0 or settings.ec2_wait_timeout <= 0:
        raise ValueError("EC2 wait timeout and poll interval must be positive")
    if not 900 <= settings.session_duration <= 43200:
        raise ValueError("session duration must be between 900 and 43200 seconds")


def find_config_file(
    path: Optional[str], environ: Mapping[str, str]
) -> Optional[str]:
    if path:
        return path
    if environ.get("AWSTOOLS_CONFIG"):
        return environ["AWSTOOLS_CONFIG"]
    if os.path.isfile(DEFAULT_CONFIG_FILE):
        return DEFAULT_CONFIG_FILE
    return None


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> Settings:
    """Resolve settings from the config file, environment and overrides.

    Args:
        path: Explicit config file path
        environ: Environment mapping, defaults to os.environ
        **overrides: Settings fields given on the command line; None values
            are ignored

    Returns:
        Validated Settings

    Raises:
        ValueError: If any setting is invalid
    """
    if environ is None:
        environ = os.environ

    values: Dict[str, Any] = {}
    config_file = find_config_file(path, environ)
    if config_file:
        values.update(load_config_file(config_file))
    values.update(_from_environment(environ))

    known = {f.name for f in fields(Settings)}
    for name, value in overrides.items():
        if name not in known:
            raise ValueError(f"Unknown setting: {name}")
        if value is not None:
            values[name] = value

    settings = replace(Settings(config_file=config_file), **_coerce(values))
    validate_settings(settings)
    return settings


def describe_settings(settings: Settings) -> List[Tuple[str, str]]:
    """Return (name, value) pairs for display."""
    rows = []
    for f in fields(settings):
        value = getattr(settings, f.name)
        if isinstance(value, tuple):
            value = ", ".join(value) if value else "(all)"
        rows.append((f.name, "" if value is None else str(value)))
    return rows
