"""AWS authentication detection and switching."""

from awstools.auth.detect import detect_auth_method, detect_auth_simple
from awstools.auth.manager import AuthManager, default_registry, render_exports
from awstools.auth.registry import AuthRegistry

__all__ = [
    "AuthManager",
    "AuthRegistry",
    "default_registry",
    "detect_auth_method",
    "detect_auth_simple",
    "render_exports",
]
