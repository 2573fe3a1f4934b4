"""
Resource identifiers and create-or-update support.
"""

import logging
import re
from typing import Callable, Dict

from awstools.envelope import Envelope, is_success

logger = logging.getLogger(__name__)

QUICKSIGHT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,512}$")

ID_PATTERNS = {
    "analysis": QUICKSIGHT_ID_PATTERN,
    "dataset": QUICKSIGHT_ID_PATTERN,
    "dashboard": QUICKSIGHT_ID_PATTERN,
    "template": QUICKSIGHT_ID_PATTERN,
    "instance": re.compile(r"^i-[0-9a-f]{8,17}$"),
    "account": re.compile(r"^[0-9]{12}$"),
}

UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')


def validate_resource_id(resource_type: str, resource_id: str) -> bool:
    """Check a resource id against the pattern for its type.

    Args:
        resource_type: One of the keys of ID_PATTERNS
        resource_id: Identifier supplied by the caller

    Returns:
        True if the id is well formed
    """
    pattern = ID_PATTERNS.get(resource_type)
    if pattern is None:
        logger.warning(f"Unknown resource type for validation: {resource_type}")
        return False
    if not resource_id or not pattern.match(resource_id):
        logger.debug(f"Invalid {resource_type} id: {resource_id!r}")
        return False
    return True


def safe_name(name: str) -> str:
    """Make a display name usable as part of a file name."""
    return UNSAFE_FILENAME_CHARS.sub("_", name or "")


class ResourceManager:
    """Existence checks and upserts over registered describe calls.

    Each resource type registers a describe function taking an id and
    returning an Envelope. ``upsert`` probes existence and then runs exactly
    one of the create or update functions. The probe and the write are two
    separate remote calls, so another actor can create the resource in
    between; the create then fails with the service's "already exists" error,
    which is returned to the caller unchanged.
    """

    def __init__(self):
        self._describers: Dict[str, Callable[[str], Envelope]] = {}

    def register(self, resource_type: str, describe: Callable[[str], Envelope]) -> None:
        self._describers[resource_type] = describe

    def resource_types(self):
        return sorted(self._describers)

    def exists(self, resource_type: str, resource_id: str) -> bool:
        """Return True if the describe call for the resource succeeds.

        Raises:
            KeyError: If no describe call is registered for the type
        """
        describe = self._describers[resource_type]
        if not validate_resource_id(resource_type, resource_id):
            return False
        return is_success(describe(resource_id))

    def upsert(
        self,
        resource_type: str,
        resource_id: str,
        create_fn: Callable[[], Envelope],
        update_fn: Callable[[], Envelope],
    ) -> Envelope:
        """Update the resource if it exists, otherwise create it."""
        if self.exists(resource_type, resource_id):
            logger.info(f"{resource_type} {resource_id} exists, updating")
            return update_fn()
        logger.info(f"{resource_type} {resource_id} not found, creating")
        return create_fn()
