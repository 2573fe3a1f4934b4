"""
Result envelope returned by every remote operation.

An envelope is either a success carrying a payload or an error carrying a
code and message, never both. Both kinds record which operation produced
them and a request id for correlating log lines with AWS support requests.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from awstools.errors import InvalidStateError, RemoteCallError

API_VERSION = "2018-04-01"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class Envelope:
    success: bool
    operation: str
    resource_type: str
    request_id: str
    payload: Any = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    exit_status: int = 0
    timestamp: str = field(default_factory=_utc_timestamp)
    api_version: str = API_VERSION

    def __post_init__(self):
        if self.success and self.error_code is not None:
            raise InvalidStateError("A success envelope cannot carry an error code")
        if not self.success and self.error_code is None:
            raise InvalidStateError("An error envelope requires an error code")


def make_success(
    operation: str,
    resource_type: str,
    payload: Any,
    request_id: Optional[str] = None,
) -> Envelope:
    """Build a success envelope.

    Args:
        operation: Name of the operation that was attempted
        resource_type: Kind of resource the operation acted on
        payload: Structured response data
        request_id: Correlation id from the remote call, generated if omitted

    Returns:
        Success envelope
    """
    if payload is None:
        payload = {}
    return Envelope(
        success=True,
        operation=operation,
        resource_type=resource_type,
        request_id=request_id or str(uuid.uuid4()),
        payload=payload,
    )


def make_error(
    operation: str,
    resource_type: str,
    error_code: str,
    error_message: str,
    request_id: Optional[str] = None,
    exit_status: int = 1,
) -> Envelope:
    """Build an error envelope.

    Args:
        operation: Name of the operation that was attempted
        resource_type: Kind of resource the operation acted on
        error_code: Short machine-readable error code
        error_message: Human-readable description
        request_id: Correlation id, generated if omitted
        exit_status: Process exit status to report for this failure

    Returns:
        Error envelope
    """
    return Envelope(
        success=False,
        operation=operation,
        resource_type=resource_type,
        request_id=request_id or str(uuid.uuid4()),
        error_code=error_code or "UnknownError",
        error_message=error_message or "Unknown error",
        exit_status=exit_status or 1,
    )


def is_success(envelope: Envelope) -> bool:
    return envelope.success


def get_payload(envelope: Envelope) -> Any:
    """Return the payload of a success envelope.

    Raises:
        InvalidStateError: If the envelope is an error
    """
    if not envelope.success:
        raise InvalidStateError(
            f"Cannot read payload of failed {envelope.operation}: "
            f"{envelope.error_code}"
        )
    return envelope.payload


def get_error(envelope: Envelope) -> Dict[str, str]:
    """Return ``{"code", "message"}`` of an error envelope.

    Raises:
        InvalidStateError: If the envelope is a success
    """
    if envelope.success:
        raise InvalidStateError(
            f"Cannot read error of successful {envelope.operation}"
        )
    return {"code": envelope.error_code, "message": envelope.error_message}


def to_dict(envelope: Envelope) -> Dict[str, Any]:
    """Render an envelope in its JSON wire shape."""
    return {
        "success": envelope.success,
        "error_code": envelope.error_code,
        "error_message": envelope.error_message,
        "data": envelope.payload if envelope.success else None,
        "metadata": {
            "request_id": envelope.request_id,
            "timestamp": envelope.timestamp,
            "operation": envelope.operation,
            "resource_type": envelope.resource_type,
            "api_version": envelope.api_version,
        },
    }


def unwrap(envelope: Envelope) -> Any:
    """Return the payload of a success envelope or raise its error.

    Raises:
        RemoteCallError: If the envelope is an error
    """
    if not envelope.success:
        raise RemoteCallError(
            envelope.error_code, envelope.error_message, envelope.exit_status
        )
    return envelope.payload
