"""
Retrying invoker for remote AWS calls.

Each remote call is described by a zero-argument callable returning a
RawResult. The invoker retries transient failures with a constant delay
and wraps the final outcome in an Envelope.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from botocore.exceptions import BotoCoreError, ClientError

from awstools.envelope import Envelope, make_error, make_success
from awstools.errors import AWS_CLI_ERROR, MAX_RETRIES_EXCEEDED

logger = logging.getLogger(__name__)

# Exit statuses the AWS CLI uses for service errors and client-side errors
SERVICE_ERROR_STATUS = 254
CLIENT_ERROR_STATUS = 255

RETRYABLE_PATTERNS = (
    re.compile(r"throttling|rate.limit|too.many.requests", re.IGNORECASE),
    re.compile(r"internal.error|service.unavailable|timeout", re.IGNORECASE),
    re.compile(r"429|502|503|504"),
)


@dataclass
class RawResult:
    """Outcome of a single remote attempt."""

    ok: bool
    output: Any = None
    request_id: Optional[str] = None
    error_text: str = ""
    exit_status: int = 0
    error_document: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, output: Any, request_id: Optional[str] = None) -> "RawResult":
        return cls(ok=True, output=output, request_id=request_id)

    @classmethod
    def failure(
        cls,
        error_text: str,
        exit_status: int = 1,
        error_document: Optional[Dict[str, Any]] = None,
    ) -> "RawResult":
        return cls(
            ok=False,
            error_text=error_text,
            exit_status=exit_status,
            error_document=error_document,
        )


def is_retryable(raw_error_text: str, exit_status: int = 1) -> bool:
    """Decide whether a failed call is worth retrying.

    Throttling, temporary service errors, timeouts and the HTTP statuses
    429/502/503/504 are transient. Everything else, including credential and
    permission errors, is not.

    Args:
        raw_error_text: Error output of the failed attempt
        exit_status: Exit status of the failed attempt (not consulted)

    Returns:
        True if the call should be retried
    """
    if not raw_error_text:
        return False
    return any(pattern.search(raw_error_text) for pattern in RETRYABLE_PATTERNS)


def parse_error(
    raw: Union[str, Dict[str, Any], None], default_code: str = AWS_CLI_ERROR
) -> Tuple[str, str]:
    """Extract an error code and message from raw error output.

    A structured ``Error.Code``/``Error.Message`` body wins, then a
    ``__type``/``message`` body. Anything else is reported under the default
    code with the raw text as message.

    Returns:
        Tuple of (error_code, error_message)
    """
    document = raw
    if isinstance(raw, str):
        try:
            document = json.loads(raw)
        except ValueError:
            document = None

    if isinstance(document, dict):
        error = document.get("Error")
        if isinstance(error, dict) and error.get("Code"):
            return error["Code"], error.get("Message") or "Unknown error"
        if document.get("__type"):
            message = document.get("message") or document.get("Message")
            return document["__type"], message or "Unknown error"

    text = raw if isinstance(raw, str) else json.dumps(raw, default=str)
    return default_code, text.strip() if text else "Unknown error"


def result_from_exception(error: Exception) -> RawResult:
    """Convert a botocore exception into a failed RawResult."""
    if isinstance(error, ClientError):
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        text = f"{error} (HTTP {status})" if status else str(error)
        return RawResult.failure(text, SERVICE_ERROR_STATUS, error.response)
    return RawResult.failure(str(error), CLIENT_ERROR_STATUS)


def boto_call(method: Callable[..., Dict[str, Any]], **params) -> RawResult:
    """Run a boto3 client method and capture its outcome as a RawResult."""
    try:
        response = method(**params)
    except (ClientError, BotoCoreError) as e:
        return result_from_exception(e)
    return RawResult.success(response)


def _request_id(output: Any) -> Optional[str]:
    if not isinstance(output, dict):
        return None
    metadata = output.get("ResponseMetadata") or {}
    return metadata.get("RequestId") or output.get("RequestId")


def _strip_metadata(output: Any) -> Any:
    if isinstance(output, dict) and "ResponseMetadata" in output:
        return {k: v for k, v in output.items() if k != "ResponseMetadata"}
    return output


def invoke(
    operation: str,
    resource_type: str,
    call: Callable[[], RawResult],
    max_attempts: int = 3,
    delay_seconds: float = 2,
    sleep: Callable[[float], None] = time.sleep,
) -> Envelope:
    """Execute a remote call with retries on transient failures.

    Args:
        operation: Name of the operation, used in logs and the envelope
        resource_type: Kind of resource the call acts on
        call: Performs one attempt and returns its RawResult
        max_attempts: Total number of attempts allowed
        delay_seconds: Constant wait between attempts
        sleep: Blocking wait function

    Returns:
        Success envelope for the first successful attempt, otherwise an
        error envelope describing the last attempt
    """
    if max_attempts < 1:
        return make_error(
            operation,
            resource_type,
            MAX_RETRIES_EXCEEDED,
            f"No attempts allowed for {operation} (max_attempts={max_attempts})",
        )

    attempt = 1
    while True:
        logger.debug(f"Executing {operation} (attempt {attempt}/{max_attempts})")
        try:
            result = call()
        except (ClientError, BotoCoreError) as e:
            result = result_from_exception(e)

        if result.ok:
            request_id = result.request_id or _request_id(result.output)
            return make_success(
                operation, resource_type, _strip_metadata(result.output), request_id
            )

        if is_retryable(result.error_text, result.exit_status) and attempt < max_attempts:
            logger.warning(
                f"Retryable error in {operation}, retrying in {delay_seconds}s "
                f"(attempt {attempt}/{max_attempts}): {result.error_text}"
            )
            sleep(delay_seconds)
            attempt += 1
            continue

        raw = result.error_document if result.error_document else result.error_text
        error_code, error_message = parse_error(raw)
        request_id = _request_id(result.error_document)
        logger.debug(f"{operation} failed after {attempt} attempt(s): {error_code}")
        return make_error(
            operation,
            resource_type,
            error_code,
            error_message,
            request_id,
            exit_status=result.exit_status,
        )


class Invoker:
    """Retry policy bound to configured attempts, delay and sleep function."""

    def __init__(
        self,
        max_attempts: int = 3,
        delay_seconds: float = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self.sleep = sleep

    def __call__(
        self, operation: str, resource_type: str, call: Callable[[], RawResult]
    ) -> Envelope:
        return invoke(
            operation,
            resource_type,
            call,
            max_attempts=self.max_attempts,
            delay_seconds=self.delay_seconds,
            sleep=self.sleep,
        )
