"""Exception types and error codes shared across awstools."""

# Error codes carried in error envelopes
INVALID_PARAMETER = "InvalidParameter"
INVALID_STATE = "InvalidState"
INITIALIZATION_ERROR = "InitializationError"
MAX_RETRIES_EXCEEDED = "MaxRetriesExceeded"
AWS_CLI_ERROR = "AWS_CLI_Error"
NOT_FOUND = "ResourceNotFound"
ALREADY_EXISTS = "ResourceExists"
CANCELLED = "Cancelled"
WAIT_TIMEOUT = "WaitTimeout"

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class AWSToolsError(Exception):
    """Base class for awstools errors."""

    code = AWS_CLI_ERROR

    def __init__(self, message: str, exit_status: int = EXIT_FAILURE):
        super().__init__(message)
        self.exit_status = exit_status


class InvalidParameterError(AWSToolsError, ValueError):
    """Raised when input is missing or malformed before any remote call."""

    code = INVALID_PARAMETER


class InvalidStateError(AWSToolsError):
    """Raised when an envelope accessor is used on the wrong kind of envelope."""

    code = INVALID_STATE


class InitializationError(AWSToolsError):
    """Raised when credentials, account or region cannot be established."""

    code = INITIALIZATION_ERROR


class RemoteCallError(AWSToolsError):
    """Raised by callers that cannot continue after a failed remote call."""

    def __init__(self, code: str, message: str, exit_status: int = EXIT_FAILURE):
        super().__init__(f"{code}: {message}", exit_status)
        self.code = code
