"""
Shared boto3 session and client handling.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.config import Config

from awstools.config import DEFAULT_REGION, Settings
from awstools.console import Reporter
from awstools.envelope import Envelope, get_error, get_payload, is_success, make_success
from awstools.errors import InitializationError
from awstools.retry import Invoker, boto_call

logger = logging.getLogger(__name__)


class AWSContext:
    """Session, clients and retry policy for one command invocation.

    Clients are created lazily and cached per service. Their own retry
    handling is disabled so that the Invoker is the only layer retrying.
    """

    def __init__(
        self,
        settings: Settings,
        dry_run: bool = False,
        session_factory: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
        reporter: Optional[Reporter] = None,
    ):
        """Initialize the AWS context.

        Args:
            settings: Resolved settings
            dry_run: Report mutating calls instead of sending them
            session_factory: Creates the boto3 session
            sleep: Blocking wait used between retries
            reporter: Console output for dry-run notices
        """
        self.settings = settings
        self.dry_run = dry_run
        session_factory = session_factory or boto3.Session
        self.reporter = reporter or Reporter(use_color=settings.use_color)
        self.invoker = Invoker(settings.max_attempts, settings.retry_delay, sleep)

        if settings.profile:
            self.session = session_factory(profile_name=settings.profile)
            logger.info(f"Using AWS profile: {settings.profile}")
        else:
            self.session = session_factory()
            logger.debug(
                "Using default AWS credentials (environment variables or default profile)"
            )

        self.region = (
            settings.region or getattr(self.session, "region_name", None) or DEFAULT_REGION
        )
        if not isinstance(self.region, str):
            self.region = DEFAULT_REGION
        self.client_config = Config(
            connect_timeout=settings.call_timeout,
            read_timeout=settings.call_timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        self._clients: Dict[str, Any] = {}
        self._account_id: Optional[str] = None

    def client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self.session.client(
                service, region_name=self.region, config=self.client_config
            )
        return self._clients[service]

    def call(
        self,
        service: str,
        method: str,
        operation: str,
        resource_type: str,
        mutating: bool = False,
        **params,
    ) -> Envelope:
        """Call a client method through the retrying invoker.

        Args:
            service: boto3 service name, e.g. "quicksight"
            method: Client method name, e.g. "describe_analysis"
            operation: Operation name recorded in the envelope
            resource_type: Resource type recorded in the envelope
            mutating: Whether the call changes remote state
            **params: Request parameters

        Returns:
            Result envelope
        """
        if mutating and self.dry_run:
            rendered = json.dumps(params, default=str, sort_keys=True)
            if len(rendered) > 500:
                rendered = rendered[:500] + "..."
            self.reporter.info(f"[DRY RUN] Would call {service}.{method}({rendered})")
            return make_success(
                operation,
                resource_type,
                {"DryRun": True, "Service": service, "Method": method},
            )

        client_method = getattr(self.client(service), method)
        return self.invoker(
            operation, resource_type, lambda: boto_call(client_method, **params)
        )

    def account_id(self) -> str:
        """Return the account id of the current credentials.

        Raises:
            InitializationError: If the caller identity cannot be resolved
        """
        if self._account_id is None:
            identity = self.caller_identity()
            if not is_success(identity):
                error = get_error(identity)
                raise InitializationError(
                    f"Failed to determine AWS account ID: {error['message']}"
                )
            self._account_id = get_payload(identity)["Account"]
        return self._account_id

    def caller_identity(self) -> Envelope:
        return self.call("sts", "get_caller_identity", "get_caller_identity", "identity")
