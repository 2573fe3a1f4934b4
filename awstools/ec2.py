"""
EC2 instance listing, start and stop.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import WaiterError

from awstools.aws import AWSContext
from awstools.console import Reporter, confirm
from awstools.envelope import Envelope, get_payload, is_success, make_error, make_success
from awstools.errors import CANCELLED, INVALID_PARAMETER, INVALID_STATE, NOT_FOUND, WAIT_TIMEOUT
from awstools.resources import validate_resource_id

logger = logging.getLogger(__name__)

PROCEED = "proceed"
NOOP = "noop"
INVALID = "invalid"


def plan_start(state: str) -> str:
    """Decide what starting an instance in ``state`` should do."""
    if state == "running":
        return NOOP
    if state == "stopped":
        return PROCEED
    return INVALID


def plan_stop(state: str) -> str:
    """Decide what stopping an instance in ``state`` should do."""
    if state == "stopped":
        return NOOP
    if state == "running":
        return PROCEED
    return INVALID


def instance_name(instance: Dict[str, Any]) -> str:
    for tag in instance.get("Tags") or []:
        if tag.get("Key") == "Name":
            return tag.get("Value", "")
    return ""


class EC2Manager:
    """Start, stop and inspect EC2 instances."""

    # Waiter names by target state
    WAITERS = {"running": "instance_running", "stopped": "instance_stopped"}

    def __init__(self, context: AWSContext, reporter: Reporter):
        self.context = context
        self.reporter = reporter
        self.settings = context.settings

    def _call(self, method: str, operation: str, mutating: bool = False, **params) -> Envelope:
        result = self.context.call("ec2", method, operation, "instance", mutating=mutating, **params)
        if not is_success(result):
            logger.error(f"{operation} failed: {result.error_code}: {result.error_message}")
        return result

    def _invalid_id(self, operation: str, instance_id: str) -> Optional[Envelope]:
        if validate_resource_id("instance", instance_id):
            return None
        message = f"Invalid instance ID: {instance_id!r}"
        logger.error(message)
        return make_error(operation, "instance", INVALID_PARAMETER, message)

    def list_instances(self) -> Envelope:
        """List instances as rows of InstanceId, State, Name and InstanceType."""
        rows: List[Dict[str, str]] = []
        params: Dict[str, Any] = {}
        while True:
            page = self._call("describe_instances", "list_instances", **params)
            if not is_success(page):
                return page
            data = get_payload(page)
            for reservation in data.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    rows.append({
                        "InstanceId": instance["InstanceId"],
                        "State": instance.get("State", {}).get("Name", "unknown"),
                        "Name": instance_name(instance),
                        "InstanceType": instance.get("InstanceType", ""),
                    })
            token = data.get("NextToken")
            if not token:
                break
            params["NextToken"] = token
        logger.info(f"Found {len(rows)} instances")
        return make_success("list_instances", "instance", {"Instances": rows}, page.request_id)

    def describe_instance(self, instance_id: str) -> Envelope:
        """Describe a single instance.

        Returns:
            Envelope whose payload holds InstanceId, Name, State,
            InstanceType, PublicIpAddress, PrivateIpAddress,
            AvailabilityZone and LaunchTime
        """
        invalid = self._invalid_id("describe_instance", instance_id)
        if invalid:
            return invalid
        result = self._call("describe_instances", "describe_instance", InstanceIds=[instance_id])
        if not is_success(result):
            return result
        reservations = get_payload(result).get("Reservations") or []
        if not reservations or not reservations[0].get("Instances"):
            return make_error(
                "describe_instance", "instance", NOT_FOUND, f"Instance not found: {instance_id}"
            )
        instance = reservations[0]["Instances"][0]
        return make_success(
            "describe_instance",
            "instance",
            {
                "InstanceId": instance["InstanceId"],
                "Name": instance_name(instance),
                "State": instance.get("State", {}).get("Name", "unknown"),
                "InstanceType": instance.get("InstanceType", ""),
                "PublicIpAddress": instance.get("PublicIpAddress", "N/A"),
                "PrivateIpAddress": instance.get("PrivateIpAddress", "N/A"),
                "AvailabilityZone": instance.get("Placement", {}).get("AvailabilityZone", ""),
                "LaunchTime": str(instance.get("LaunchTime", "")),
            },
            result.request_id,
        )

    def instance_state(self, instance_id: str) -> Optional[str]:
        """Current state name, or None when the instance cannot be described."""
        result = self.describe_instance(instance_id)
        if not is_success(result):
            return None
        return get_payload(result)["State"]

    def wait_for_state(
        self,
        instance_id: str,
        target: str,
        timeout: Optional[int] = None,
        interval: Optional[int] = None,
    ) -> bool:
        """Wait with the EC2 waiter until the instance reaches ``target``.

        Args:
            instance_id: Instance to watch
            target: "running" or "stopped"
            timeout: Seconds to wait, defaults to ec2_wait_timeout
            interval: Seconds between checks, defaults to ec2_poll_interval

        Returns:
            True if the target state was reached
        """
        timeout = timeout if timeout is not None else self.settings.ec2_wait_timeout
        interval = interval if interval is not None else self.settings.ec2_poll_interval
        self.reporter.info(f"Waiting for {instance_id} to be {target}...")
        waiter = self.context.client("ec2").get_waiter(self.WAITERS[target])
        try:
            waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig={"Delay": interval, "MaxAttempts": max(1, timeout // interval)},
            )
        except WaiterError as e:
            logger.error(f"Waiting for {instance_id} to be {target} failed: {e}")
            self.reporter.warning(f"Timed out after {timeout}s waiting for {instance_id} to be {target}")
            return False
        self.reporter.success(f"Instance {instance_id} is {target}")
        return True

    def _change_state(self, operation: str, method: str, instance_id: str, target: str,
                      wait: bool) -> Envelope:
        verb = "Starting" if target == "running" else "Stopping"
        self.reporter.info(f"{verb} instance {instance_id}...")
        result = self._call(method, operation, mutating=True, InstanceIds=[instance_id])
        if not is_success(result) or not wait or self.context.dry_run:
            return result
        if not self.wait_for_state(instance_id, target):
            return make_error(operation, "instance", WAIT_TIMEOUT,
                              f"Timed out waiting for {instance_id} to be {target}")
        return result

    def start_instance(self, instance_id: str, wait: bool = True) -> Envelope:
        invalid = self._invalid_id("start_instance", instance_id)
        if invalid:
            return invalid
        described = self.describe_instance(instance_id)
        if not is_success(described):
            return described
        state = get_payload(described)["State"]

        plan = plan_start(state)
        if plan == NOOP:
            self.reporter.warning(f"Instance {instance_id} is already running")
            return make_success("start_instance", "instance", {"InstanceId": instance_id, "State": state})
        if plan == INVALID:
            return make_error("start_instance", "instance", INVALID_STATE,
                              f"Instance {instance_id} is {state}, it must be stopped to start")

        return self._change_state("start_instance", "start_instances", instance_id, "running", wait)

    def stop_instance(self, instance_id: str, assume_yes: bool = False, wait: bool = True,
                      input_func: Optional[Callable[[str], str]] = None) -> Envelope:
        invalid = self._invalid_id("stop_instance", instance_id)
        if invalid:
            return invalid
        described = self.describe_instance(instance_id)
        if not is_success(described):
            return described
        state = get_payload(described)["State"]

        plan = plan_stop(state)
        if plan == NOOP:
            self.reporter.warning(f"Instance {instance_id} is already stopped")
            return make_success("stop_instance", "instance", {"InstanceId": instance_id, "State": state})
        if plan == INVALID:
            return make_error("stop_instance", "instance", INVALID_STATE,
                              f"Instance {instance_id} is {state}, it must be running to stop")

        if not confirm(
            f"Stop instance {instance_id}?",
            default=False,
            auto_confirm=self.settings.auto_confirm,
            assume_yes=assume_yes or self.context.dry_run,
            input_func=input_func,
        ):
            return make_error("stop_instance", "instance", CANCELLED, "Operation cancelled")

        return self._change_state("stop_instance", "stop_instances", instance_id, "stopped", wait)
