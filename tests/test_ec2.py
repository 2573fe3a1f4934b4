import pytest
from unittest.mock import MagicMock

from botocore.exceptions import ClientError, WaiterError

from awstools.ec2 import INVALID, NOOP, PROCEED, EC2Manager, instance_name, plan_start, plan_stop
from awstools.envelope import get_payload, is_success
from awstools.errors import CANCELLED, INVALID_PARAMETER, INVALID_STATE, NOT_FOUND, WAIT_TIMEOUT

INSTANCE_ID = "i-0123456789abcdef0"


def reservation(state, instance_id=INSTANCE_ID, name="web"):
    return {
        "Reservations": [
            {
                "Instances": [
                    {
                        "InstanceId": instance_id,
                        "State": {"Name": state},
                        "InstanceType": "t3.micro",
                        "Tags": [{"Key": "Name", "Value": name}],
                        "Placement": {"AvailabilityZone": "us-east-1a"},
                        "PrivateIpAddress": "10.0.0.1",
                    }
                ]
            }
        ]
    }


def waiter_timeout(name):
    return WaiterError(name=name, reason="Max attempts exceeded", last_response={})


@pytest.fixture
def ec2(clients):
    return clients("ec2")


@pytest.fixture
def waiter(ec2):
    # Mock the waiter
    mock_waiter = MagicMock()
    ec2.get_waiter.return_value = mock_waiter
    return mock_waiter


@pytest.fixture
def manager(make_context, reporter, ec2):
    return EC2Manager(make_context(), reporter)
class TestPlans:
    """Test cases for start/stop decisions."""

    @pytest.mark.parametrize(
        "state,expected",
        [("stopped", PROCEED), ("running", NOOP), ("pending", INVALID), ("stopping", INVALID)],
    )
    def test_plan_start(self, state, expected):
        assert plan_start(state) == expected

    @pytest.mark.parametrize(
        "state,expected",
        [("running", PROCEED), ("stopped", NOOP), ("pending", INVALID), ("terminated", INVALID)],
    )
    def test_plan_stop(self, state, expected):
        assert plan_stop(state) == expected

    def test_instance_name(self):
        assert instance_name({"Tags": [{"Key": "Env", "Value": "x"}, {"Key": "Name", "Value": "db"}]}) == "db"
        assert instance_name({}) == ""


class TestEC2Manager:
    """Test cases for instance operations."""

    def test_list_instances_paginates(self, manager, ec2):
        ec2.describe_instances.side_effect = [
            dict(reservation("running"), NextToken="t1"),
            reservation("stopped", "i-00000000000000001", "db"),
        ]

        result = manager.list_instances()

        instances = get_payload(result)["Instances"]
        assert [i["State"] for i in instances] == ["running", "stopped"]
        assert instances[1]["Name"] == "db"
        assert ec2.describe_instances.call_args_list[1].kwargs == {"NextToken": "t1"}

    def test_describe_instance(self, manager, ec2):
        ec2.describe_instances.return_value = reservation("running")

        payload = get_payload(manager.describe_instance(INSTANCE_ID))

        assert payload["Name"] == "web"
        assert payload["AvailabilityZone"] == "us-east-1a"
        assert payload["PublicIpAddress"] == "N/A"
        ec2.describe_instances.assert_called_once_with(InstanceIds=[INSTANCE_ID])

    def test_describe_invalid_id(self, manager, ec2):
        assert manager.describe_instance("web-1").error_code == INVALID_PARAMETER
        ec2.describe_instances.assert_not_called()

    def test_describe_not_found(self, manager, ec2):
        ec2.describe_instances.return_value = {"Reservations": []}

        assert manager.describe_instance(INSTANCE_ID).error_code == NOT_FOUND

    def test_instance_state(self, manager, ec2):
        ec2.describe_instances.return_value = reservation("pending")

        assert manager.instance_state(INSTANCE_ID) == "pending"

    def test_instance_state_unknown_instance(self, manager, ec2):
        ec2.describe_instances.return_value = {"Reservations": []}

        assert manager.instance_state(INSTANCE_ID) is None

    def test_start_already_running(self, manager, ec2):
        ec2.describe_instances.return_value = reservation("running")

        result = manager.start_instance(INSTANCE_ID)

        assert is_success(result)
        ec2.start_instances.assert_not_called()

    def test_start_wrong_state(self, manager, ec2):
        ec2.describe_instances.return_value = reservation("stopping")

        assert manager.start_instance(INSTANCE_ID).error_code == INVALID_STATE
        ec2.start_instances.assert_not_called()

    def test_start_keeps_describe_error(self, manager, ec2):
        """A failed describe is returned as is, with its service code and exit status."""
        ec2.describe_instances.side_effect = ClientError(
            {
                "Error": {"Code": "UnauthorizedOperation", "Message": "not allowed"},
                "ResponseMetadata": {"HTTPStatusCode": 403},
            },
            "DescribeInstances",
        )

        result = manager.start_instance(INSTANCE_ID)

        assert result.error_code == "UnauthorizedOperation"
        assert result.exit_status == 254
        ec2.start_instances.assert_not_called()

    def test_stop_keeps_describe_error(self, manager, ec2):
        ec2.describe_instances.side_effect = ClientError(
            {"Error": {"Code": "UnauthorizedOperation", "Message": "not allowed"}},
            "DescribeInstances",
        )

        result = manager.stop_instance(INSTANCE_ID, assume_yes=True)

        assert result.error_code == "UnauthorizedOperation"
        ec2.stop_instances.assert_not_called()

    def test_start_and_wait(self, manager, ec2, waiter):
        ec2.describe_instances.return_value = reservation("stopped")
        ec2.start_instances.return_value = {"StartingInstances": []}

        result = manager.start_instance(INSTANCE_ID)

        assert is_success(result)
        ec2.start_instances.assert_called_once_with(InstanceIds=[INSTANCE_ID])
        ec2.get_waiter.assert_called_once_with("instance_running")
        waiter.wait.assert_called_once_with(
            InstanceIds=[INSTANCE_ID], WaiterConfig={"Delay": 10, "MaxAttempts": 18}
        )

    def test_start_wait_timeout_is_an_error(self, manager, ec2, waiter):
        ec2.describe_instances.return_value = reservation("stopped")
        waiter.wait.side_effect = waiter_timeout("InstanceRunning")

        result = manager.start_instance(INSTANCE_ID)

        assert not is_success(result)
        assert result.error_code == WAIT_TIMEOUT
        assert result.exit_status == 1
        assert "running" in result.error_message

    def test_start_without_wait(self, manager, ec2, waiter):
        ec2.describe_instances.return_value = reservation("stopped")

        manager.start_instance(INSTANCE_ID, wait=False)

        assert ec2.describe_instances.call_count == 1
        ec2.get_waiter.assert_not_called()

    def test_wait_for_state_config(self, manager, ec2, waiter):
        assert manager.wait_for_state(INSTANCE_ID, "stopped", timeout=30, interval=10)

        ec2.get_waiter.assert_called_once_with("instance_stopped")
        waiter.wait.assert_called_once_with(
            InstanceIds=[INSTANCE_ID], WaiterConfig={"Delay": 10, "MaxAttempts": 3}
        )

    def test_wait_times_out(self, manager, waiter):
        waiter.wait.side_effect = waiter_timeout("InstanceRunning")

        assert not manager.wait_for_state(INSTANCE_ID, "running", timeout=30, interval=10)

    def test_stop_requires_confirmation(self, manager, ec2):
        ec2.describe_instances.return_value = reservation("running")

        result = manager.stop_instance(INSTANCE_ID, input_func=MagicMock(return_value="n"))

        assert result.error_code == CANCELLED
        ec2.stop_instances.assert_not_called()

    def test_stop_default_is_no(self, manager, ec2):
        ec2.describe_instances.return_value = reservation("running")

        result = manager.stop_instance(INSTANCE_ID, input_func=MagicMock(return_value=""))

        assert result.error_code == CANCELLED

    def test_stop_with_yes(self, manager, ec2, waiter):
        ec2.describe_instances.return_value = reservation("running")

        result = manager.stop_instance(INSTANCE_ID, assume_yes=True)

        assert is_success(result)
        ec2.stop_instances.assert_called_once_with(InstanceIds=[INSTANCE_ID])
        ec2.get_waiter.assert_called_once_with("instance_stopped")

    def test_stop_wait_timeout_is_an_error(self, manager, ec2, waiter):
        ec2.describe_instances.return_value = reservation("running")
        waiter.wait.side_effect = waiter_timeout("InstanceStopped")

        result = manager.stop_instance(INSTANCE_ID, assume_yes=True)

        assert result.error_code == WAIT_TIMEOUT

    def test_stop_already_stopped(self, manager, ec2):
        ec2.describe_instances.return_value = reservation("stopped")

        assert is_success(manager.stop_instance(INSTANCE_ID))
        ec2.stop_instances.assert_not_called()

    def test_dry_run_stop(self, make_context, reporter, ec2):
        manager = EC2Manager(make_context(dry_run=True), reporter)
        ec2.describe_instances.return_value = reservation("running")

        result = manager.stop_instance(INSTANCE_ID)

        assert get_payload(result)["DryRun"] is True
        ec2.stop_instances.assert_not_called()
        ec2.get_waiter.assert_not_called()
        assert ec2.describe_instances.call_count == 1
