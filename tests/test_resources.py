import pytest
from unittest.mock import MagicMock

from awstools.envelope import make_error, make_success
from awstools.resources import ResourceManager, safe_name, validate_resource_id


class TestValidateResourceId:
    """Test cases for resource id validation."""

    @pytest.mark.parametrize(
        "resource_type,resource_id",
        [
            ("analysis", "sales-dashboard_2024"),
            ("dataset", "a" * 512),
            ("instance", "i-0123456789abcdef0"),
            ("instance", "i-01234567"),
            ("account", "123456789012"),
        ],
    )
    def test_valid(self, resource_type, resource_id):
        assert validate_resource_id(resource_type, resource_id)

    @pytest.mark.parametrize(
        "resource_type,resource_id",
        [
            ("analysis", ""),
            ("analysis", "has space"),
            ("dataset", "a" * 513),
            ("instance", "i-XYZ"),
            ("instance", "0123456789abcdef0"),
            ("account", "12345"),
            ("unknown", "anything"),
        ],
    )
    def test_invalid(self, resource_type, resource_id):
        assert not validate_resource_id(resource_type, resource_id)


def test_safe_name():
    assert safe_name('Sales: Q1/Q2 "final"?') == "Sales_ Q1_Q2 _final__"
    assert safe_name(None) == ""


class TestResourceManager:
    """Test cases for existence checks and upserts."""

    @pytest.fixture
    def manager(self):
        return ResourceManager()

    def test_exists_uses_describe(self, manager):
        describe = MagicMock(return_value=make_success("describe", "analysis", {}))
        manager.register("analysis", describe)

        assert manager.exists("analysis", "abc")
        describe.assert_called_once_with("abc")

    def test_exists_false_on_error(self, manager):
        manager.register("analysis", lambda _: make_error("describe", "analysis", "NotFound", "x"))

        assert not manager.exists("analysis", "abc")

    def test_invalid_id_skips_remote_call(self, manager):
        describe = MagicMock()
        manager.register("analysis", describe)

        assert not manager.exists("analysis", "bad id")
        describe.assert_not_called()

    def test_unregistered_type(self, manager):
        with pytest.raises(KeyError):
            manager.exists("dataset", "abc")

    def test_resource_types(self, manager):
        manager.register("dataset", MagicMock())
        manager.register("analysis", MagicMock())

        assert manager.resource_types() == ["analysis", "dataset"]

    def test_upsert_updates_existing(self, manager):
        manager.register("analysis", lambda _: make_success("describe", "analysis", {}))
        create = MagicMock()
        update = MagicMock(return_value=make_success("update", "analysis", {}))

        result = manager.upsert("analysis", "abc", create, update)

        assert result.operation == "update"
        update.assert_called_once_with()
        create.assert_not_called()

    def test_upsert_creates_missing(self, manager):
        manager.register("analysis", lambda _: make_error("describe", "analysis", "NotFound", "x"))
        create = MagicMock(return_value=make_success("create", "analysis", {}))
        update = MagicMock()

        result = manager.upsert("analysis", "abc", create, update)

        assert result.operation == "create"
        create.assert_called_once_with()
        update.assert_not_called()

    def test_upsert_returns_create_failure(self, manager):
        manager.register("analysis", lambda _: make_error("describe", "analysis", "NotFound", "x"))
        failure = make_error("create", "analysis", "ResourceExistsException", "raced")

        result = manager.upsert("analysis", "abc", lambda: failure, MagicMock())

        assert result is failure
