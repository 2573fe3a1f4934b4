import re

import pytest

from awstools.envelope import (
    API_VERSION,
    Envelope,
    get_error,
    get_payload,
    is_success,
    make_error,
    make_success,
    to_dict,
    unwrap,
)
from awstools.errors import InvalidStateError, RemoteCallError


class TestEnvelope:
    """Test cases for result envelopes."""

    def test_make_success(self):
        envelope = make_success("list_analyses", "analysis", {"AnalysisSummaryList": []}, "req-1")

        assert is_success(envelope)
        assert envelope.request_id == "req-1"
        assert envelope.error_code is None
        assert envelope.api_version == API_VERSION
        assert get_payload(envelope) == {"AnalysisSummaryList": []}

    def test_make_success_defaults(self):
        envelope = make_success("op", "analysis", None)

        assert envelope.payload == {}
        assert envelope.request_id
        assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$", envelope.timestamp)

    def test_make_error(self):
        envelope = make_error("describe_analysis", "analysis", "ResourceNotFoundException", "gone")

        assert not is_success(envelope)
        assert envelope.exit_status == 1
        assert get_error(envelope) == {"code": "ResourceNotFoundException", "message": "gone"}

    def test_error_defaults(self):
        envelope = make_error("op", "analysis", "", "")

        assert envelope.error_code == "UnknownError"
        assert envelope.error_message == "Unknown error"

    def test_get_payload_of_error_raises(self):
        envelope = make_error("op", "analysis", "Boom", "failed")

        with pytest.raises(InvalidStateError, match="Cannot read payload"):
            get_payload(envelope)

    def test_get_error_of_success_raises(self):
        with pytest.raises(InvalidStateError, match="Cannot read error"):
            get_error(make_success("op", "analysis", {}))

    def test_inconsistent_envelope_rejected(self):
        with pytest.raises(InvalidStateError):
            Envelope(success=True, operation="op", resource_type="x", request_id="r", error_code="E")
        with pytest.raises(InvalidStateError):
            Envelope(success=False, operation="op", resource_type="x", request_id="r")

    def test_to_dict_success(self):
        data = to_dict(make_success("op", "dataset", {"a": 1}, "req"))

        assert data["success"] is True
        assert data["data"] == {"a": 1}
        assert data["error_code"] is None
        assert data["metadata"]["request_id"] == "req"
        assert data["metadata"]["operation"] == "op"
        assert data["metadata"]["resource_type"] == "dataset"

    def test_to_dict_error_has_no_data(self):
        data = to_dict(make_error("op", "dataset", "Boom", "failed"))

        assert data["success"] is False
        assert data["data"] is None
        assert data["error_message"] == "failed"

    def test_unwrap(self):
        assert unwrap(make_success("op", "x", {"k": "v"})) == {"k": "v"}

        with pytest.raises(RemoteCallError, match="AccessDenied: no") as excinfo:
            unwrap(make_error("op", "x", "AccessDenied", "no", exit_status=254))
        assert excinfo.value.exit_status == 254
        assert excinfo.value.code == "AccessDenied"
