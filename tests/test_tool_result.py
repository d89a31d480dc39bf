"""
Tests for the tool result envelope.
"""

import time

from turnloop.models.tool_result import ToolEnvelope, timed_execution


class TestToolEnvelope:
    """Payload shapes."""

    def test_success_payload_is_data(self):
        envelope = ToolEnvelope.success({"value": 1}, tool_name="calc")

        assert envelope.to_payload() == {"value": 1}
        assert envelope.tool_name == "calc"

    def test_failure_payload(self):
        envelope = ToolEnvelope.fail("boom", error_type="RuntimeError")

        assert not envelope.ok
        assert envelope.to_payload() == {"error": "boom", "error_type": "RuntimeError"}

    def test_failure_without_type(self):
        assert ToolEnvelope.fail("boom").to_payload() == {"error": "boom"}


class TestTimedExecution:
    def test_records_duration(self):
        with timed_execution() as timing:
            time.sleep(0.01)

        assert timing["duration_ms"] >= 5
