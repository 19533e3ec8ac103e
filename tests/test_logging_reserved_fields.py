# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Tests for structured logging: reserved fields, context ids, JSON output."""

import json
import logging

import pytest

from companion.logging import (
    JsonFormatter,
    PhaseTimer,
    StructuredLogger,
    clear_context,
    get_decision_id,
    get_unit_id,
    redact_secrets,
    sanitize_for_log,
    set_decision_id,
    set_unit_id,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_context()
    yield
    clear_context()


class TestLoggingReservedFields:
    """Test suite for logging reserved field handling."""

    def test_unit_fields_logging(self, caplog):
        """Test that domain fields can be logged without errors."""
        logger = StructuredLogger(__name__)

        with caplog.at_level(logging.INFO):
            logger.info("Taking control of unit", unit_name="Pasqal", ability_id="abl_strike")

        assert "Taking control of unit" in caplog.text
        assert "unit_name=Pasqal" in caplog.text

    def test_reserved_field_warning(self, caplog):
        """Test that using reserved field 'name' triggers a warning."""
        logger = StructuredLogger(__name__)

        with caplog.at_level(logging.WARNING):
            logger.info("Test message", name="test_value")

        warning_found = any(
            "reserved LogRecord attribute" in record.message
            for record in caplog.records
            if record.levelname == "WARNING"
        )
        assert warning_found, "Expected warning about reserved attribute 'name'"

    def test_reserved_field_is_renamed(self, caplog):
        logger = StructuredLogger(__name__)

        with caplog.at_level(logging.INFO):
            logger.info("Test message", module="orchestrator")

        info_records = [r for r in caplog.records if r.levelname == "INFO"]
        assert info_records[0].field_module == "orchestrator"
        assert "field_module=orchestrator" in info_records[0].getMessage()

    def test_multiple_reserved_fields_warning(self, caplog):
        """Test that using multiple reserved fields triggers warnings."""
        logger = StructuredLogger(__name__)

        with caplog.at_level(logging.WARNING):
            logger.info(
                "Test message",
                name="test_name",
                msg="test_msg",
                module="test_module"
            )

        warnings = [
            record for record in caplog.records
            if record.levelname == "WARNING" and "reserved LogRecord attribute" in record.message
        ]
        assert len(warnings) == 3

    def test_non_reserved_fields_work(self, caplog):
        """Test that non-reserved fields work without warnings."""
        logger = StructuredLogger(__name__)

        with caplog.at_level(logging.INFO):
            logger.info(
                "Test message",
                target_id="E1",
                confidence=80,
                custom_field="value"
            )

        warnings = [record for record in caplog.records if record.levelname == "WARNING"]
        assert len(warnings) == 0


class TestCorrelationContext:

    def test_context_ids_attached_to_records(self, caplog):
        logger = StructuredLogger(__name__)
        set_unit_id("C1")
        set_decision_id("abc123")

        with caplog.at_level(logging.INFO):
            logger.info("Oracle request dispatched")

        record = caplog.records[0]
        assert record.unit_id == "C1"
        assert record.decision_id == "abc123"
        assert "unit_id=C1" in record.getMessage()

    def test_clear_context(self):
        set_unit_id("C1")
        set_decision_id("abc123")

        clear_context()

        assert get_unit_id() is None
        assert get_decision_id() is None


class TestHelpers:

    def test_redact_openai_key(self):
        text = "key is sk-" + "a" * 40
        assert redact_secrets(text) == "key is sk-***REDACTED***"

    def test_redact_bearer_token(self):
        assert "abc.def" not in redact_secrets("Authorization: Bearer abc.def")

    def test_sanitize_strips_control_characters_and_truncates(self):
        assert sanitize_for_log("Pas\nqal\t") == "Pasqal"
        assert sanitize_for_log("x" * 10, max_length=4) == "xxxx..."

    def test_phase_timer_logs_completion(self, caplog):
        logger = StructuredLogger(__name__)

        with caplog.at_level(logging.DEBUG):
            with PhaseTimer("snapshot", logger) as timer:
                pass

        assert "Phase completed: snapshot" in caplog.text
        assert timer.duration_ms >= 0

    def test_phase_timer_logs_failure(self, caplog):
        logger = StructuredLogger(__name__)

        with caplog.at_level(logging.DEBUG):
            with pytest.raises(RuntimeError):
                with PhaseTimer("snapshot", logger):
                    raise RuntimeError("boom")

        assert "Phase failed: snapshot" in caplog.text
        assert "error_type=RuntimeError" in caplog.text

    def test_json_formatter_includes_extras(self):
        record = logging.LogRecord(
            name="companion.test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Oracle answered",
            args=(),
            exc_info=None
        )
        record.unit_id = "C1"

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "companion.test"
        assert data["message"] == "Oracle answered"
        assert data["unit_id"] == "C1"
        assert "lineno" not in data
