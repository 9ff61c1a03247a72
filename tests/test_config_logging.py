"""
Tests for configuration loading and structured logging
"""

import json
import logging

import pytest
from pydantic import ValidationError

from ngnasoro import config as config_module
from ngnasoro.config import NgnaSoroConfig, reload_config, get_config
from ngnasoro.logging_config import (
    JSONFormatter, CorrelationFilter, setup_logging, get_logger, log_action,
    correlation_context, get_correlation_id
)


class TestConfig:
    """Test environment based settings"""

    def test_defaults(self, monkeypatch):
        for name in ("NGNASORO_CURRENCY", "NGNASORO_REMINDER_LEAD_DAYS", "NGNASORO_API_PORT"):
            monkeypatch.delenv(name, raising=False)
        settings = NgnaSoroConfig(_env_file=None)

        assert settings.currency == "XOF"
        assert settings.reminder_lead_days == [7, 3, 1]
        assert settings.reminder_cron == "0 8 * * *"
        assert settings.late_fee_grace_days == 7
        assert settings.reminder_dedupe_enabled is True
        assert settings.scheduler_enabled is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("NGNASORO_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("NGNASORO_REMINDER_LEAD_DAYS", "[5, 2]")
        monkeypatch.setenv("NGNASORO_SCHEDULER_ENABLED", "true")
        monkeypatch.setenv("NGNASORO_API_PORT", "9000")

        settings = NgnaSoroConfig(_env_file=None)

        assert settings.storage_backend == "memory"
        assert settings.reminder_lead_days == [5, 2]
        assert settings.scheduler_enabled is True
        assert settings.api_port == 9000

    def test_reload_config(self, monkeypatch):
        original = config_module.config
        monkeypatch.setattr(config_module, "config", original)
        monkeypatch.setenv("NGNASORO_LATE_FEE_RATE", "0.1")

        reloaded = reload_config()

        assert reloaded.late_fee_rate == "0.1"
        assert get_config() is reloaded

    def test_lead_days_normalised(self):
        settings = NgnaSoroConfig(_env_file=None, reminder_lead_days=[1, 7, 3, 7])
        assert settings.reminder_lead_days == [7, 3, 1]

    @pytest.mark.parametrize("field,value", [
        ("storage_backend", "postgres"),
        ("reminder_lead_days", []),
        ("reminder_lead_days", [7, 0]),
        ("late_fee_rate", "five percent"),
        ("late_fee_rate", "1.5"),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            NgnaSoroConfig(_env_file=None, **{field: value})


class TestJSONFormatter:
    """Test structured log lines"""

    def make_record(self, **fields):
        record = logging.LogRecord("ngnasoro.test", logging.INFO, __file__, 1,
                                   "Payment recorded", None, None)
        for key, value in fields.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        entry = json.loads(JSONFormatter().format(self.make_record()))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "ngnasoro.test"
        assert entry["message"] == "Payment recorded"
        assert "user_id" not in entry

    def test_structured_fields(self):
        record = self.make_record(user_id="client-1", action="record_payment",
                                  resource="loan-1:1", extra={"error_kind": "AlreadyPaidError"})

        entry = json.loads(JSONFormatter().format(record))

        assert entry["user_id"] == "client-1"
        assert entry["action"] == "record_payment"
        assert entry["resource"] == "loan-1:1"
        assert entry["extra"] == {"error_kind": "AlreadyPaidError"}


class TestSetupLogging:
    """Test logger configuration"""

    def test_json_handler(self):
        logger = setup_logging("DEBUG", "json", logger_name="ngnasoro_test_json")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_text_handler_replaces_existing(self):
        setup_logging("INFO", "json", logger_name="ngnasoro_test_text")
        logger = setup_logging("WARNING", "text", logger_name="ngnasoro_test_text")

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING

    def test_get_logger(self):
        assert get_logger("ngnasoro.loans").name == "ngnasoro.loans"


class TestLogAction:
    """Test structured action logging"""

    def test_fields_attached(self, caplog):
        logger = logging.getLogger("ngnasoro_test_actions")

        with caplog.at_level(logging.WARNING, logger="ngnasoro_test_actions"):
            log_action(logger, "warning", "Payment rejected", user_id="client-1",
                       action="record_payment", resource="loan-1:2",
                       extra={"error_kind": "AlreadyPaidError"})

        record = caplog.records[0]
        assert record.levelname == "WARNING"
        assert record.user_id == "client-1"
        assert record.action == "record_payment"
        assert record.resource == "loan-1:2"
        assert record.extra == {"error_kind": "AlreadyPaidError"}

    def test_empty_fields_omitted(self, caplog):
        logger = logging.getLogger("ngnasoro_test_actions")

        with caplog.at_level(logging.INFO, logger="ngnasoro_test_actions"):
            log_action(logger, "info", "Sweep started")

        assert not hasattr(caplog.records[0], "user_id")


class TestCorrelation:
    """Test correlation ids bound to requests and sweeps"""

    def test_context_binds_and_resets(self):
        assert get_correlation_id() is None

        with correlation_context("req-42") as correlation_id:
            assert correlation_id == "req-42"
            assert get_correlation_id() == "req-42"

        assert get_correlation_id() is None

    def test_generated_id(self):
        with correlation_context() as correlation_id:
            assert len(correlation_id) == 16

    def test_nested_contexts(self):
        with correlation_context("outer"):
            with correlation_context("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"

    def test_formatter_uses_bound_id(self):
        record = logging.LogRecord("ngnasoro.test", logging.INFO, __file__, 1, "Sweep", None, None)

        with correlation_context("sweep-2024-02-08"):
            entry = json.loads(JSONFormatter().format(record))

        assert entry["correlation_id"] == "sweep-2024-02-08"

    def test_explicit_id_wins(self):
        record = logging.LogRecord("ngnasoro.test", logging.INFO, __file__, 1, "Pay", None, None)
        record.correlation_id = "explicit"

        with correlation_context("bound"):
            assert CorrelationFilter().filter(record)
            entry = json.loads(JSONFormatter().format(record))

        assert entry["correlation_id"] == "explicit"

    def test_filter_placeholder_without_context(self):
        record = logging.LogRecord("ngnasoro.test", logging.INFO, __file__, 1, "Pay", None, None)

        CorrelationFilter().filter(record)

        assert record.correlation_id == "-"
