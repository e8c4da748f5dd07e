"""
Test suite for configuration and structured logging
"""

import json
import logging
from decimal import Decimal

from repayment_engine.config import EngineConfig, get_config, reload_config
from repayment_engine.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestEngineConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        """Test the default delinquency policy and tolerances"""
        config = EngineConfig()

        assert config.grace_days == 30
        assert config.npl_days == 90
        assert config.max_tenor_months == 60
        assert config.match_tolerance_decimal == Decimal('0.01')
        assert config.installment_tolerance_decimal == Decimal('1.00')

    def test_environment_override(self, monkeypatch):
        """Test REPAYMENT_* variables override defaults"""
        monkeypatch.setenv("REPAYMENT_GRACE_DAYS", "45")
        monkeypatch.setenv("REPAYMENT_MATCH_TOLERANCE", "0.05")
        try:
            config = reload_config()
            assert config.grace_days == 45
            assert config.match_tolerance_decimal == Decimal('0.05')
            assert get_config() is config
        finally:
            monkeypatch.delenv("REPAYMENT_GRACE_DAYS")
            monkeypatch.delenv("REPAYMENT_MATCH_TOLERANCE")
            reload_config()

        assert get_config().grace_days == 30


class TestStructuredLogging:
    """Test JSON logging helpers"""

    def test_logger_namespacing(self):
        """Test module loggers live under the engine root logger"""
        assert get_logger("repayments").name == "repayment_engine.repayments"
        assert get_logger("repayment_engine.audit").name == "repayment_engine.audit"
        assert get_logger().name == "repayment_engine"

    def test_json_formatter(self):
        """Test structured fields are emitted and empty ones dropped"""
        record = logging.LogRecord("repayment_engine", logging.INFO, __file__, 1,
                                   "Recorded payment", None, None)
        record.action = "record_payment"
        record.resource = "LN-001"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Recorded payment"
        assert entry["level"] == "INFO"
        assert entry["action"] == "record_payment"
        assert entry["resource"] == "LN-001"
        assert "correlation_id" not in entry

    def test_log_action(self, caplog):
        """Test log_action attaches structured fields to the record"""
        logger = logging.getLogger("repayment_engine_test")
        with caplog.at_level(logging.WARNING, logger="repayment_engine_test"):
            log_action(logger, "warning", "Rejected duplicate", action="duplicate_reference",
                       resource="LN-001", extra={"reference": "RRR-1"})

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.action == "duplicate_reference"
        assert record.extra == {"reference": "RRR-1"}

    def test_setup_logging(self):
        """Test setup installs a single JSON handler"""
        logger = setup_logging("DEBUG", logger_name="repayment_engine_setup")
        logger = setup_logging("DEBUG", logger_name="repayment_engine_setup")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert not logger.propagate
