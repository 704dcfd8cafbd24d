"""Unit tests for patient_dedup.secure_logging module."""

import logging
from unittest.mock import MagicMock

import pytest

from patient_dedup import secure_logging
from patient_dedup.secure_logging import SecureLogger, configure_secure_logging, get_secure_logger


@pytest.fixture
def inner_logger():
    """Mock logging.Logger capturing the sanitized messages."""
    mock = MagicMock(spec=logging.Logger)
    mock.isEnabledFor.return_value = True
    return mock


@pytest.fixture(autouse=True)
def restore_production_mode():
    """Keep the module-level production flag isolated between tests."""
    previous = secure_logging._PRODUCTION_MODE
    yield
    secure_logging._PRODUCTION_MODE = previous


class TestSanitizeMessage:
    """Test masking of credentials and patient data."""

    def test_password_redacted(self, inner_logger):
        """Test that credentials are always redacted."""
        logger = SecureLogger(inner_logger, production_mode=False)
        result = logger._sanitize_message("connect PWD=hunter2; user=x")
        assert "hunter2" not in result
        assert "PWD=***REDACTED***" in result

    def test_patient_data_masked_in_production(self, inner_logger):
        """Test that dates, e-mails and phone numbers are masked in production mode."""
        logger = SecureLogger(inner_logger, production_mode=True)
        result = logger._sanitize_message("dob 1985-03-15 mail rajesh@example.com phone +91-987-654-3210")
        assert result == "dob ***DATE*** mail ***EMAIL*** phone ***PHONE***"

    def test_german_date_masked(self, inner_logger):
        """Test that DD.MM.YYYY dates are masked."""
        logger = SecureLogger(inner_logger, production_mode=True)
        assert logger._sanitize_message("born 15.05.1970") == "born ***DATE***"

    def test_short_numbers_kept(self, inner_logger):
        """Test that counts and durations are not mistaken for phone numbers."""
        logger = SecureLogger(inner_logger, production_mode=True)
        message = "buckets=12 comparisons=345 duration=12.34ms"
        assert logger._sanitize_message(message) == message

    def test_patient_data_kept_outside_production(self, inner_logger):
        """Test that patient data is left as is when production mode is off."""
        logger = SecureLogger(inner_logger, production_mode=False)
        message = "mail rajesh@example.com"
        assert logger._sanitize_message(message) == message

    def test_follows_global_mode(self, inner_logger):
        """Test that production_mode=None follows configure_secure_logging()."""
        logger = SecureLogger(inner_logger, production_mode=None)
        secure_logging._PRODUCTION_MODE = False
        assert "a@b.org" in logger._sanitize_message("a@b.org")
        secure_logging._PRODUCTION_MODE = True
        assert logger._sanitize_message("a@b.org") == "***EMAIL***"


class TestAuditHelpers:
    """Test the structured audit log helpers."""

    def test_log_matching_run_completed(self, inner_logger):
        """Test the run summary line."""
        logger = SecureLogger(inner_logger)
        logger.log_matching_run(records=10, buckets=3, comparisons=7, candidates=2)
        message = inner_logger.info.call_args[0][0]
        assert message.startswith("MATCH_RUN: COMPLETED")
        assert "records=10" in message

    def test_log_matching_run_cancelled(self, inner_logger):
        """Test that a cancelled run is logged as a warning."""
        logger = SecureLogger(inner_logger)
        logger.log_matching_run(records=10, buckets=3, comparisons=7, candidates=2, cancelled=True)
        assert "CANCELLED" in inner_logger.warning.call_args[0][0]

    def test_log_ledger_transition(self, inner_logger):
        """Test the transition audit line."""
        logger = SecureLogger(inner_logger)
        logger.log_ledger_transition("P001::P002", "pending_review", "confirmed_duplicate", "dr.who")
        message = inner_logger.info.call_args[0][0]
        assert message == "LEDGER_TRANSITION: P001::P002 pending_review -> confirmed_duplicate by=dr.who"

    def test_log_sql_execution_hides_parameters(self, inner_logger):
        """Test that SQL parameter values never reach the log."""
        logger = SecureLogger(inner_logger)
        logger.log_sql_execution("SELECT * FROM Patient WHERE Name = ?", ("Rajesh Kumar",), success=True)
        logged = " ".join(str(c) for c in inner_logger.method_calls)
        assert "Rajesh" not in logged


class TestLoggerFactory:
    """Test get_secure_logger and configure_secure_logging."""

    def test_get_secure_logger(self):
        """Test that the wrapper targets the named logger."""
        logger = get_secure_logger("patient_dedup.test")
        assert isinstance(logger, SecureLogger)
        assert logger.logger.name == "patient_dedup.test"

    def test_configure_sets_production_mode(self, temp_dir):
        """Test that configure_secure_logging sets handlers and the global mode."""
        log_file = temp_dir / "dedup.log"
        configure_secure_logging(level=logging.DEBUG, log_file=str(log_file), production_mode=False)
        try:
            assert secure_logging.is_production_mode() is False
            handlers = logging.getLogger().handlers
            assert any(isinstance(h, logging.FileHandler) for h in handlers)
        finally:
            for handler in logging.getLogger().handlers[:]:
                handler.close()
                logging.getLogger().removeHandler(handler)
