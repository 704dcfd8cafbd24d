"""
Secure logging utilities for patient identity matching.

This module provides secure logging functions that keep patient identifiers
(dates of birth, e-mail addresses, phone numbers) and credentials out of log
output while keeping an audit trail of matching runs and review decisions.
"""

import logging
import re
from typing import Any, Optional


class SecureLogger:
    """
    Secure logging wrapper that sanitizes sensitive data before logging.

    Designed for patient-matching jobs, where names and contact details pass
    through every component but must not end up in log files.
    """

    # Patterns that should never appear in logs
    SENSITIVE_PATTERNS = [
        r'(?i)(password)[\'"]?\s*[:=]\s*[\'"]?([^\s\'";]+)',
        r'(?i)(pwd)[\'"]?\s*[:=]\s*[\'"]?([^\s\'";]+)',
        r'(?i)(secret)[\'"]?\s*[:=]\s*[\'"]?([^\s\'";]+)',
        r'(?i)(token)[\'"]?\s*[:=]\s*[\'"]?([^\s\'";]+)',
    ]

    # Patient data patterns that should be minimized in logs
    PATIENT_DATA_PATTERNS = [
        (r"\b\d{4}-\d{2}-\d{2}\b", "***DATE***"),  # ISO dates (DOB)
        (r"\b\d{1,2}/\d{1,2}/\d{4}\b", "***DATE***"),  # MM/DD/YYYY
        (r"\b\d{1,2}\.\d{1,2}\.\d{4}\b", "***DATE***"),  # DD.MM.YYYY
        (r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+", "***EMAIL***"),
        (r"(?<![\w.])\+?\d(?:[\s().-]{0,2}\d){6,}(?![\w.])", "***PHONE***"),  # 7+ digit runs
    ]

    def __init__(self, logger: logging.Logger, production_mode: Optional[bool] = True):
        """
        Initialize secure logger wrapper.

        Args:
            logger: The underlying logger instance
            production_mode: If True, patient data patterns are masked as well;
                None follows the mode set by configure_secure_logging()
        """
        self.logger = logger
        self.production_mode = production_mode

    def _sanitize_message(self, message: str) -> str:
        """
        Sanitize log message by removing/masking sensitive data.

        Args:
            message: Original log message

        Returns:
            Sanitized message safe for logging
        """
        sanitized = message

        for pattern in self.SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, r"\1=***REDACTED***", sanitized)

        masking = is_production_mode() if self.production_mode is None else self.production_mode
        if masking:
            for pattern, replacement in self.PATIENT_DATA_PATTERNS:
                sanitized = re.sub(pattern, replacement, sanitized)

        return sanitized

    def isEnabledFor(self, level: int) -> bool:
        return self.logger.isEnabledFor(level)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message with security filtering."""
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(self._sanitize_message(message), **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(self._sanitize_message(message), **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(self._sanitize_message(message), **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.logger.error(self._sanitize_message(message), **kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        self.logger.critical(self._sanitize_message(message), **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        self.logger.exception(self._sanitize_message(message), **kwargs)

    def log_database_operation(
        self,
        operation: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
        row_count: Optional[int] = None,
    ) -> None:
        """
        Log database operation in a secure, audit-friendly way.

        Args:
            operation: Type of operation (SELECT, INSERT, etc.)
            success: Whether operation succeeded
            duration_ms: Operation duration in milliseconds
            row_count: Number of rows affected/returned
        """
        status = "SUCCESS" if success else "FAILED"
        duration_str = f", {duration_ms:.2f}ms" if duration_ms is not None else ""
        row_str = f", {row_count} rows" if row_count is not None else ""

        self.info(f"DB_AUDIT: {operation} {status}{duration_str}{row_str}")

    def log_sql_execution(
        self,
        sql: str,
        params: Any = None,
        success: bool = True,
        duration_ms: Optional[float] = None,
    ) -> None:
        """
        Log SQL execution without parameter values.

        Only the leading SQL keyword, the token count and the number of
        parameters are logged; parameter values may be patient data.
        """
        sql_clean = " ".join((sql or "").split())
        first_word = sql_clean.split()[0].upper() if sql_clean else "EMPTY"
        param_count = len(params) if isinstance(params, (tuple, list)) else (0 if params is None else 1)
        status = "SUCCESS" if success else "FAILED"
        duration_str = f" ({duration_ms:.2f}ms)" if duration_ms is not None else ""

        self.debug(
            f"SQL_EXEC: <{first_word} query, {len(sql_clean.split())} tokens> | "
            f"PARAMS: <{param_count} values> | {status}{duration_str}"
        )

    def log_matching_run(
        self,
        records: int,
        buckets: int,
        comparisons: int,
        candidates: int,
        flagged: int = 0,
        cancelled: bool = False,
        duration_ms: Optional[float] = None,
    ) -> None:
        """
        Log the summary of a deduplication run. Counts only, no identities.

        Args:
            records: Number of records read from the source
            buckets: Number of blocking buckets scored
            comparisons: Number of pairs compared
            candidates: Number of candidates written or refreshed
            flagged: Number of records flagged for manual review
            cancelled: Whether the run was cancelled before completion
            duration_ms: Run duration in milliseconds
        """
        duration_str = f" ({duration_ms:.2f}ms)" if duration_ms is not None else ""
        state = "CANCELLED" if cancelled else "COMPLETED"
        log = self.warning if cancelled else self.info
        log(
            f"MATCH_RUN: {state} records={records} buckets={buckets} comparisons={comparisons} "
            f"candidates={candidates} flagged={flagged}{duration_str}"
        )

    def log_bucket_commit(self, bucket_key: str, candidate_count: int, success: bool = True) -> None:
        """Log a bucket commit. The bucket key is reduced to its strategy, since it is derived from patient data."""
        strategy = bucket_key.split(":", 1)[0]
        status = "SUCCESS" if success else "ROLLED_BACK"
        self.debug(f"BUCKET_COMMIT: strategy={strategy} candidates={candidate_count} {status}")

    def log_ledger_transition(
        self,
        candidate_id: str,
        old_status: str,
        new_status: str,
        decided_by: Optional[str] = None,
    ) -> None:
        """Log a review status change for the audit trail."""
        actor = f" by={decided_by}" if decided_by else ""
        self.info(f"LEDGER_TRANSITION: {candidate_id} {old_status} -> {new_status}{actor}")

    def log_authentication_event(
        self,
        event_type: str,
        username: Optional[str] = None,
        success: bool = True,
        details: Optional[str] = None,
    ) -> None:
        """
        Log authentication events securely.

        Args:
            event_type: Type of event (DB_CONNECT, etc.)
            username: Username (will be partially masked)
            success: Whether event succeeded
            details: Additional details (will be sanitized)
        """
        status = "SUCCESS" if success else "FAILED"
        user_str = ""

        if username:
            masked_user = f"{username[:2]}***{username[-1:]}" if len(username) > 4 else "***"
            user_str = f" user={masked_user}"

        details_str = f" | {self._sanitize_message(details)}" if details else ""

        self.info(f"AUTH: {event_type} {status}{user_str}{details_str}")


def get_secure_logger(name: str, production_mode: Optional[bool] = None) -> SecureLogger:
    """
    Get a secure logger instance.

    Args:
        name: Logger name (typically __name__)
        production_mode: Enable production security filtering; defaults to the
            mode set by configure_secure_logging()

    Returns:
        SecureLogger instance
    """
    return SecureLogger(logging.getLogger(name), production_mode=production_mode)


def configure_secure_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    production_mode: bool = True,
) -> None:
    """
    Configure secure logging for the entire application.

    Args:
        level: Logging level
        log_file: Optional log file path
        production_mode: Enable production security filtering
    """
    if production_mode:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    global _PRODUCTION_MODE
    _PRODUCTION_MODE = production_mode


# Module-level variable to track production mode
_PRODUCTION_MODE = True


def is_production_mode() -> bool:
    """Check if logging is in production mode."""
    return _PRODUCTION_MODE
