"""Utility modules for retries, logging and auditing."""
from .audit_log import ChangeRecord, get_recent_changes, log_change, setup_audit_logging
from .connection import RETRYABLE_EXCEPTIONS, call_with_retry, with_retry
from .logging_config import perf_logger, setup_logging, timed, timed_section

__all__ = [
    "RETRYABLE_EXCEPTIONS",
    "call_with_retry",
    "with_retry",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
    "ChangeRecord",
    "log_change",
    "get_recent_changes",
    "setup_audit_logging",
]
