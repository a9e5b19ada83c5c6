"""
Structured logging system for fleetops.

Provides centralized logging with console and optional file output,
plus metrics tracking for monitoring onboarding and dispatch health.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks metrics for parse, probe and dispatch activity.
    """

    def __init__(
        self,
        name: str = "fleetops",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()  # Remove existing handlers

        self.metrics = {
            "api_calls": 0,
            "rows_parsed": 0,
            "row_errors": 0,
            "probes_attempted": 0,
            "probes_succeeded": 0,
            "probes_failed": 0,
            "dispatches_submitted": 0,
            "dispatches_failed": 0,
            "errors_by_type": {},
        }

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"fleetops_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_api_call(self):
        """Increment API call counter."""
        self.metrics["api_calls"] += 1

    def record_parse(self, parsed: int, errors: int):
        """Record the outcome of one sheet parse."""
        self.metrics["rows_parsed"] += parsed
        self.metrics["row_errors"] += errors

    def record_probe(self, succeeded: int, failed: int):
        """Record connectivity probe outcomes for a batch."""
        self.metrics["probes_attempted"] += succeeded + failed
        self.metrics["probes_succeeded"] += succeeded
        self.metrics["probes_failed"] += failed

    def record_dispatch(self, ok: bool):
        """Record a dispatch submission."""
        self.metrics["dispatches_submitted"] += 1
        if not ok:
            self.metrics["dispatches_failed"] += 1

    def record_error(self, error_type: str):
        """Count an error by type."""
        if error_type not in self.metrics["errors_by_type"]:
            self.metrics["errors_by_type"][error_type] = 0
        self.metrics["errors_by_type"][error_type] += 1

    def get_metrics(self) -> dict:
        """Return current metrics."""
        metrics_copy = self.metrics.copy()
        attempted = metrics_copy["probes_attempted"]
        if attempted > 0:
            metrics_copy["probe_success_rate"] = round(
                metrics_copy["probes_succeeded"] / attempted, 3
            )
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        rate = metrics.get("probe_success_rate", 0) * 100

        self.info("=== Fleet Operations Metrics ===")
        self.info(f"API Calls: {metrics['api_calls']}")
        self.info(f"Rows: {metrics['rows_parsed']} parsed, {metrics['row_errors']} rejected")
        self.info(
            f"Probes: {metrics['probes_succeeded']}/{metrics['probes_attempted']} ({rate:.1f}% success)"
        )
        self.info(
            f"Dispatches: {metrics['dispatches_submitted']} submitted, {metrics['dispatches_failed']} failed"
        )

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "fleetops",
    level: Optional[str] = None,
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    File output defaults on only when FLEETOPS_LOG_DIR is set, so importing
    the library never creates a logs/ directory by itself.

    Args:
        name: Logger name
        level: Log level (default: FLEETOPS_LOG_LEVEL or INFO)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        if level is None:
            level = os.getenv("FLEETOPS_LOG_LEVEL", "INFO")
        if "log_dir" not in kwargs and "enable_file" not in kwargs:
            log_dir = os.getenv("FLEETOPS_LOG_DIR")
            if log_dir:
                kwargs["log_dir"] = Path(log_dir)
            else:
                kwargs["enable_file"] = False
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
