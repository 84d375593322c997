"""
Logging Framework for tlgstats

This module provides the logging infrastructure used across the library:
- Optional rotating file output and console output
- Configurable log levels and formats (from config.CONFIG)
- Performance tracking
- Operation and model-fit summaries

Usage:
    from logger import get_logger

    logger = get_logger(__name__)
    logger.info("Table build started")

    # Performance tracking
    with logger.track_time("cox_fit"):
        model = fit(...)
"""

import logging
import logging.handlers
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import ClassVar, Dict, Optional

from config import CONFIG


class PerformanceLogger:
    """
    Track and log performance metrics.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.timings: Dict[str, list] = {}
        self._lock = threading.Lock()

    @contextmanager
    def track_time(self, operation: str, log_level: str = "DEBUG"):
        """
        Context manager that measures and logs the elapsed time of a named operation.

        If CONFIG['logging.log_performance'] is falsy, the context yields without
        measuring. Otherwise the elapsed time is appended to self.timings[operation]
        and logged at the requested level.
        """
        if not CONFIG.get('logging.log_performance'):
            yield
            return

        start_time = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start_time

            with self._lock:
                self.timings.setdefault(operation, []).append(elapsed)

            log_method = getattr(self.logger, log_level.lower(), self.logger.debug)
            log_method(f"{operation} completed in {elapsed:.3f}s")

    def get_timings(self, operation: Optional[str] = None) -> Dict[str, list]:
        """
        Return recorded performance timings, optionally only for `operation`.
        """
        if operation:
            return {operation: self.timings.get(operation, [])}
        return self.timings


class LoggerFactory:
    """
    Factory for creating and managing loggers.
    """

    _loggers: ClassVar[Dict[str, 'Logger']] = {}
    _perf_logger: Optional[PerformanceLogger] = None
    _configured = False
    _lock: ClassVar[threading.Lock] = threading.Lock()

    @classmethod
    def configure(cls) -> None:
        """
        Perform one-time configuration of the library's logging using values from CONFIG.

        Sets the level on the package's root logger ('tlgstats' and the modules that
        log through this factory) and installs the enabled handlers (file/console). Idempotent. On error a warning is printed to
        stderr and configuration is marked complete to avoid retry loops.
        """
        if cls._configured:
            return

        try:
            if not CONFIG.get('logging.enabled'):
                logging.getLogger('tlgstats').disabled = True
                cls._configured = True
                return

            log_level = CONFIG.get('logging.level', 'INFO')
            formatter = logging.Formatter(
                CONFIG.get('logging.format'), datefmt=CONFIG.get('logging.date_format')
            )

            package_logger = logging.getLogger('tlgstats')
            numeric_level = getattr(logging, str(log_level).upper(), None)
            if not isinstance(numeric_level, int):
                print(f"[WARNING] Invalid log level '{log_level}', defaulting to INFO", file=sys.stderr)
                numeric_level = logging.INFO
            package_logger.setLevel(numeric_level)

            if CONFIG.get('logging.file_enabled'):
                cls._setup_file_logging(package_logger, formatter)

            if CONFIG.get('logging.console_enabled'):
                cls._setup_console_logging(package_logger, formatter)

            cls._configured = True

        except (OSError, ValueError, TypeError) as e:
            print(f"[WARNING] Logging configuration failed: {e}", file=sys.stderr)
            cls._configured = True

    @classmethod
    def _setup_file_logging(cls, root_logger: logging.Logger, formatter: logging.Formatter) -> None:
        """
        Configure rotating file logging using settings from CONFIG.

        Uses CONFIG keys 'logging.log_dir', 'logging.log_file', 'logging.max_log_size'
        and 'logging.backup_count'. Setup errors are reported on stderr.
        """
        try:
            log_dir = Path(CONFIG.get('logging.log_dir', 'logs'))
            log_dir.mkdir(exist_ok=True, parents=True)

            handler = logging.handlers.RotatingFileHandler(
                log_dir / CONFIG.get('logging.log_file', 'tlgstats.log'),
                maxBytes=CONFIG.get('logging.max_log_size', 10485760),
                backupCount=CONFIG.get('logging.backup_count', 5),
            )
            handler.setFormatter(formatter)
            root_logger.addHandler(handler)

        except OSError as e:
            print(f"[WARNING] Failed to setup file logging: {e}", file=sys.stderr)

    @classmethod
    def _setup_console_logging(cls, root_logger: logging.Logger, formatter: logging.Formatter) -> None:
        """
        Configure console (stdout) logging at CONFIG['logging.console_level'].
        """
        console_handler = logging.StreamHandler(sys.stdout)
        console_level = CONFIG.get('logging.console_level', 'WARNING')
        console_handler.setLevel(getattr(logging, str(console_level).upper(), logging.WARNING))
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    @classmethod
    def get_logger(cls, name: str) -> 'Logger':
        """
        Retrieve a cached Logger by name, configuring logging on first use.

        Names outside the package are nested under 'tlgstats' so that they share the
        package handlers.
        """
        if not cls._configured:
            cls.configure()

        if not name.startswith('tlgstats'):
            name = f"tlgstats.{name}"

        with cls._lock:
            if name not in cls._loggers:
                cls._loggers[name] = Logger(logging.getLogger(name))
            return cls._loggers[name]

    @classmethod
    def get_performance_logger(cls) -> PerformanceLogger:
        """
        Return the shared PerformanceLogger, creating it on first access.
        """
        if cls._perf_logger is None:
            cls._perf_logger = PerformanceLogger(logging.getLogger('tlgstats.performance'))
        return cls._perf_logger


class Logger:
    """
    Wrapper around standard logger with additional features.
    """

    def __init__(self, standard_logger: logging.Logger):
        self._logger = standard_logger
        self._perf_logger = LoggerFactory.get_performance_logger()

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, msg: str, *args, **kwargs) -> None:
        """Log debug message."""
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        """
        Log a message with severity WARNING.
        """
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(msg, *args, **kwargs)

    def log_operation(self, operation: str, status: str = "started", **details) -> None:
        """
        Log an operation event with optional details.

        Builds a single-line message containing the operation name in brackets, an
        uppercase status, and any key=value pairs in `details`. Uses ERROR when
        `status` is "failed" and INFO otherwise.
        """
        msg_parts = [f"[{operation}]"]

        if status:
            msg_parts.append(status.upper())

        if details:
            msg_parts.append(" | ".join(f"{k}={v}" for k, v in details.items()))

        msg = " ".join(msg_parts)

        if status.lower() == "failed":
            self.error(msg)
        else:
            self.info(msg)

    def log_analysis(self, analysis_type: str, outcome: str, n_vars: int, n_samples: int) -> None:
        """
        Log a concise summary of an analysis run when
        CONFIG['logging.log_analysis_operations'] is enabled.
        """
        if CONFIG.get('logging.log_analysis_operations'):
            self.info(
                f"{analysis_type}: outcome='{outcome}', "
                f"predictors={n_vars}, n={n_samples}"
            )

    @contextmanager
    def track_time(self, operation: str, log_level: str = "DEBUG"):
        """
        Record the elapsed time for the named operation and log the duration.
        """
        with self._perf_logger.track_time(operation, log_level):
            yield

    def get_timings(self) -> Dict[str, list]:
        return self._perf_logger.get_timings()


def get_logger(name: str) -> Logger:
    """
    Obtain a configured logger for the given name (typically `__name__`).
    """
    return LoggerFactory.get_logger(name)
