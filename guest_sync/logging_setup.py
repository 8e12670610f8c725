"""
Logging setup and configuration for Guest Sync.

This module provides centralized logging configuration: a daily rotated log
file with retention, optional console output and scrubbing of credentials
before any record is written.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any

LOG_FILE_NAME = 'app.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub secrets and bearer tokens from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'token', 'secret', 'api_token', 'client_secret',
        'access_token', 'refresh_token', 'authorization', 'credential'
    ]

    _ASSIGNMENT_PATTERNS = [
        re.compile(rf'({keyword}\s*[=:]\s*)(?!\*\*\*\*)[^\s,}}\]"\']+', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _JSON_PATTERNS = [
        re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _BEARER_PATTERN = re.compile(r'(Bearer\s+)[A-Za-z0-9\-._~+/]+=*', re.IGNORECASE)

    def filter(self, record):
        """Replace sensitive values in the formatted message with ****."""
        try:
            msg = record.getMessage()
        except (TypeError, ValueError):
            msg = str(record.msg)

        scrubbed = self.scrub(msg)
        if scrubbed != msg:
            record.msg = scrubbed
            record.args = None
        return True

    @classmethod
    def scrub(cls, msg: str) -> str:
        for pattern in cls._JSON_PATTERNS:
            msg = pattern.sub(r'\1****\2', msg)
        msg = cls._BEARER_PATTERN.sub(r'\1****', msg)
        for pattern in cls._ASSIGNMENT_PATTERNS:
            msg = pattern.sub(r'\1****', msg)
        return msg


class LoggingManager:
    """
    Manages logging configuration for the Guest Sync service.

    Provides file-based logging with rotation, retention policies, and
    container-friendly console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: The ``logging`` configuration section
        """
        if self.configured:
            return

        logging_config = config or {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = str(logging_config.get('rotation', 'daily'))
        self.retention_days = int(logging_config.get('retention_days', 7))
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        # File records carry the worker thread name
        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] [%(threadName)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the rotation setting.

        Args:
            rotation: 'daily', 'midnight' or 'none'
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> list:
        """Return the current and rotated log files."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))

    def reset(self) -> None:
        """Close handlers installed by setup_logging so it can run again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            handler.close()
            root_logger.removeHandler(handler)
        self.configured = False


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: The ``logging`` configuration section
    """
    _logging_manager.setup_logging(config)
