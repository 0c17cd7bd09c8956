"""
Logging setup and configuration for the user info sync host.

This module provides centralized logging configuration: a rotating log file
with a retention policy, container-friendly console output, scrubbing of
credentials from every record, and an audit logger for security-relevant
events such as session invalidation.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

LOG_FILE_NAME = 'userinfo_sync.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'token', 'secret', 'client_secret', 'access_token',
        'refresh_token', 'api_key', 'credential', 'authorization', 'bearer'
    ]

    _ASSIGNMENT_PATTERNS = [
        re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _JSON_QUOTED_PATTERNS = [
        re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _AUTH_HEADER_PATTERN = re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE)

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            if record.args:
                # Render before scrubbing so secrets passed as arguments are caught too
                try:
                    msg = msg % record.args
                    record.args = None
                except (TypeError, ValueError):
                    pass

            for pattern in self._ASSIGNMENT_PATTERNS:
                msg = pattern.sub(r'\1****\2', msg)
            for pattern in self._JSON_QUOTED_PATTERNS:
                msg = pattern.sub(r'\1****\2', msg)
            msg = self._AUTH_HEADER_PATTERN.sub(r'\1****', msg)

            record.msg = msg

        return True


class LoggingManager:
    """
    Owns the root logger configuration of the sync host.

    One log file under log_dir, optionally rotated at midnight, plus an
    optional stderr handler for containers. Rotated files older than
    retention_days are removed at startup.
    """

    FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d [%(threadName)s] - %(message)s'
    CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Install handlers on the root logger. Later calls are ignored.

        Args:
            config: `logging` configuration section
        """
        if self.configured:
            return

        settings = config or {}
        level = str(settings.get('level', 'INFO')).upper()
        console_enabled = settings.get('console_output', True)
        self.log_dir = self._usable_directory(settings.get('log_dir', 'logs'))
        self.retention_days = int(settings.get('retention_days', 7))

        scrubber = SensitiveDataFilter()
        handlers = [self._file_handler(str(settings.get('rotation', 'daily')), level)]
        if console_enabled:
            console = logging.StreamHandler()
            console.setLevel(getattr(logging, str(settings.get('console_level', 'WARNING')).upper(),
                                     logging.WARNING))
            console.setFormatter(logging.Formatter(self.CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            handlers.append(console)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, level, logging.INFO))
        root_logger.handlers.clear()
        for handler in handlers:
            handler.addFilter(scrubber)
            root_logger.addHandler(handler)

        self._remove_expired_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")

    @staticmethod
    def _usable_directory(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
            return log_dir
        except OSError as e:
            print(f"Warning: cannot use log directory {log_dir} ({e}), logging to current directory")
            return '.'

    def _file_handler(self, rotation: str, level: str) -> logging.Handler:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file, when='midnight', backupCount=self.retention_days, encoding='utf-8')
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')
        handler.setLevel(getattr(logging, level, logging.INFO))
        handler.setFormatter(logging.Formatter(self.FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        return handler

    def _log_files(self) -> List[str]:
        return sorted(glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}*'))) if self.log_dir else []

    def _remove_expired_logs(self) -> None:
        """Delete rotated files (never the active one) past the retention period."""
        if self.retention_days <= 0:
            return
        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        active = os.path.join(self.log_dir, LOG_FILE_NAME)
        for log_file in self._log_files():
            if log_file == active:
                continue
            try:
                if os.path.getmtime(log_file) < cutoff:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: could not remove expired log file {log_file}: {e}")

    def get_log_stats(self) -> Dict[str, Any]:
        """Summary of the log setup for the health check."""
        log_files = self._log_files()
        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(log_files),
            'total_size_bytes': sum(os.path.getsize(f) for f in log_files if os.path.isfile(f)),
        }


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def get_logging_stats() -> Dict[str, Any]:
    return _logging_manager.get_log_stats()


class SecurityAuditLogger:
    """Special logger for security-related events."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_session_invalidation(self, tenant_id: str, user_id: str, keys: List[str], logout: bool):
        """Log a not-before update (and session termination) caused by changed attributes."""
        action = "not-before+logout" if logout else "not-before"
        self.logger.info(f"Session invalidation ({action}): tenant={tenant_id} user={user_id} "
                         f"changed={','.join(keys)}")

    def log_forced_run(self, tenant_id: str):
        """Log an operator-triggered sync that bypassed the schedule."""
        self.logger.warning(f"Security event: forced sync run for tenant={tenant_id}")


security_logger = SecurityAuditLogger()
