"""
Logging setup for Project Room Sync.

Everything goes to ``app.log`` in the log directory. The ``audit`` logger
additionally writes to its own file so the trail of person, room and
membership changes can be kept and shipped apart from diagnostics. Both
files rotate at midnight and are pruned after ``retention_days``.

Every handler carries SensitiveDataFilter, so bind passwords, SMTP
passwords and homeserver access tokens never reach a log file.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = 'audit'

DETAILED_FORMAT = '%(asctime)s [%(levelname)s] %(threadName)s %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
AUDIT_FORMAT = '%(asctime)s %(message)s'

# Library loggers that are too chatty at INFO; overridable via logging.loggers
DEFAULT_LOGGER_LEVELS = {
    'ldap3': 'WARNING',
    'sqlalchemy.engine': 'WARNING',
}


class SensitiveDataFilter(logging.Filter):
    """Scrub credentials from log records before any handler formats them."""

    SENSITIVE_KEYWORDS = (
        'bind_password', 'smtp_password', 'password', 'access_token',
        'refresh_token', 'token', 'secret', 'credential', 'pwd', 'pass'
    )

    _keys = '|'.join(SENSITIVE_KEYWORDS)

    PATTERNS = (
        # key=value
        (re.compile(rf'\b((?:{_keys})\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'),
        # "key": "value"
        (re.compile(rf'("(?:{_keys})"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'),
        # "key": value
        (re.compile(rf'("(?:{_keys})"\s*:\s*)[^",}}\s]+', re.IGNORECASE), r'\1****'),
        (re.compile(r'(Authorization:\s*Bearer\s+)\S+', re.IGNORECASE), r'\1****'),
        # Synapse access tokens
        (re.compile(r'\bsyt_[A-Za-z0-9_]+'), '****'),
    )

    @classmethod
    def scrub(cls, text: str) -> str:
        for pattern, replacement in cls.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record):
        record.msg = self.scrub(str(record.msg))

        if isinstance(record.args, dict):
            record.args = {key: self.scrub(value) if isinstance(value, str) else value
                           for key, value in record.args.items()}
        elif record.args:
            record.args = tuple(self.scrub(arg) if isinstance(arg, str) else arg
                                for arg in record.args)

        return True


class LoggingManager:
    """
    Configures the root and audit loggers once per process.

    Settings (all optional) come from the ``logging`` config section:
    ``level``, ``log_dir``, ``rotation`` (``daily`` or ``none``),
    ``retention_days``, ``console_output``, ``console_level``, ``audit_file``
    (empty to disable) and ``loggers`` (logger name to level).
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
        self.log_files: List[str] = []

    def setup_logging(self, config: Dict[str, Any]) -> None:
        if self.configured:
            return

        config = config or {}
        level = self._level(config.get('level'), logging.INFO)
        rotation = config.get('rotation', 'daily')
        self.log_dir = config.get('log_dir', 'logs')
        self.retention_days = config.get('retention_days', 7)

        self._ensure_log_directory()
        scrubber = SensitiveDataFilter()

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        root_logger.addHandler(self._file_handler('app.log', rotation, level, DETAILED_FORMAT, scrubber))

        console_enabled = config.get('console_output', True)
        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(self._level(config.get('console_level'), logging.WARNING))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            console_handler.addFilter(scrubber)
            root_logger.addHandler(console_handler)

        audit_file = config.get('audit_file', 'audit.log')
        if audit_file:
            audit = logging.getLogger(AUDIT_LOGGER_NAME)
            audit.setLevel(logging.INFO)
            audit.addHandler(self._file_handler(audit_file, rotation, logging.INFO, AUDIT_FORMAT, scrubber))

        logger_levels = dict(DEFAULT_LOGGER_LEVELS)
        logger_levels.update(config.get('loggers') or {})
        for name, name_level in logger_levels.items():
            logging.getLogger(name).setLevel(self._level(name_level, logging.WARNING))

        self._cleanup_old_logs()
        self.configured = True

        logger.info(f"Logging configured: level={logging.getLevelName(level)}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}, "
                    f"audit={audit_file or 'off'}")

    @staticmethod
    def _level(name, default: int) -> int:
        if not name:
            return default
        value = getattr(logging, str(name).upper(), None)
        return value if isinstance(value, int) else default

    def _ensure_log_directory(self) -> None:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: Could not create log directory {self.log_dir}: {e}")
            print("Falling back to current directory for logs")
            self.log_dir = '.'

    def _file_handler(self, filename: str, rotation: str, level: int,
                      fmt: str, scrubber: logging.Filter) -> logging.Handler:
        """Create a handler for ``filename`` in the log directory, rotated at midnight unless ``rotation`` is none."""
        path = os.path.join(self.log_dir, filename)

        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=path,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(path, encoding='utf-8')

        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(fmt, datefmt='%Y-%m-%d %H:%M:%S'))
        handler.addFilter(scrubber)
        self.log_files.append(filename)
        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated files older than the retention period."""
        if self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for filename in self.log_files:
            for rotated in glob.glob(os.path.join(self.log_dir, filename + '.*')):
                try:
                    if datetime.fromtimestamp(os.path.getmtime(rotated)) < cutoff:
                        os.remove(rotated)
                        logger.info(f"Removed old log file: {rotated}")
                except OSError as e:
                    logger.warning(f"Could not remove old log file {rotated}: {e}")


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure logging for the process from the ``logging`` config section."""
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Records every mutation applied to local state and remote rooms."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log_person_upsert(self, username: str, created: bool, has_write_privilege: bool):
        action = "CREATE" if created else "UPDATE"
        self.logger.info(f"Person {action}: user={username} write_privilege={has_write_privilege}")

    def log_privilege_change(self, username: str, has_write_privilege: bool):
        change = "GRANTED" if has_write_privilege else "REVOKED"
        self.logger.info(f"Write privilege {change}: user={username}")

    def log_room_provisioned(self, project_name: str, room_id: str):
        self.logger.info(f"Room PROVISIONED: project={project_name} room={room_id}")

    def log_membership_change(self, operation: str, user_id: str, room_id: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Membership {operation} {status}: user={user_id} room={room_id}")


# Global audit logger instance
audit_logger = AuditLogger()
