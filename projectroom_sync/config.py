"""
Configuration loading and management for Project Room Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. All secrets are read once at startup.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'room_service.password': 'ROOM_SERVICE_PASSWORD',
        'database.url': 'DATABASE_URL',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    REQUIRED_LDAP_FIELDS = [
        'server_host', 'bind_dn', 'bind_password',
        'user_base_dn', 'user_filter', 'write_access_filter'
    ]

    REQUIRED_ROOM_SERVICE_FIELDS = ['homeserver_url', 'servername', 'username', 'password']

    # Optional settings, per section
    DEFAULTS = {
        'ldap': {
            'server_port': 636,
            'username_attribute': 'uid',
            'connection_timeout': 10,
            'receive_timeout': 10,
            'page_size': 500,
        },
        'room_service': {
            'module': 'matrix',
            'room_alias_prefix': 'project-',
            'kick_reason': 'Project Room Sync',
            'verify_ssl': True,
            'request_timeout': 30,
        },
        'database': {'echo': False},
        'sync': {'interval_minutes': 10, 'run_on_start': True},
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
        },
        'error_handling': {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 2.0,
            'retry_max_wait_seconds': 60,
            'alert_after_failed_ticks': 3,
        },
        'notifications': {
            'enable_email': False,
            'email_on_drift': True,
            'smtp_port': 587,
            'smtp_tls': True,
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Read the YAML file, then apply secrets from the environment, validate and fill defaults.

        Raises:
            ConfigurationError: If the file is missing or unreadable, or any setting is invalid
        """
        try:
            with open(self.config_path) as config_file:
                self.config = yaml.safe_load(config_file) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{self.config_path} is not valid YAML: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Loaded configuration from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Secrets set in the environment win over the file."""
        for dotted_key, env_var in self.ENV_OVERRIDES.items():
            secret = os.getenv(env_var)
            if not secret:
                continue
            section, key = dotted_key.split('.', 1)
            if not isinstance(self.config.get(section), dict):
                self.config[section] = {}
            self.config[section][key] = secret
            logger.debug(f"{dotted_key} taken from ${env_var}")

    def _validate(self):
        """Validate required configuration fields, reporting every problem at once."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in self.REQUIRED_LDAP_FIELDS:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        port = ldap_config.get('server_port', 636)
        if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
            errors.append(f"Invalid LDAP server_port: {port!r}")

        # Only LDAPv3 over TLS is supported
        for unsupported in ('start_tls', 'use_plaintext'):
            if ldap_config.get(unsupported):
                errors.append(f"Unsupported LDAP option: {unsupported} (only LDAPS is supported)")

        room_config = self.config.get('room_service') or {}
        for field in self.REQUIRED_ROOM_SERVICE_FIELDS:
            if not room_config.get(field):
                errors.append(f"Missing required room_service field: {field}")

        homeserver_url = room_config.get('homeserver_url', '')
        if homeserver_url and not str(homeserver_url).lower().startswith('https://'):
            errors.append(f"room_service.homeserver_url must use https: {homeserver_url}")

        database_config = self.config.get('database') or {}
        if not database_config.get('url'):
            errors.append("Missing required database field: url")

        sync_config = self.config.get('sync') or {}
        interval = sync_config.get('interval_minutes', 10)
        if not isinstance(interval, (int, float)) or isinstance(interval, bool) or interval <= 0:
            errors.append(f"sync.interval_minutes must be a positive number: {interval!r}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Fill in optional settings the file leaves out."""
        for section, defaults in self.DEFAULTS.items():
            values = self.config.get(section)
            if not isinstance(values, dict):
                values = self.config[section] = {}
            for key, value in defaults.items():
                values.setdefault(key, value)

        # The directory and room clients read retry settings from their own section
        shared = self.config['error_handling']
        self.config['ldap'].setdefault('error_handling', dict(shared))
        self.config['room_service'].setdefault('error_handling', dict(shared))


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load, validate and complete the configuration at ``config_path``."""
    return ConfigLoader(config_path).load()
