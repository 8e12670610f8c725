"""
Configuration loading and management for Guest Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


SOURCE_DEFAULTS = {
    'users_endpoint': '/api/v1/users',
    'audit_endpoint': '/api/v1/audits',
    'audit_days_back': 400,
    'excluded_email_domains': [],
    'verify_ssl': True,
}

DIRECTORY_DEFAULTS = {
    'base_url': 'https://graph.microsoft.com/v1.0',
    'scope': 'https://graph.microsoft.com/.default',
    'invite_redirect_url': 'https://myapps.microsoft.com',
    'group_prefix': 'Qlik-',
    'group_mappings': [],
    'verify_ssl': True,
}

SYNC_DEFAULTS = {
    'remove_memberships': False,
    'max_workers': 24,
    'invite_concurrency': 6,
    'membership_concurrency': 16,
    'max_attempts': 7,
    'retry_base_delay': 0.5,
    'retry_max_delay': 30.0,
    'retry_jitter': 0.35,
    'operation_timeout_seconds': 600,
    'guest_phase_timeout_seconds': 1800,
    'membership_phase_timeout_seconds': 2400,
    'reconcile_phase_timeout_seconds': 2400,
}

SCHEDULE_DEFAULTS = {
    'initial_delay_seconds': 5,
    'interval_seconds': 300,
    'trigger_host': '127.0.0.1',
    'trigger_port': 0,
}

LOGGING_DEFAULTS = {
    'level': 'INFO',
    'log_dir': 'logs',
    'rotation': 'daily',
    'retention_days': 7,
    'console_output': True,
    'console_level': 'WARNING',
}


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'source.api_token': 'SOURCE_API_TOKEN',
        'directory.client_secret': 'DIRECTORY_CLIENT_SECRET',
    }

    POSITIVE_SYNC_FIELDS = [
        'max_workers', 'invite_concurrency', 'membership_concurrency', 'max_attempts',
        'operation_timeout_seconds', 'guest_phase_timeout_seconds',
        'membership_phase_timeout_seconds', 'reconcile_phase_timeout_seconds',
    ]

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
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for section, defaults in (('source', SOURCE_DEFAULTS),
                                  ('directory', DIRECTORY_DEFAULTS),
                                  ('sync', SYNC_DEFAULTS),
                                  ('schedule', SCHEDULE_DEFAULTS),
                                  ('logging', LOGGING_DEFAULTS)):
            if not isinstance(self.config.get(section), dict):
                self.config[section] = {}
            section_config = self.config[section]
            for key, value in defaults.items():
                section_config.setdefault(key, list(value) if isinstance(value, list) else value)

        # Empty YAML keys come back as None
        for section, key in (('source', 'excluded_email_domains'), ('directory', 'group_mappings')):
            if self.config[section].get(key) is None:
                self.config[section][key] = []

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        source = self.config['source']
        for field_name in ('base_url', 'api_token'):
            if not source.get(field_name):
                errors.append(f"Missing required source field: {field_name}")

        if not isinstance(source.get('audit_days_back'), int) or source['audit_days_back'] < 0:
            errors.append("source.audit_days_back must be a non-negative integer")

        if not self._is_string_list(source.get('excluded_email_domains')):
            errors.append("source.excluded_email_domains must be a list of strings")

        directory = self.config['directory']
        for field_name in ('tenant_id', 'client_id', 'client_secret'):
            if not directory.get(field_name):
                errors.append(f"Missing required directory field: {field_name}")

        if not self._is_string_list(directory.get('group_mappings')):
            errors.append("directory.group_mappings must be a list of strings")

        sync = self.config['sync']
        for field_name in self.POSITIVE_SYNC_FIELDS:
            value = sync.get(field_name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 1:
                errors.append(f"sync.{field_name} must be a number >= 1")

        for field_name in ('retry_base_delay', 'retry_max_delay', 'retry_jitter'):
            value = sync.get(field_name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                errors.append(f"sync.{field_name} must be a non-negative number")

        if not isinstance(sync.get('remove_memberships'), bool):
            errors.append("sync.remove_memberships must be true or false")

        schedule = self.config['schedule']
        for field_name in ('initial_delay_seconds', 'interval_seconds', 'trigger_port'):
            value = schedule.get(field_name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                errors.append(f"schedule.{field_name} must be a non-negative number")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    @staticmethod
    def _is_string_list(value: Any) -> bool:
        return isinstance(value, list) and all(isinstance(item, str) for item in value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


@dataclass
class SyncSettings:
    """Settings consumed by the reconciliation engine."""
    group_mappings: List[str] = field(default_factory=list)
    group_prefix: str = 'Qlik-'
    excluded_email_domains: List[str] = field(default_factory=list)
    remove_memberships: bool = False
    max_workers: int = 24
    invite_concurrency: int = 6
    membership_concurrency: int = 16
    max_attempts: int = 7
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.35
    operation_timeout: float = 600.0
    guest_phase_timeout: float = 1800.0
    membership_phase_timeout: float = 2400.0
    reconcile_phase_timeout: float = 2400.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'SyncSettings':
        """Build settings from a loaded configuration dictionary."""
        directory = config.get('directory', {})
        source = config.get('source', {})
        sync = dict(SYNC_DEFAULTS)
        sync.update(config.get('sync', {}))
        return cls(
            group_mappings=list(directory.get('group_mappings') or []),
            group_prefix=directory.get('group_prefix', DIRECTORY_DEFAULTS['group_prefix']),
            excluded_email_domains=list(source.get('excluded_email_domains') or []),
            remove_memberships=bool(sync['remove_memberships']),
            max_workers=int(sync['max_workers']),
            invite_concurrency=int(sync['invite_concurrency']),
            membership_concurrency=int(sync['membership_concurrency']),
            max_attempts=int(sync['max_attempts']),
            retry_base_delay=float(sync['retry_base_delay']),
            retry_max_delay=float(sync['retry_max_delay']),
            retry_jitter=float(sync['retry_jitter']),
            operation_timeout=float(sync['operation_timeout_seconds']),
            guest_phase_timeout=float(sync['guest_phase_timeout_seconds']),
            membership_phase_timeout=float(sync['membership_phase_timeout_seconds']),
            reconcile_phase_timeout=float(sync['reconcile_phase_timeout_seconds'])
        )
