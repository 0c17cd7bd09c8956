"""
Configuration loading and management for the user info sync host.

This module loads the host configuration from a YAML file, applies
environment variable overrides for secrets, validates it and fills in
defaults. Per-tenant sync parameters live on the tenants themselves and are
handled by tenant_config.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

USER_STORE_TYPES = ('keycloak', 'memory')
CLUSTER_TYPES = ('redis', 'local', 'none')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of host configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.base_url': 'DIRECTORY_API_URL',
        'directory.system_id': 'DIRECTORY_SYSTEM_ID',
        'directory.token': 'DIRECTORY_API_TOKEN',
        'user_store.auth.client_secret': 'KEYCLOAK_CLIENT_SECRET',
        'cluster.url': 'REDIS_URL',
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
            raise ConfigurationError("Configuration root must be a mapping")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

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

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        directory = self.config.get('directory') or {}
        for field in ('base_url', 'system_id', 'token'):
            if not directory.get(field):
                errors.append(f"Missing required directory field: {field}")

        user_store = self.config.get('user_store') or {}
        store_type = user_store.get('type', 'keycloak')
        if store_type not in USER_STORE_TYPES:
            errors.append(f"Unknown user_store.type '{store_type}' (expected one of {', '.join(USER_STORE_TYPES)})")
        elif store_type == 'keycloak':
            if not user_store.get('base_url'):
                errors.append("Missing required user_store field: base_url")
            auth = user_store.get('auth') or {}
            method = str(auth.get('method', '')).lower()
            if method == 'oauth2':
                for field in ('client_id', 'client_secret', 'token_url'):
                    if not auth.get(field):
                        errors.append(f"Missing user_store.auth.{field} for oauth2")
            elif method in ('bearer', 'token'):
                if not auth.get('token'):
                    errors.append("Missing user_store.auth.token for bearer auth")
            else:
                errors.append("user_store.auth.method must be 'oauth2' or 'bearer'")
        elif store_type == 'memory':
            tenants = user_store.get('tenants')
            if tenants is not None and not isinstance(tenants, dict):
                errors.append("user_store.tenants must be a mapping of tenant id to tenant")

        cluster = self.config.get('cluster') or {}
        cluster_type = cluster.get('type', 'local')
        if cluster_type not in CLUSTER_TYPES:
            errors.append(f"Unknown cluster.type '{cluster_type}' (expected one of {', '.join(CLUSTER_TYPES)})")
        elif cluster_type == 'redis' and not cluster.get('url'):
            errors.append("Missing cluster.url for redis coordinator")

        tick_seconds = (self.config.get('scheduler') or {}).get('tick_seconds', 60)
        if not isinstance(tick_seconds, (int, float)) or tick_seconds <= 0:
            errors.append("scheduler.tick_seconds must be a positive number")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.config.get(name) or {}
        self.config[name] = section
        return section

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'verify_ssl': True,
            'truststore_type': 'PEM',
        }
        directory_config = self._section('directory')
        for key, value in directory_defaults.items():
            directory_config.setdefault(key, value)

        user_store_defaults = {
            'type': 'keycloak',
            'verify_ssl': True,
            'timeout_seconds': 30,
        }
        user_store_config = self._section('user_store')
        for key, value in user_store_defaults.items():
            user_store_config.setdefault(key, value)

        cluster_config = self._section('cluster')
        cluster_config.setdefault('type', 'local')
        cluster_config.setdefault('key_namespace', '')

        scheduler_config = self._section('scheduler')
        scheduler_config.setdefault('tick_seconds', 60)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING',
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)


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
