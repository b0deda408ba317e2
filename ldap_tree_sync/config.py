"""
Configuration loading and management for LDAP Tree Sync.

This module merges an optional YAML configuration file, environment variables
and command-line options into one configuration dictionary, with validation
and defaults.
"""

import os
import copy
import yaml
import logging
from typing import Dict, Any, List, Optional, Tuple

logger = logging.getLogger(__name__)

ENDPOINTS = ('source', 'target')
VALID_SCOPES = ('base', 'one', 'sub')
VALID_SCHEMES = ('ldap://', 'ldaps://', 'ldapi://')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'source.bind_password': 'SOURCE_BIND_PASSWORD',
        'target.bind_password': 'TARGET_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to YAML config file. If None, uses the
                LDAP_TREE_SYNC_CONFIG env var; with neither, no file is read.
        """
        self.config_path = config_path or os.getenv('LDAP_TREE_SYNC_CONFIG')
        self.config = {}

    def load(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Load configuration, apply overrides, validate and fill in defaults.

        Args:
            overrides: Values taking precedence over the file (typically from
                the command line). Keys whose value is None are ignored.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigurationError: If the file cannot be read or validation fails
        """
        self.config = self._read_file() if self.config_path else {}

        if overrides:
            _merge(self.config, overrides)

        self._read_password_files()
        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        source = f"from {self.config_path}" if self.config_path else "from command line"
        logger.debug(f"Configuration loaded successfully {source}")
        return self.config

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration file {self.config_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {self.config_path} must contain a mapping")
        return data

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _read_password_files(self):
        for name in ENDPOINTS:
            endpoint = self.config.get(name)
            if not isinstance(endpoint, dict):
                continue
            path = endpoint.pop('bind_password_file', None)
            if not path:
                continue
            if endpoint.get('bind_password'):
                raise ConfigurationError(f"Both a password and a password file were given for {name}")
            try:
                with open(path, 'r', encoding='utf-8', newline='') as f:
                    password = f.read()
            except (OSError, UnicodeDecodeError) as e:
                raise ConfigurationError(f"Cannot read password file for {name}: {e}")
            endpoint['bind_password'] = _strip_line_ending(password)

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

        for name in ENDPOINTS:
            endpoint = self.config.get(name)
            if not isinstance(endpoint, dict):
                errors.append(f"Missing {name} endpoint")
                continue

            server_url = endpoint.get('server_url')
            if not server_url:
                errors.append(f"Missing required field {name}.server_url")
            elif not str(server_url).lower().startswith(VALID_SCHEMES):
                errors.append(f"Invalid {name}.server_url '{server_url}': expected ldap://, ldaps:// or ldapi://")

            scope = endpoint.get('scope')
            if scope is not None and scope not in VALID_SCOPES:
                errors.append(f"Invalid {name}.scope '{scope}': expected one of {', '.join(VALID_SCOPES)}")

        scope = self.config.get('scope')
        if scope is not None and scope not in VALID_SCOPES:
            errors.append(f"Invalid scope '{scope}': expected one of {', '.join(VALID_SCOPES)}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        self.config.setdefault('scope', 'sub')
        self.config.setdefault('dry_run', False)
        self.config.setdefault('start_tls', False)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'console_level': 'WARNING',
            'log_dir': None,
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Endpoint defaults
        endpoint_defaults = {
            'bind_dn': None,
            'bind_password': None,
            'base': '',
            'filter': '(objectClass=*)',
            'verify_ssl': True,
            'ca_cert_file': None,
            'attributes': ['*'],
            'page_size': 500,
            'connection_timeout': 10,
            'receive_timeout': 30
        }
        for name in ENDPOINTS:
            endpoint = self.config[name]
            for key, value in endpoint_defaults.items():
                endpoint.setdefault(key, value)
            endpoint.setdefault('scope', self.config['scope'])
            endpoint.setdefault('start_tls', self.config['start_tls'])
            endpoint['error_handling'] = dict(error_config)


def _strip_line_ending(value: str) -> str:
    """Remove one trailing LF or CRLF, keeping any other whitespace."""
    for ending in ('\r\n', '\n'):
        if value.endswith(ending):
            return value[:-len(ending)]
    return value


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]):
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict):
            if not isinstance(base.get(key), dict):
                base[key] = {}
            _merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def split_per_endpoint(option: str, values: Optional[List[Any]]) -> Tuple[Any, Any]:
    """
    Spread a repeatable option over the source and target endpoints.

    One value applies to both endpoints, two values are source then target.

    Raises:
        ConfigurationError: If more than two values were given
    """
    if not values:
        return None, None
    if len(values) == 1:
        return values[0], values[0]
    if len(values) == 2:
        return values[0], values[1]
    raise ConfigurationError(f"{option} may be given at most twice (source, then target)")


def build_config(args) -> Dict[str, Any]:
    """
    Build the run configuration from parsed command-line arguments.

    Args:
        args: argparse namespace from :func:`ldap_tree_sync.main.build_parser`

    Returns:
        Validated configuration dictionary
    """
    per_endpoint = {
        'bind_dn': split_per_endpoint('--binddn', args.binddn),
        'bind_password': split_per_endpoint('--password', args.password),
        'bind_password_file': split_per_endpoint('--password-file', args.password_file),
        'base': split_per_endpoint('--base', args.base),
        'filter': split_per_endpoint('--filter', args.filter),
        'scope': (args.scope, args.scope),
    }

    overrides = {
        'source': {'server_url': args.source},
        'target': {'server_url': args.target},
        'scope': args.scope,
        'start_tls': True if args.starttls else None,
        'dry_run': True if args.dry_run else None,
    }
    for key, (source_value, target_value) in per_endpoint.items():
        overrides['source'][key] = source_value
        overrides['target'][key] = target_value

    loader = ConfigLoader(args.config)
    return loader.load(overrides)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration from a file alone.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
