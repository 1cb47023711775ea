"""Configuration manager for the PopThread core.

This module handles loading, validating, and persisting service configuration.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field


@dataclass
class ServerConfig:
    """Push server settings."""
    host: str = "127.0.0.1"
    port: int = 9300


@dataclass
class StorageConfig:
    """Entity store settings."""
    db_path: str = "~/.popthread/data/popthread.db"
    read_retries: int = 2
    retry_backoff: float = 0.05


@dataclass
class ThreadsConfig:
    """Thread lifecycle settings."""
    allowed_durations: List[int] = field(default_factory=lambda: [1, 2, 4, 8])
    default_duration: int = 2


@dataclass
class ExpiryConfig:
    """Expiry sweep and alert thresholds."""
    sweep_interval: int = 30
    urgent_minutes: int = 15
    soon_minutes: int = 60


@dataclass
class LimitsConfig:
    """Content length limits."""
    max_message_length: int = 2000
    max_gossip_length: int = 1000
    max_comment_length: int = 500
    reply_preview_length: int = 120


@dataclass
class FanoutConfig:
    """Realtime fan-out settings."""
    queue_size: int = 256
    max_frame_size: int = 1048576  # 1 MB


@dataclass
class SecurityConfig:
    """Credential settings."""
    min_password_length: int = 6
    scrypt_n: int = 16384


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: str = "INFO"
    log_path: str = "~/.popthread/logs/popthread.log"
    max_log_size: int = 10485760  # 10 MB
    backup_count: int = 5


class ConfigManager:
    """Manages service configuration with validation and persistence."""

    DEFAULT_CONFIG_PATH = Path.home() / ".popthread" / "config" / "settings.yaml"
    BUNDLED_CONFIG_PATH = Path(__file__).parent / "settings.yaml"
    ENV_PREFIX = "POPTHREAD_"

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Optional custom path to configuration file.
                        If None, uses default user config path.
        """
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file with fallback to defaults."""
        default_config = self._load_yaml(self.BUNDLED_CONFIG_PATH)

        if self.config_path.exists():
            user_config = self._load_yaml(self.config_path)
            self._config = self._merge_configs(default_config, user_config)
        else:
            self._config = default_config

        self._apply_env_overrides()
        self._validate_config()

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """Load YAML configuration file.

        Args:
            path: Path to YAML file

        Returns:
            Dictionary containing configuration
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
                return config if config else {}
        except FileNotFoundError:
            return {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file {path}: {e}")

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge two configuration dictionaries.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary

        Returns:
            Merged configuration dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration.

        Environment variables should be prefixed with POPTHREAD_ and use
        double underscores for nested keys. For example:
        POPTHREAD_EXPIRY__SWEEP_INTERVAL=10
        """
        for env_key, env_value in os.environ.items():
            if not env_key.startswith(self.ENV_PREFIX):
                continue

            config_key = env_key[len(self.ENV_PREFIX):].lower()
            parts = config_key.split("__")

            if len(parts) != 2:
                continue

            section, key = parts

            if section not in self._config:
                continue

            self._config[section][key] = self._convert_env_value(env_value)

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type.

        Args:
            value: String value from environment variable

        Returns:
            Converted value (bool, int, float, list of ints or str)
        """
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        # Comma separated integers, e.g. allowed durations "1,2,4"
        if "," in value:
            try:
                return [int(part) for part in value.split(",") if part.strip()]
            except ValueError:
                pass

        return value

    def _validate_config(self) -> None:
        """Validate configuration has all required fields and correct types."""
        required_sections = [
            'server', 'storage', 'threads', 'expiry', 'limits', 'fanout', 'security', 'logging'
        ]

        for section in required_sections:
            if section not in self._config:
                raise ValueError(f"Missing required configuration section: {section}")

        server = self._config['server']
        self._validate_field(server, 'host', str)
        self._validate_field(server, 'port', int, 0, 65535)

        storage = self._config['storage']
        self._validate_field(storage, 'db_path', str)
        self._validate_field(storage, 'read_retries', int, 0, 10)
        self._validate_field(storage, 'retry_backoff', (int, float), 0, 10)

        threads = self._config['threads']
        self._validate_field(threads, 'allowed_durations', list)
        self._validate_field(threads, 'default_duration', int, 1, 168)
        durations = threads['allowed_durations']
        if not durations or not all(isinstance(d, int) and d > 0 for d in durations):
            raise ValueError("Field allowed_durations must be a non-empty list of positive integers")
        if threads['default_duration'] not in durations:
            raise ValueError("Field default_duration must be one of allowed_durations")

        expiry = self._config['expiry']
        self._validate_field(expiry, 'sweep_interval', int, 1, 3600)
        self._validate_field(expiry, 'urgent_minutes', int, 1, 1440)
        self._validate_field(expiry, 'soon_minutes', int, 1, 1440)
        if expiry['urgent_minutes'] > expiry['soon_minutes']:
            raise ValueError("Field urgent_minutes must be <= soon_minutes")

        limits = self._config['limits']
        self._validate_field(limits, 'max_message_length', int, 1, 100000)
        self._validate_field(limits, 'max_gossip_length', int, 1, 100000)
        self._validate_field(limits, 'max_comment_length', int, 1, 100000)
        self._validate_field(limits, 'reply_preview_length', int, 1, 10000)

        fanout = self._config['fanout']
        self._validate_field(fanout, 'queue_size', int, 1, 100000)
        self._validate_field(fanout, 'max_frame_size', int, 1024, 104857600)

        security = self._config['security']
        self._validate_field(security, 'min_password_length', int, 1, 1024)
        self._validate_field(security, 'scrypt_n', int, 2, 2**20)

        logging = self._config['logging']
        self._validate_field(logging, 'level', str)
        self._validate_field(logging, 'log_path', str)
        self._validate_field(logging, 'max_log_size', int, 1024, 104857600)
        self._validate_field(logging, 'backup_count', int, 0, 100)

    def _validate_field(self, section: Dict[str, Any], field: str,
                        expected_type, min_val: Optional[float] = None,
                        max_val: Optional[float] = None) -> None:
        """Validate a configuration field.

        Args:
            section: Configuration section dictionary
            field: Field name to validate
            expected_type: Expected type (or tuple of types) of the field
            min_val: Optional minimum value for numeric fields
            max_val: Optional maximum value for numeric fields

        Raises:
            ValueError: If validation fails
        """
        if field not in section:
            raise ValueError(f"Missing required field: {field}")

        value = section[field]
        types = expected_type if isinstance(expected_type, tuple) else (expected_type,)

        # bool is an int subclass; don't let True pass as a port number
        if isinstance(value, bool) and bool not in types:
            raise ValueError(f"Field {field} must not be a boolean")

        if not isinstance(value, types):
            names = "/".join(t.__name__ for t in types)
            raise ValueError(
                f"Field {field} must be of type {names}, "
                f"got {type(value).__name__}"
            )

        numeric = isinstance(value, (int, float)) and not isinstance(value, bool)
        if numeric and min_val is not None and value < min_val:
            raise ValueError(f"Field {field} must be >= {min_val}, got {value}")

        if numeric and max_val is not None and value > max_val:
            raise ValueError(f"Field {field} must be <= {max_val}, got {value}")

    def save_config(self) -> None:
        """Save current configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)

    def get_config(self, section: str, key: Optional[str] = None) -> Any:
        """Get configuration value.

        Args:
            section: Configuration section name
            key: Optional key within section. If None, returns entire section.

        Returns:
            Configuration value

        Raises:
            KeyError: If section or key doesn't exist
        """
        if section not in self._config:
            raise KeyError(f"Configuration section not found: {section}")

        if key is None:
            return self._config[section]

        if key not in self._config[section]:
            raise KeyError(f"Configuration key not found: {section}.{key}")

        return self._config[section][key]

    def set_config(self, section: str, key: str, value: Any) -> None:
        """Set configuration value.

        Args:
            section: Configuration section name
            key: Key within section
            value: Value to set

        Raises:
            KeyError: If section doesn't exist
        """
        if section not in self._config:
            raise KeyError(f"Configuration section not found: {section}")

        self._config[section][key] = value

    def get_server_config(self) -> ServerConfig:
        return ServerConfig(**self._config['server'])

    def get_storage_config(self) -> StorageConfig:
        return StorageConfig(**self._config['storage'])

    def get_threads_config(self) -> ThreadsConfig:
        return ThreadsConfig(**self._config['threads'])

    def get_expiry_config(self) -> ExpiryConfig:
        return ExpiryConfig(**self._config['expiry'])

    def get_limits_config(self) -> LimitsConfig:
        return LimitsConfig(**self._config['limits'])

    def get_fanout_config(self) -> FanoutConfig:
        return FanoutConfig(**self._config['fanout'])

    def get_security_config(self) -> SecurityConfig:
        return SecurityConfig(**self._config['security'])

    def get_logging_config(self) -> LoggingConfig:
        return LoggingConfig(**self._config['logging'])

    def expand_path(self, path: str) -> Path:
        """Expand user home directory and environment variables in path.

        Args:
            path: Path string potentially containing ~ or environment variables

        Returns:
            Expanded Path object
        """
        return Path(os.path.expanduser(os.path.expandvars(path)))


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[Path] = None) -> ConfigManager:
    """Get or create global configuration manager instance.

    Args:
        config_path: Optional custom path to configuration file

    Returns:
        ConfigManager instance
    """
    global _config_manager

    if _config_manager is None:
        _config_manager = ConfigManager(config_path)

    return _config_manager
