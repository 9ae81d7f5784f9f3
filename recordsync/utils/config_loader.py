"""Configuration loader for the sync service."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from recordsync.models.config import AppConfig

log = structlog.stdlib.get_logger()


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigLoader:
    """Loads and validates application configuration from YAML files and environment variables."""

    def __init__(self) -> None:
        """Initialize the ConfigLoader."""
        self.env_var_pattern = re.compile(r"\$\{([^}]+)\}")

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from YAML file with environment variable overrides.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                config/{APP_ENV}.yaml with a fallback to config/default.yaml

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If configuration is missing, unreadable or invalid
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._load_yaml_file(config_path)
        config_dict = self._substitute_env_vars(config_dict)

        try:
            app_config = AppConfig(**config_dict)
            log.info("configuration_loaded_successfully")
            return app_config
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path based on environment."""
        env = os.getenv("APP_ENV", "default")
        config_dir = Path(__file__).parent.parent.parent / "config"
        config_file = config_dir / f"{env}.yaml"

        if not config_file.exists():
            config_file = config_dir / "default.yaml"

        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}. "
                f"Please create config/default.yaml or set APP_ENV to a valid environment."
            )

        return str(config_file)

    def _load_yaml_file(self, config_path: str) -> Dict[str, Any]:
        """Load YAML configuration file.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {config_path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration file {config_path}: {e}") from e

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path)
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute ${VAR_NAME} patterns in configuration values."""
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_in_string(config)
        else:
            return config

    def _substitute_env_var_in_string(self, value: str) -> str:
        """Substitute environment variables in a string.

        Raises:
            ConfigurationError: If a referenced variable is not set
        """
        for var_name in self.env_var_pattern.findall(value):
            env_value = self._resolve_env_var(var_name)
            if env_value is None:
                raise ConfigurationError(
                    f"Required environment variable not set: {var_name}. "
                    f"Please set {var_name} or {var_name}_FILE in your environment or .env file."
                )
            value = value.replace(f"${{{var_name}}}", env_value)

        return value

    def _resolve_env_var(self, var_name: str) -> Optional[str]:
        """Read VAR from the environment, falling back to the file named by VAR_FILE.

        The file form is what Docker and Kubernetes secrets mount.
        """
        env_value = os.getenv(var_name)
        if env_value:
            return env_value

        secret_path = os.getenv(f"{var_name}_FILE")
        if not secret_path:
            return env_value

        try:
            return Path(secret_path).read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigurationError(
                f"Failed to read secret file {secret_path} for {var_name}: {e}"
            ) from e

    def validate_config(self, config: AppConfig) -> list[str]:
        """Validate configuration and return any warnings.

        Pydantic handles field validation during model creation; this covers
        relationships between sections.

        Args:
            config: Application configuration to validate

        Returns:
            List of warning messages (empty if no warnings)
        """
        warnings = []

        for name in ("contracts", "states"):
            if name not in config.storage.allowed_collections:
                warnings.append(
                    f"collection '{name}' is synced but missing from storage.allowed_collections"
                )

        if config.storage.statement_timeout > config.storage.transaction_timeout:
            warnings.append(
                f"statement_timeout ({config.storage.statement_timeout}) exceeds "
                f"transaction_timeout ({config.storage.transaction_timeout})"
            )

        if config.notifier.telegram_bot_token and config.notifier.telegram_chat_id == 0:
            warnings.append("telegram_bot_token is set but telegram_chat_id is 0, notifier disabled")

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)

        return warnings
