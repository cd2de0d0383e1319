"""Configuration management - loads billing.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from billing_engine.models import BillingSettings, PlanDefinition


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Billing configuration loader.

    Loads billing.yaml and provides validated access to:
    - Plan definitions
    - Lock, idempotency and retry settings
    - Grace period, matcher and notification settings
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to billing.yaml. If not provided, uses the
                BILLING_CONFIG_PATH env var or defaults to ./config/billing.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[BillingSettings] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("BILLING_CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/billing.yaml")

    def _load_config(self) -> None:
        """Load and validate billing.yaml."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/billing.yaml or set BILLING_CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            self._settings = BillingSettings(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        plan_ids = [plan.id for plan in self._settings.plans]
        duplicates = sorted({pid for pid in plan_ids if plan_ids.count(pid) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate plan ids in configuration: {duplicates}")

    @property
    def settings(self) -> BillingSettings:
        """Get validated billing settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def plans(self) -> list[PlanDefinition]:
        return self.settings.plans

    def get_plan_by_id(self, plan_id: str) -> Optional[PlanDefinition]:
        """Get plan definition by ID, or None if unknown."""
        for plan in self.settings.plans:
            if plan.id == plan_id:
                return plan
        return None

    @property
    def lock_settings(self):
        return self.settings.lock

    @property
    def idempotency_settings(self):
        return self.settings.idempotency

    @property
    def retry_config(self):
        return self.settings.retry

    @property
    def grace_period_config(self):
        return self.settings.grace_period

    @property
    def matcher_settings(self):
        return self.settings.matcher

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
