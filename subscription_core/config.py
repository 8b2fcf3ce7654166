"""Configuration management - loads tiers.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from subscription_core.models import ServiceConfig, TierDefinition


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader and manager.

    Loads tiers.yaml and provides validated access to:
    - Tier definitions (static price/duration mapping)
    - Billing provider settings
    - Scheduler and store settings

    Billing secrets can be supplied through QIWI_SECRET_KEY and QIWI_SITE_ID
    instead of the YAML file.
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to tiers.yaml file. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/tiers.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._service_config: Optional[ServiceConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/tiers.yaml")

    def _load_config(self) -> None:
        """Load and validate tiers.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/tiers.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        self._apply_env_overrides(raw_config)

        try:
            self._service_config = ServiceConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    @staticmethod
    def _apply_env_overrides(raw_config: dict) -> None:
        billing = raw_config.setdefault("billing", {}) or {}
        raw_config["billing"] = billing

        secret_key = os.getenv("QIWI_SECRET_KEY")
        if secret_key:
            billing["secret_key"] = secret_key

        site_id = os.getenv("QIWI_SITE_ID")
        if site_id:
            billing["site_id"] = site_id

        snapshot_path = os.getenv("STORE_SNAPSHOT_PATH")
        if snapshot_path:
            store = raw_config.setdefault("store", {}) or {}
            store["snapshot_path"] = snapshot_path
            raw_config["store"] = store

    @property
    def service(self) -> ServiceConfig:
        """Get validated service configuration."""
        if self._service_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._service_config

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def tiers(self) -> list[TierDefinition]:
        return self.service.tiers

    def get_tier_by_id(self, tier_id: str) -> Optional[TierDefinition]:
        """Get tier definition by ID.

        Args:
            tier_id: Tier ID (e.g., "1_month")

        Returns:
            TierDefinition if found, None otherwise
        """
        for tier in self.service.tiers:
            if tier.id == tier_id:
                return tier
        return None

    def get_all_tier_ids(self) -> list[str]:
        """Get list of all tier IDs."""
        return [tier.id for tier in self.service.tiers]

    @property
    def billing(self):
        """Billing provider settings."""
        return self.service.billing

    @property
    def scheduler(self):
        """Expiration scheduler settings."""
        return self.service.scheduler

    @property
    def snapshot_path(self) -> Optional[Path]:
        """Store snapshot file, or None when state is memory-only."""
        raw = self.service.store.snapshot_path
        return Path(raw) if raw else None

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
