"""
Configuration module for the OVC machine reconciler.

Loads configuration from environment variables. Gateway-specific settings
(endpoint, credentials, retry policy) are owned by each gateway plugin and
can be overridden here through PLUGIN_CONFIGS.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ReconcilerConfig:
    """Reconciler and record store configuration."""

    state_file: str = "ovc-machines.json"
    max_concurrent_reconciles: int = 4

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        max_concurrent = int(os.getenv("MAX_CONCURRENT_RECONCILES", "4"))
        if max_concurrent < 1:
            raise ValueError("MAX_CONCURRENT_RECONCILES must be at least 1")

        return cls(
            state_file=os.getenv("STATE_FILE", "ovc-machines.json"),
            max_concurrent_reconciles=max_concurrent,
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(level=os.getenv("LOG_LEVEL", "INFO").upper())


@dataclass
class PluginConfig:
    """Gateway plugin selection and overrides."""

    gateway: str = "ovc"

    # Gateway-specific configurations keyed by gateway name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        # Load plugin configs from JSON environment variable
        plugin_configs = {}
        if os.getenv("PLUGIN_CONFIGS"):
            try:
                plugin_configs = json.loads(os.getenv("PLUGIN_CONFIGS"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring PLUGIN_CONFIGS, not valid JSON: {e}")

        return cls(
            gateway=os.getenv("GATEWAY", "ovc"),
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration overrides for a specific gateway."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    reconciler: ReconcilerConfig
    logging: LoggingConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            reconciler=ReconcilerConfig.from_env(),
            logging=LoggingConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            reconciler=ReconcilerConfig(),
            logging=LoggingConfig(),
            plugins=PluginConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
