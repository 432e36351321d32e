"""
Plugin Registry - Discovery and registration of gateway plugins.

This module provides the central registry for gateway plugins, handling
discovery, registration, and instantiation.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, Optional, Type

from plugins.gateways.base import MachineGateway

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "ovc_machine.gateways"


class PluginRegistry:
    """
    Central registry for gateway plugins.

    Handles discovery, registration, and instantiation of gateways.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._gateways: Dict[str, Type[MachineGateway]] = {}

        # Instantiated and initialized gateway instances
        self._gateway_instances: Dict[str, MachineGateway] = {}

        # Gateway configurations loaded from environment
        self._gateway_configs: Dict[str, Dict[str, Any]] = {}

    def register_gateway(self, gateway_class: Type[MachineGateway]) -> None:
        """
        Register a gateway plugin class.

        Args:
            gateway_class: The MachineGateway subclass to register
        """
        # Create temporary instance to get name/version (only once at registration)
        temp_instance = gateway_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._gateways:
            logger.warning(f"Overwriting existing gateway plugin: {name}")

        self._gateways[name] = gateway_class
        # Load gateway config from environment
        self._gateway_configs[name] = gateway_class.load_config_from_env()
        logger.info(f"Registered gateway plugin: {name} v{version}")

    async def get_gateway(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> MachineGateway:
        """
        Get an initialized gateway instance.

        Environment config loaded at registration is merged with the given
        config, the given values taking precedence.

        Args:
            name: The gateway name to retrieve
            config: Optional configuration overrides for initialize()

        Returns:
            An initialized MachineGateway instance

        Raises:
            ValueError: If the gateway name is not registered
        """
        if name not in self._gateways:
            available = ", ".join(self.list_gateways()) or "none"
            raise ValueError(
                f"Unknown gateway plugin: {name}. Available gateways: {available}"
            )

        if name not in self._gateway_instances:
            gateway_config = dict(self._gateway_configs.get(name, {}))
            gateway_config.update(config or {})
            gateway = self._gateways[name]()
            await gateway.initialize(gateway_config)
            self._gateway_instances[name] = gateway
            logger.info(f"Initialized gateway plugin: {name}")

        return self._gateway_instances[name]

    async def close_all(self) -> None:
        """Close and forget all initialized gateways."""
        for name, gateway in list(self._gateway_instances.items()):
            try:
                await gateway.close()
            except Exception as e:
                logger.error(f"Error closing gateway '{name}': {e}")
        self._gateway_instances.clear()

    def list_gateways(self) -> list[str]:
        """List all registered gateway names."""
        return sorted(self._gateways)


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register the built-in gateway and discover third-party gateways
    via entry points.

    Called once at startup by the CLI.
    """
    registry = get_registry()

    try:
        from plugins.gateways.ovc import OVCGateway

        registry.register_gateway(OVCGateway)
    except ImportError as e:
        logger.warning(f"Could not load OVC gateway plugin: {e}")

    discovered = entry_points(group=ENTRY_POINT_GROUP)
    for ep in discovered:
        try:
            gateway_class = ep.load()
            registry.register_gateway(gateway_class)
        except Exception as e:
            logger.warning(f"Could not load gateway plugin {ep.name}: {e}")
