"""
Plugin system for the OVC machine reconciler.

This package provides the plugin architecture for pluggable control plane
gateways.
"""

from plugins.gateways.base import MachineGateway
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "MachineGateway",
    "PluginRegistry",
    "get_registry",
]
