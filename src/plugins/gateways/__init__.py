"""
Gateway plugins package.

Gateway plugins carry machine operations to a remote control plane
(OpenvCloud ships built in; others are discovered via entry points).
"""

from plugins.gateways.base import MachineGateway

__all__ = ["MachineGateway"]
