"""
OVC Gateway Plugin.

This plugin manages machines through the OpenvCloud cloudapi.
"""

from plugins.gateways.ovc.client import OVCGateway

__all__ = ["OVCGateway"]
