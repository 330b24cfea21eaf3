"""
jamf_bridge package

Dual-API client for Jamf Pro: Modern JSON (/api) first, Legacy Classic
(/JSSResource) as fallback, with serialized and verified writes.
"""

from .client import JamfBridgeClient
from .common.config import Settings, get_settings
from .contracts.operations import OperationRequest, OperationResponse

__all__ = ["JamfBridgeClient", "OperationRequest", "OperationResponse", "Settings", "get_settings"]
