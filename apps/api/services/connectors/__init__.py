"""Public platform adapter utilities."""

from services.connectors.base import BasePlatformAdapter
from services.connectors.capabilities import PlatformCapabilities, capabilities_for, connector_capabilities
from services.connectors.registry import get_adapter, parse_platform, supported_platforms
from services.connectors.types import (
    AuthorizationRequest,
    ConnectionStatus,
    MetricsObservation,
    Platform,
    PlatformUser,
    PostContent,
    PublishedPost,
    RefreshTokenState,
    TokenBundle,
)

__all__ = [
    "AuthorizationRequest",
    "BasePlatformAdapter",
    "ConnectionStatus",
    "MetricsObservation",
    "Platform",
    "PlatformCapabilities",
    "PlatformUser",
    "PostContent",
    "PublishedPost",
    "RefreshTokenState",
    "TokenBundle",
    "capabilities_for",
    "connector_capabilities",
    "get_adapter",
    "parse_platform",
    "supported_platforms",
]
