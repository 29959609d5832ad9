"""Per-platform feature flags consulted before any network call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from services.connectors.types import Platform


@dataclass(frozen=True)
class PlatformCapabilities:
    supports_threads: bool
    supports_repost: bool
    character_limit: int


PLATFORM_CAPABILITIES: Dict[Platform, PlatformCapabilities] = {
    Platform.TWITTER: PlatformCapabilities(supports_threads=True, supports_repost=True, character_limit=280),
    Platform.LINKEDIN: PlatformCapabilities(supports_threads=False, supports_repost=False, character_limit=3000),
}


def capabilities_for(platform: Platform) -> PlatformCapabilities:
    return PLATFORM_CAPABILITIES[Platform(platform)]


def connector_capabilities() -> Dict[str, Dict[str, object]]:
    """Serializable capability table for API responses."""
    return {
        platform.value: {
            "supports_threads": caps.supports_threads,
            "supports_repost": caps.supports_repost,
            "character_limit": caps.character_limit,
        }
        for platform, caps in PLATFORM_CAPABILITIES.items()
    }
