"""Typed adapter factory keyed by platform."""

from __future__ import annotations

from typing import Dict, List, Type, Union

from services.connectors.base import BasePlatformAdapter
from services.connectors.linkedin import LinkedInAdapter
from services.connectors.twitter import TwitterAdapter
from services.connectors.types import Platform
from services.errors import UnsupportedPlatformError

ADAPTERS: Dict[Platform, Type[BasePlatformAdapter]] = {
    Platform.TWITTER: TwitterAdapter,
    Platform.LINKEDIN: LinkedInAdapter,
}


def parse_platform(value: Union[str, Platform]) -> Platform:
    try:
        return Platform(str(value.value if isinstance(value, Platform) else value).strip().lower())
    except ValueError as exc:
        raise UnsupportedPlatformError(f"Unsupported platform: {value}") from exc


def get_adapter(platform: Union[str, Platform], **kwargs) -> BasePlatformAdapter:
    """Instantiate the adapter registered for ``platform``."""
    key = parse_platform(platform)
    adapter_cls = ADAPTERS.get(key)
    if adapter_cls is None:
        raise UnsupportedPlatformError(f"No adapter registered for {key.value}")
    return adapter_cls(**kwargs)


def supported_platforms() -> List[Platform]:
    return list(ADAPTERS.keys())
