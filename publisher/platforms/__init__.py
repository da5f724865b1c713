"""
Platform adapters.

One adapter per platform, all sharing a single httpx.AsyncClient.
"""

from typing import Dict

import httpx

from ..config import Settings
from ..context import Platform
from .base import PlatformAdapter
from .instagram import InstagramAdapter
from .tiktok import TikTokAdapter
from .youtube import YouTubeAdapter

ADAPTERS = {
    Platform.YOUTUBE: YouTubeAdapter,
    Platform.INSTAGRAM: InstagramAdapter,
    Platform.TIKTOK: TikTokAdapter,
}


def build_adapters(settings: Settings, client: httpx.AsyncClient) -> Dict[Platform, PlatformAdapter]:
    # Settings carries one config section per platform, named after it
    return {
        platform: adapter_cls(getattr(settings, platform.value), client)
        for platform, adapter_cls in ADAPTERS.items()
    }


__all__ = [
    "ADAPTERS",
    "PlatformAdapter",
    "YouTubeAdapter",
    "InstagramAdapter",
    "TikTokAdapter",
    "build_adapters",
]
