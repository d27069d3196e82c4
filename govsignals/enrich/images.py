"""Image lookup for enriched signals: a search provider plus category fallbacks."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from govsignals.config import get_image_config
from govsignals.errors import ImageLookupError
from govsignals.models import Signal

logger = logging.getLogger(__name__)

IMAGE_SOURCES: dict[str, type[BaseImageSource]] = {}


def register_image_source(name: str):
    """Decorator to register an image search provider."""

    def decorator(cls):
        IMAGE_SOURCES[name] = cls
        return cls

    return decorator


@dataclass
class ImageResult:
    url: str
    license: str | None = None
    attribution: str | None = None
    source: str = ""


class BaseImageSource(ABC):
    """Base class for image search providers."""

    def __init__(self, access_key: str, base_url: str, timeout: float = 20):
        self.access_key = access_key
        self.base_url = base_url
        self.timeout = timeout

    @abstractmethod
    async def search(self, query: str) -> ImageResult | None:
        """Return the best image for ``query``, or None when nothing matches."""
        ...


@register_image_source("unsplash")
class UnsplashImageSource(BaseImageSource):
    """Unsplash photo search."""

    async def search(self, query: str) -> ImageResult | None:
        url = f"{self.base_url.rstrip('/')}/search/photos"
        params = {"query": query, "per_page": 1, "orientation": "landscape"}
        headers = {"Authorization": f"Client-ID {self.access_key}", "Accept-Version": "v1"}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(url, params=params, headers=headers)
            resp.raise_for_status()
            data = resp.json()

        results = data.get("results") or []
        if not results:
            return None
        photo = results[0]
        image_url = (photo.get("urls") or {}).get("regular")
        if not image_url:
            return None
        photographer = (photo.get("user") or {}).get("name") or "Unknown"
        return ImageResult(
            url=image_url,
            license="Unsplash License",
            attribution=f"Photo by {photographer} on Unsplash",
            source="unsplash",
        )


class ImageFinder:
    """Search for a photo, falling back to a per-category stock image."""

    def __init__(self, source: BaseImageSource | None, fallbacks: dict[str, str] | None = None):
        self.source = source
        self.fallbacks = fallbacks or {}

    async def find(self, signal: Signal, query: str | None = None) -> ImageResult:
        primary = signal.primary_content()
        query = query or (primary.title if primary else "") or signal.category

        if self.source is not None:
            try:
                result = await self.source.search(query)
            except httpx.HTTPError as exc:
                logger.warning("Image search failed for %s: %s", signal.id, exc)
            else:
                if result is not None:
                    return result

        fallback = self.fallbacks.get(signal.category) or self.fallbacks.get("default")
        if fallback:
            return ImageResult(url=fallback, source="fallback")
        raise ImageLookupError(f"No image found for signal {signal.id}")


def build_image_finder(config: dict, timeout: float = 20) -> ImageFinder:
    cfg = get_image_config(config)
    source = None
    source_cls = IMAGE_SOURCES.get(cfg["provider"])
    if source_cls is not None and cfg["access_key"]:
        source = source_cls(cfg["access_key"], cfg["base_url"], timeout=timeout)
    elif cfg["provider"] and source_cls is None:
        logger.warning("Unknown image provider '%s', using fallbacks only", cfg["provider"])
    return ImageFinder(source, cfg["fallbacks"])
