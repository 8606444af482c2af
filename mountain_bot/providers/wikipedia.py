"""Wikipedia summary and image lookups."""
from __future__ import annotations

import logging
from typing import Any, List, Optional
from urllib.parse import quote

import aiohttp

from ..cache import TTLCache
from ..models import WikiSummary
from .base import HttpProvider, ProviderUnavailable

logger = logging.getLogger(__name__)

_NO_IMAGE = ""


def ensure_https(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    value = str(url).strip()
    if value.startswith("//"):
        value = "https:" + value
    if value.startswith("http:"):
        value = "https:" + value[5:]
    return value


def title_candidates(name: str, reading: Optional[str] = None) -> List[str]:
    """Page titles worth trying for a mountain name, most specific first."""

    out: List[str] = []
    for title in (name, reading, f"{name} 山", f"{name} 岳", f"{name}（山）", f"{name} (山)"):
        if title and title not in out:
            out.append(title)
    return out


class WikipediaClient(HttpProvider):
    name = "wikipedia"

    def __init__(
        self,
        base_url: str = "https://ja.wikipedia.org",
        *,
        image_cache: Optional[TTLCache] = None,
        timeout: float = 5.0,
        user_agent: str = "mountain-bot/1.0",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(timeout=timeout, user_agent=user_agent, session=session)
        self.base_url = base_url.rstrip("/")
        self._image_cache = image_cache if image_cache is not None else TTLCache(30 * 24 * 3600.0)

    def page_url(self, title: str) -> str:
        return f"{self.base_url}/wiki/{quote(title, safe='')}"

    async def get_summary(self, title: str) -> Optional[WikiSummary]:
        title = (title or "").strip()
        if not title:
            return None
        payload = await self._get_json(f"{self.base_url}/api/rest_v1/page/summary/{quote(title, safe='')}")
        return self.parse_summary(payload)

    def parse_summary(self, payload: Any) -> Optional[WikiSummary]:
        if not isinstance(payload, dict) or not payload.get("title"):
            return None
        if payload.get("type") == "disambiguation":
            return None
        image = payload.get("originalimage") or payload.get("thumbnail") or {}
        urls = payload.get("content_urls") or {}
        desktop = urls.get("desktop") if isinstance(urls, dict) else None
        page = desktop.get("page") if isinstance(desktop, dict) else None
        title = str(payload["title"])
        return WikiSummary(
            title=title,
            extract=payload.get("extract") or None,
            image_url=ensure_https(image.get("source")) if isinstance(image, dict) else None,
            page_url=page or self.page_url(title),
        )

    async def _page_image(self, title: str) -> Optional[str]:
        summary = await self.get_summary(title)
        if summary and summary.image_url:
            return summary.image_url
        payload = await self._get_json(
            f"{self.base_url}/w/api.php",
            params={
                "action": "query",
                "titles": title,
                "prop": "pageimages",
                "format": "json",
                "pithumbsize": 1000,
                "redirects": 1,
            },
        )
        pages = (payload or {}).get("query", {}).get("pages") if isinstance(payload, dict) else None
        if not isinstance(pages, dict):
            return None
        for page in pages.values():
            thumb = ((page or {}).get("thumbnail") or {}).get("source")
            if thumb:
                return ensure_https(thumb)
        return None

    async def find_image(self, name: str, reading: Optional[str] = None) -> Optional[str]:
        """Representative image for a mountain, cached including misses."""

        if not name:
            return None
        cached = self._image_cache.get(name)
        if cached is not None:
            return cached or None

        found: Optional[str] = None
        for title in title_candidates(name, reading):
            try:
                found = await self._page_image(title)
            except ProviderUnavailable as exc:
                logger.warning("Wikipedia image lookup failed for %s: %s", title, exc)
                # Do not cache a miss caused by an outage.
                return None
            if found:
                break
        self._image_cache.set(name, found or _NO_IMAGE)
        return found


__all__ = ["WikipediaClient", "ensure_https", "title_candidates"]
