"""OpenStreetMap Overpass client for crowd-sourced peak data."""
from __future__ import annotations

import logging
import re
from typing import Any, List, Optional, Sequence, Tuple

import aiohttp

from ..cache import TTLCache
from ..models import SOURCE_OSM, MountainRecord, ValidationFailure
from ..text import matches, parse_name_and_reading
from .base import HttpProvider

logger = logging.getLogger(__name__)

# (south, west, north, east) boxes covering the main island groups.
REGION_BOXES: Tuple[Tuple[float, float, float, float], ...] = (
    (35.0, 138.0, 36.5, 140.5),
    (33.5, 130.0, 35.0, 136.0),
    (41.0, 140.0, 45.5, 146.0),
    (38.0, 139.0, 41.0, 142.0),
    (31.0, 129.0, 33.5, 132.0),
    (24.0, 123.0, 27.0, 129.0),
)

MAX_RESULTS = 100
_REGEX_SPECIAL = re.compile(r'([\\.^$|?*+()\[\]{}"])')


def escape_name(text: str) -> str:
    """Escape a user string for an Overpass regex inside double quotes."""

    return _REGEX_SPECIAL.sub(r"\\\1", text.strip())


def build_query(text: str, limit: int, boxes: Sequence[Tuple[float, float, float, float]] = REGION_BOXES) -> str:
    pattern = escape_name(text)
    clauses = []
    for box in boxes:
        bbox = ",".join(str(v) for v in box)
        clauses.append(f'node["natural"="peak"]["name"~"{pattern}",i]({bbox});')
        clauses.append(f'node["natural"="volcano"]["name"~"{pattern}",i]({bbox});')
    body = "\n  ".join(clauses)
    return f"[out:json][timeout:60];\n(\n  {body}\n);\nout body {min(limit, MAX_RESULTS)};"


def parse_element(element: Any) -> MountainRecord:
    if not isinstance(element, dict):
        raise ValidationFailure("overpass element must be an object")
    tags = element.get("tags") if isinstance(element.get("tags"), dict) else {}
    raw_name = tags.get("name")
    if not raw_name:
        raise ValidationFailure("overpass element has no name")
    reading = tags.get("name:ja-Hira") or tags.get("name:ja_kana")
    name = raw_name
    if not reading:
        name, reading = parse_name_and_reading(raw_name)
        name = name or raw_name
    center = element.get("center") if isinstance(element.get("center"), dict) else {}
    return MountainRecord.create(
        id=f"osm-{element.get('type', 'node')}-{element.get('id')}",
        name=name,
        source_label=SOURCE_OSM,
        name_reading=reading,
        elevation=tags.get("ele"),
        latitude=element.get("lat", center.get("lat")),
        longitude=element.get("lon", center.get("lon")),
        description=tags.get("description") or tags.get("note"),
    )


class OverpassClient(HttpProvider):
    """Searches ``natural=peak``/``natural=volcano`` nodes by name.

    Results are cached briefly to respect Overpass rate limits.
    """

    name = "overpass"

    def __init__(
        self,
        url: str,
        *,
        cache: Optional[TTLCache] = None,
        timeout: float = 65.0,
        user_agent: str = "mountain-bot/1.0",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(timeout=timeout, user_agent=user_agent, session=session)
        self.url = url
        self._cache = cache if cache is not None else TTLCache(300.0)

    async def search_by_name(self, text: str, limit: int = 50) -> List[MountainRecord]:
        text = (text or "").strip()
        if not text:
            return []
        key = (text, limit)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Overpass cache hit for %s (%d results)", text, len(cached))
            return list(cached)

        payload = await self._post_json(
            self.url,
            data=build_query(text, limit),
            headers={"Content-Type": "text/plain"},
        )
        elements = payload.get("elements") if isinstance(payload, dict) else None
        records: List[MountainRecord] = []
        for element in elements or []:
            try:
                record = parse_element(element)
            except ValidationFailure:
                continue
            if matches(text, (record.name, record.name_reading)):
                records.append(record)
        records = records[:limit]
        logger.info("Overpass returned %d peaks for %s", len(records), text)
        self._cache.set(key, tuple(records))
        return records

    @staticmethod
    def license_text() -> str:
        return "© OpenStreetMap contributors\nData licensed under ODbL"

    @staticmethod
    def web_url(record: MountainRecord) -> str:
        if record.coordinates:
            lat, lon = record.coordinates
            return f"https://www.openstreetmap.org/?mlat={lat}&mlon={lon}#map=15/{lat}/{lon}"
        _, osm_type, osm_id = record.id.split("-", 2)
        return f"https://www.openstreetmap.org/{osm_type}/{osm_id}"


__all__ = ["OverpassClient", "REGION_BOXES", "build_query", "escape_name", "parse_element"]
