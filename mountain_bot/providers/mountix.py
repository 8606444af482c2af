"""Client for the Mountix mountain API (the primary structured source)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from ..models import SOURCE_MOUNTIX, MountainRecord, ValidationFailure
from .base import HttpProvider

logger = logging.getLogger(__name__)

ID_PREFIX = "mountix-"


def record_id(raw_id: Any) -> str:
    return f"{ID_PREFIX}{raw_id}"


def strip_prefix(identifier: str) -> str:
    text = str(identifier).strip()
    if text.startswith(ID_PREFIX):
        return text[len(ID_PREFIX):]
    return text


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def parse_mountain(raw: Any) -> MountainRecord:
    """Turn one Mountix payload into a :class:`MountainRecord`.

    Mountix does not serve photos; images are resolved later from Wikipedia.
    """

    if not isinstance(raw, dict):
        raise ValidationFailure("mountix payload must be an object")
    props = raw.get("properties") if isinstance(raw.get("properties"), dict) else {}
    location = _first(raw.get("location"), props.get("location"))
    location = location if isinstance(location, dict) else {}
    geometry = raw.get("geometry") if isinstance(raw.get("geometry"), dict) else {}
    geo_coords = geometry.get("coordinates") if isinstance(geometry.get("coordinates"), list) else []

    raw_id = _first(raw.get("id"), props.get("id"))
    if raw_id is None or str(raw_id).strip() == "":
        raise ValidationFailure("mountix payload has no id")
    prefectures = _first(raw.get("prefectures"), props.get("prefectures")) or []
    tags = _first(raw.get("tags"), props.get("tags")) or []
    return MountainRecord.create(
        id=record_id(raw_id),
        name=_first(raw.get("name"), raw.get("title"), props.get("name")),
        source_label=SOURCE_MOUNTIX,
        name_reading=_first(raw.get("nameKana"), props.get("nameKana"), raw.get("kana")),
        elevation=_first(raw.get("elevation"), raw.get("altitude"), raw.get("height"), props.get("elevation")),
        latitude=_first(
            location.get("latitude"),
            location.get("lat"),
            raw.get("latitude"),
            raw.get("lat"),
            geo_coords[1] if len(geo_coords) > 1 else None,
        ),
        longitude=_first(
            location.get("longitude"),
            location.get("lon"),
            raw.get("longitude"),
            raw.get("lon"),
            geo_coords[0] if geo_coords else None,
        ),
        description=_first(
            raw.get("description"), raw.get("summary"), raw.get("overview"), props.get("description")
        ),
        regions=prefectures if isinstance(prefectures, list) else [prefectures],
        tags=[t.get("name") if isinstance(t, dict) else t for t in tags] if isinstance(tags, list) else [],
        gsi_url=_first(location.get("gsiUrl"), raw.get("gsiUrl")),
    )


def parse_many(payload: Any) -> List[MountainRecord]:
    if isinstance(payload, dict):
        items = payload.get("mountains") or []
    elif isinstance(payload, list):
        items = payload
    else:
        items = []
    records: List[MountainRecord] = []
    for raw in items:
        try:
            records.append(parse_mountain(raw))
        except ValidationFailure as exc:
            logger.debug("Dropping Mountix entry: %s", exc)
    return records


class MountixClient(HttpProvider):
    """Mountix REST client.

    The API is public; an API key is sent as a bearer token only when one is
    configured.
    """

    name = "mountix"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 8.0,
        user_agent: str = "mountain-bot/1.0",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(timeout=timeout, user_agent=user_agent, session=session)
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key

    def _auth_headers(self) -> Dict[str, str]:
        if self._api_key:
            return {"Authorization": f"Bearer {self._api_key}"}
        return {}

    def page_url(self, identifier: str) -> str:
        return f"{self.base_url}/mountains/{quote(strip_prefix(identifier), safe='')}"

    async def get_by_id(self, identifier: str) -> Optional[MountainRecord]:
        payload = await self._get_json(self.page_url(identifier), headers=self._auth_headers())
        if payload is None:
            return None
        try:
            return parse_mountain(payload)
        except ValidationFailure as exc:
            logger.warning("Mountix returned an unusable record for %s: %s", identifier, exc)
            return None

    async def search(self, params: Dict[str, Any]) -> List[MountainRecord]:
        """Search by any of ``name``, ``prefecture``, ``tag``, ``offset``, ``limit``, ``sort``."""

        allowed = {"name", "prefecture", "tag", "offset", "limit", "sort"}
        query = {k: v for k, v in params.items() if k in allowed and v is not None}
        payload = await self._get_json(
            f"{self.base_url}/mountains", params=query, headers=self._auth_headers()
        )
        return parse_many(payload)

    async def surroundings(self, identifier: str, distance: int = 5000) -> List[MountainRecord]:
        payload = await self._get_json(
            f"{self.page_url(identifier)}/surroundings",
            params={"distance": distance},
            headers=self._auth_headers(),
        )
        return parse_many(payload)


__all__ = ["ID_PREFIX", "MountixClient", "parse_many", "parse_mountain", "record_id", "strip_prefix"]
