"""Multi-source mountain search and lookup."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

from .models import (
    SOURCE_WIKIPEDIA,
    MountainRecord,
    SearchQuery,
    ValidationFailure,
)
from .providers.base import ProviderUnavailable
from .providers.mountix import ID_PREFIX as MOUNTIX_PREFIX
from .providers.weather import static_map_url
from .state import MountainStore
from .text import matches

logger = logging.getLogger(__name__)

_FOREIGN_PREFIXES = ("user-", "osm-", "wiki-")


@dataclass(frozen=True)
class LookupResult:
    record: MountainRecord
    strategy: str
    added_by: Optional[str] = None


@dataclass(frozen=True)
class LookupStrategy:
    name: str
    run: Callable[[str], Awaitable[Optional[LookupResult]]]


def dedupe_by_id(records: Iterable[MountainRecord]) -> List[MountainRecord]:
    seen = set()
    out: List[MountainRecord] = []
    for record in records:
        if record.id in seen:
            continue
        seen.add(record.id)
        out.append(record)
    return out


def filter_by_variants(name: str, records: Sequence[MountainRecord]) -> List[MountainRecord]:
    return [r for r in records if matches(name, (r.name, r.name_reading))]


class MountainAggregator:
    """Combines the map, primary API, community store and encyclopedia.

    Providers are duck-typed collaborators:

    * ``primary``: ``get_by_id(id)``, ``search(params)``, ``surroundings(id, distance)``
    * ``crowd_map``: ``search_by_name(text, limit)``
    * ``encyclopedia``: ``get_summary(title)``, ``find_image(name, reading)``
    """

    def __init__(
        self,
        *,
        primary,
        crowd_map,
        encyclopedia,
        store: MountainStore,
        telemetry=None,
        default_limit: int = 10,
    ) -> None:
        self.primary = primary
        self.crowd_map = crowd_map
        self.encyclopedia = encyclopedia
        self.store = store
        self._telemetry = telemetry
        self._default_limit = default_limit
        self.last_search_failed = False
        self.lookup_strategies: Tuple[LookupStrategy, ...] = (
            LookupStrategy("primary", self._lookup_primary),
            LookupStrategy("community", self._lookup_community),
            LookupStrategy("encyclopedia", self._lookup_encyclopedia),
        )

    def _provider_failed(self, provider: str, exc: BaseException) -> None:
        logger.warning("Provider %s failed: %s", provider, exc)
        if self._telemetry is not None:
            self._telemetry.track_provider_failure(provider, str(exc))

    # Search ------------------------------------------------------------
    async def search(self, query: SearchQuery) -> List[MountainRecord]:
        """Name search across every provider, local submissions first."""

        self.last_search_failed = False
        if query.is_empty:
            return []
        if not (query.name and query.name.strip()):
            found = await self.lookup(query.id or "")
            return [found.record] if found else []

        name = query.name.strip()
        limit = query.limit or self._default_limit
        osm_result, primary_result = await asyncio.gather(
            self.crowd_map.search_by_name(name, limit),
            self.primary.search({"name": name, "limit": limit}),
            return_exceptions=True,
        )

        failures = 0
        osm_records: List[MountainRecord] = []
        primary_records: List[MountainRecord] = []
        if isinstance(osm_result, BaseException):
            failures += 1
            self._provider_failed("overpass", osm_result)
        else:
            osm_records = list(osm_result)
        if isinstance(primary_result, BaseException):
            failures += 1
            self._provider_failed("mountix", primary_result)
        else:
            primary_records = list(primary_result)

        local_records: List[MountainRecord] = []
        try:
            local_records = self._community_matches(name, limit)
        except sqlite3.Error as exc:
            failures += 1
            self._provider_failed("community", exc)

        combined = dedupe_by_id([*local_records, *osm_records, *primary_records])
        try:
            results = filter_by_variants(name, combined)
        except Exception:
            logger.exception("Variant filtering failed for %s; returning unfiltered results", name)
            results = combined

        self.last_search_failed = failures == 3 and not results
        logger.info(
            "Search %r: %d local, %d osm, %d primary -> %d results",
            name,
            len(local_records),
            len(osm_records),
            len(primary_records),
            len(results),
        )
        return results

    def _community_matches(self, name: str, limit: int) -> List[MountainRecord]:
        records: List[MountainRecord] = []
        for submission in self.store.list_user_mountains(approved=True, limit=max(limit, 200)):
            if not matches(name, (submission.name, submission.name_reading)):
                continue
            try:
                records.append(submission.to_record())
            except ValidationFailure as exc:
                logger.debug("Skipping community mountain %s: %s", submission.id, exc)
        return records

    # Lookup ------------------------------------------------------------
    async def lookup(self, identifier: str) -> Optional[LookupResult]:
        """Try each lookup strategy in order; ``None`` means not found anywhere."""

        identifier = (identifier or "").strip()
        if not identifier:
            return None
        for strategy in self.lookup_strategies:
            try:
                result = await strategy.run(identifier)
            except (ProviderUnavailable, sqlite3.Error) as exc:
                self._provider_failed(strategy.name, exc)
                continue
            if result is not None:
                logger.debug("Lookup %s resolved via %s", identifier, strategy.name)
                return result
        logger.info("Lookup %s found nothing", identifier)
        return None

    async def _lookup_primary(self, identifier: str) -> Optional[LookupResult]:
        if identifier.startswith(_FOREIGN_PREFIXES):
            return None
        record = await self.primary.get_by_id(identifier)
        return LookupResult(record, "primary") if record else None

    async def _lookup_community(self, identifier: str) -> Optional[LookupResult]:
        if identifier.startswith((MOUNTIX_PREFIX, "osm-", "wiki-")):
            return None
        submission = self.store.find_user_mountain(identifier)
        if submission is None:
            return None
        try:
            record = submission.to_record()
        except ValidationFailure:
            return None
        return LookupResult(record, "community", added_by=submission.added_by)

    async def _lookup_encyclopedia(self, identifier: str) -> Optional[LookupResult]:
        title = identifier[len("wiki-"):] if identifier.startswith("wiki-") else identifier
        summary = await self.encyclopedia.get_summary(title)
        if summary is None:
            return None
        record = MountainRecord.create(
            id=f"wiki-{summary.title}",
            name=summary.title,
            source_label=SOURCE_WIKIPEDIA,
            description=summary.extract,
            photo_url=summary.image_url,
        )
        return LookupResult(record, "encyclopedia", added_by=SOURCE_WIKIPEDIA)

    # Extras ------------------------------------------------------------
    async def fetch_pool(self, limit: int = 200) -> List[MountainRecord]:
        """Unfiltered listing from the primary provider, used to seed quizzes."""

        try:
            return list(await self.primary.search({"limit": limit}))
        except ProviderUnavailable as exc:
            self._provider_failed("mountix", exc)
            return []

    async def nearby(self, identifier: str, distance_m: int = 5000) -> List[MountainRecord]:
        if identifier.startswith(_FOREIGN_PREFIXES):
            return []
        try:
            return list(await self.primary.surroundings(identifier, distance_m))
        except ProviderUnavailable as exc:
            self._provider_failed("mountix", exc)
            return []

    async def find_image(self, record: MountainRecord) -> Optional[str]:
        """Photo URL, else an encyclopedia image, else a static map."""

        if record.photo_url:
            return record.photo_url
        try:
            image = await self.encyclopedia.find_image(record.name, record.name_reading)
        except ProviderUnavailable as exc:
            self._provider_failed("wikipedia", exc)
            image = None
        if image:
            return image
        if record.coordinates:
            return static_map_url(record.coordinates, 12, "700x400", markers=[record.coordinates])
        return None


__all__ = ["LookupResult", "LookupStrategy", "MountainAggregator", "dedupe_by_id", "filter_by_variants"]
