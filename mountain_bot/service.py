"""High-level service wiring providers, storage, quizzes and sessions."""
from __future__ import annotations

import logging
import random
import re
import time
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .aggregator import MountainAggregator
from .cache import TTLCache
from .config import Settings, get_settings
from .llm_client import TriviaClient
from .models import (
    SOURCE_MOUNTIX,
    SOURCE_OSM,
    SOURCE_WIKIPEDIA,
    BugReport,
    MountainRecord,
    PointWeather,
    QuizQuestion,
    ScoreRecord,
    SearchQuery,
    UserMountain,
    clean_coordinates,
    clean_elevation,
    to_number,
)
from .providers import (
    MountixClient,
    NominatimGeocoder,
    OpenMeteoClient,
    OverpassClient,
    ProviderUnavailable,
    WikipediaClient,
)
from .quiz import QuizBuilder
from .sessions import AnswerOutcome, QuizResult, QuizSessionManager, make_session_key
from .state import MountainStore
from .text import has_kanji_and_both_kana, parse_name_and_reading

logger = logging.getLogger(__name__)

_LAT_LON = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")


class SubmissionError(ValueError):
    """A community submission was rejected; the message is user-facing."""


@dataclass
class MountainDetails:
    record: MountainRecord
    strategy: str
    added_by: Optional[str] = None
    image_url: Optional[str] = None
    page_url: Optional[str] = None
    nearby: List[MountainRecord] = field(default_factory=list)


@dataclass
class UsageReport:
    hours: int
    commands: Dict[str, Dict[str, Any]]
    provider_failures: Dict[str, int]


class MountainService:
    """Entry point used by the Discord adapter.

    Every collaborator can be injected; missing ones are built from
    ``settings``.
    """

    def __init__(
        self,
        db_path: Path,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MountainStore] = None,
        primary=None,
        crowd_map=None,
        encyclopedia=None,
        trivia=None,
        weather=None,
        geocoder=None,
        sessions: Optional[QuizSessionManager] = None,
        telemetry=None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self.store = store or MountainStore(db_path)
        self.telemetry = telemetry
        self.primary = primary or MountixClient(
            s.mountix_base,
            api_key=s.mountix_api_key,
            timeout=s.mountix_timeout,
            user_agent=s.user_agent,
        )
        self.crowd_map = crowd_map or OverpassClient(
            s.overpass_url,
            cache=TTLCache(s.overpass_cache_seconds),
            timeout=s.overpass_timeout,
            user_agent=s.user_agent,
        )
        self.encyclopedia = encyclopedia or WikipediaClient(
            s.wikipedia_base,
            image_cache=TTLCache(s.wikipedia_cache_seconds),
            timeout=s.wikipedia_timeout,
            user_agent=s.user_agent,
        )
        self.weather = weather or OpenMeteoClient(s.open_meteo_url, user_agent=s.user_agent)
        self.geocoder = geocoder or NominatimGeocoder(s.nominatim_url, user_agent=s.user_agent)
        self.trivia = trivia if trivia is not None else TriviaClient(telemetry=telemetry)
        self.aggregator = MountainAggregator(
            primary=self.primary,
            crowd_map=self.crowd_map,
            encyclopedia=self.encyclopedia,
            store=self.store,
            telemetry=telemetry,
            default_limit=s.search_default_limit,
        )
        self.quiz_builder = QuizBuilder(self.aggregator, self.store, self.trivia, settings=s, rng=rng)
        self.sessions = sessions or QuizSessionManager(score_store=self.store)

    # Search ------------------------------------------------------------
    @property
    def last_search_failed(self) -> bool:
        return self.aggregator.last_search_failed

    async def search(self, name: Optional[str] = None, identifier: Optional[str] = None, limit: Optional[int] = None) -> List[MountainRecord]:
        limit = min(limit or self.settings.search_default_limit, self.settings.search_max_limit)
        results = await self.aggregator.search(SearchQuery(name=name, id=identifier, limit=limit))
        return results[:limit]

    async def info(self, identifier: str) -> Optional[MountainDetails]:
        found = await self.aggregator.lookup(identifier)
        if found is None:
            return None
        record = found.record
        details = MountainDetails(record=record, strategy=found.strategy, added_by=found.added_by)
        details.image_url = await self.aggregator.find_image(record)
        details.page_url = self._page_url(record)
        if record.source_label == SOURCE_MOUNTIX:
            details.nearby = [m for m in await self.aggregator.nearby(record.id) if m.id != record.id]
        return details

    def _page_url(self, record: MountainRecord) -> Optional[str]:
        if record.source_label == SOURCE_MOUNTIX and hasattr(self.primary, "page_url"):
            return self.primary.page_url(record.id)
        if record.source_label == SOURCE_OSM:
            return OverpassClient.web_url(record)
        if record.source_label == SOURCE_WIKIPEDIA and hasattr(self.encyclopedia, "page_url"):
            return self.encyclopedia.page_url(record.name)
        return None

    # Community submissions ---------------------------------------------
    async def submit_mountain(
        self,
        *,
        name: str,
        added_by: str,
        elevation: Optional[str] = None,
        location: Optional[str] = None,
        description: Optional[str] = None,
    ) -> UserMountain:
        raw_name = unicodedata.normalize("NFKC", name or "").strip()
        if not raw_name:
            raise SubmissionError("名前が必要です。")
        if not has_kanji_and_both_kana(raw_name):
            raise SubmissionError(
                "山名は漢字・カタカナ・ひらがなのすべてを含めて入力してください（例: 富士ふじフジ）。"
            )

        clean_elev = None
        if elevation and elevation.strip():
            if to_number(elevation) is None:
                raise SubmissionError("標高は数値で入力してください。")
            clean_elev = clean_elevation(elevation)
            if clean_elev is None:
                raise SubmissionError("標高が範囲外です。")

        stored_location = await self._resolve_location(location)
        base, reading = parse_name_and_reading(raw_name)
        submission = self.store.add_user_mountain(
            name=base or raw_name,
            name_reading=reading,
            added_by=str(added_by),
            elevation=clean_elev,
            location=stored_location,
            description=(description or "").strip() or None,
        )
        return submission

    async def _resolve_location(self, location: Optional[str]) -> Optional[str]:
        text = (location or "").strip()
        if not text:
            return None
        match = _LAT_LON.match(text)
        coords = clean_coordinates(match.group(1), match.group(2)) if match else None
        if coords is None and not match:
            try:
                coords = await self.geocoder.geocode(text)
            except ProviderUnavailable as exc:
                logger.warning("Geocoding %r failed: %s", text, exc)
        if coords is None:
            return text
        return f"{coords[0]},{coords[1]}"

    def pending_submissions(self, limit: int = 10) -> List[UserMountain]:
        return self.store.list_user_mountains(approved=False, limit=limit)

    def approve(self, ids: Iterable[int]) -> int:
        count = self.store.approve_user_mountains(ids)
        logger.info("Approved %d community mountains", count)
        return count

    def reject(self, ids: Iterable[int]) -> int:
        count = self.store.reject_user_mountains(ids)
        logger.info("Rejected %d community mountains", count)
        return count

    # Quiz --------------------------------------------------------------
    async def prepare_quiz(self) -> List[QuizQuestion]:
        return await self.quiz_builder.build_quiz()

    async def start_quiz(
        self,
        owner_id: str,
        display_name: Optional[str] = None,
        questions: Optional[Sequence[QuizQuestion]] = None,
    ) -> Tuple[str, QuizQuestion]:
        """Start a session on ``questions``, the latest saved set, or a new one."""

        self.sessions.expire_idle(self.settings.session_idle_seconds)
        if questions is None:
            questions = self.quiz_builder.load_latest_quiz() or await self.prepare_quiz()
        key = make_session_key(owner_id, int(time.time() * 1000))
        self.sessions.start(key, questions, str(owner_id), display_name)
        self.sessions.end_sessions_for(str(owner_id), keep=key)
        return key, self.sessions.present_question(key)

    def present_question(self, session_key: str) -> QuizQuestion:
        return self.sessions.present_question(session_key)

    def answer(self, session_key: str, choice_index: int, user_id: Optional[str] = None) -> AnswerOutcome:
        outcome = self.sessions.answer(session_key, choice_index, user_id)
        if outcome.result is not None and self.telemetry is not None:
            result = outcome.result
            self.telemetry.track_quiz_completion(
                result.owner_id, result.score, result.correct_count, result.total_time_ms, result.stored
            )
        return outcome

    def quit_quiz(self, session_key: str) -> QuizResult:
        return self.sessions.quit(session_key)

    def ranking(self, limit: int = 10) -> List[ScoreRecord]:
        return self.store.top_scores(limit)

    # Weather -----------------------------------------------------------
    async def forecast(self, place: str, days: int = 3) -> Optional[Tuple[str, PointWeather]]:
        """Forecast for a known mountain, else for a geocoded place name."""

        label = (place or "").strip()
        if not label:
            return None
        coords = None
        found = await self.aggregator.lookup(label)
        if found is not None and found.record.coordinates:
            label = found.record.name
            coords = found.record.coordinates
        if coords is None:
            coords = await self.geocoder.geocode(label)
        if coords is None:
            return None
        return label, await self.weather.forecast(coords[0], coords[1], days)

    # Bug reports and usage ---------------------------------------------
    def report_bug(self, *, user_id: str, title: str, details: str, steps: Optional[str] = None) -> BugReport:
        title = (title or "").strip()
        details = (details or "").strip()
        if not title or not details:
            raise SubmissionError("タイトルと詳細な説明は必須です。")
        return self.store.add_bug_report(
            user_id=str(user_id),
            title=title,
            details=details,
            steps=(steps or "").strip() or None,
        )

    def recent_bug_reports(self, limit: int = 5) -> List[BugReport]:
        return self.store.list_bug_reports(limit)

    def usage_report(self, hours: Optional[int] = None) -> Optional[UsageReport]:
        """Command usage and provider failures over the last ``hours``."""

        if self.telemetry is None:
            return None
        hours = hours or self.settings.telemetry_report_hours
        return UsageReport(
            hours=hours,
            commands=self.telemetry.get_command_stats(time.time() - hours * 3600),
            provider_failures=self.telemetry.get_provider_failures(hours),
        )

    def prune_telemetry(self) -> int:
        if self.telemetry is None:
            return 0
        return self.telemetry.cleanup_old_data(self.settings.telemetry_retention_days)

    def close(self) -> None:
        if hasattr(self.trivia, "close"):
            self.trivia.close()
        if self.telemetry is not None:
            self.telemetry.flush()


__all__ = ["MountainDetails", "MountainService", "SubmissionError", "UsageReport"]
