"""Core data models for the mountain bot."""
from __future__ import annotations

import math
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

ELEVATION_RANGE = (-500, 10000)
LATITUDE_RANGE = (20.0, 46.0)
LONGITUDE_RANGE = (120.0, 154.0)

SOURCE_MOUNTIX = "Mountix"
SOURCE_OSM = "OSM"
SOURCE_LOCAL = "Local"
SOURCE_WIKIPEDIA = "Wikipedia"


class ValidationFailure(ValueError):
    """Raised when a unit of provider or user data is malformed."""


def to_number(value: Any) -> Optional[float]:
    """Coerce loosely typed provider values into a finite float."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def clean_elevation(value: Any) -> Optional[int]:
    """Floor to whole metres; out-of-range values are dropped, not clamped."""

    number = to_number(value)
    if number is None:
        return None
    elevation = math.floor(number)
    low, high = ELEVATION_RANGE
    if elevation < low or elevation > high:
        return None
    return elevation


def clean_coordinates(lat: Any, lon: Any) -> Optional[Tuple[float, float]]:
    """Round to six decimals and keep only pairs inside the Japan bounding box."""

    lat_value = to_number(lat)
    lon_value = to_number(lon)
    if lat_value is None or lon_value is None:
        return None
    rlat = round(lat_value, 6)
    rlon = round(lon_value, 6)
    if not (LATITUDE_RANGE[0] <= rlat <= LATITUDE_RANGE[1]):
        return None
    if not (LONGITUDE_RANGE[0] <= rlon <= LONGITUDE_RANGE[1]):
        return None
    return (rlat, rlon)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class MountainRecord:
    """A named peak, normalised once at construction."""

    id: str
    name: str
    source_label: str
    name_reading: Optional[str] = None
    elevation: Optional[int] = None
    coordinates: Optional[Tuple[float, float]] = None
    description: Optional[str] = None
    photo_url: Optional[str] = None
    regions: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    gsi_url: Optional[str] = None

    @classmethod
    def create(
        cls,
        *,
        id: str,
        name: Any,
        source_label: str,
        name_reading: Any = None,
        elevation: Any = None,
        latitude: Any = None,
        longitude: Any = None,
        description: Any = None,
        photo_url: Any = None,
        regions: Iterable[Any] = (),
        tags: Iterable[Any] = (),
        gsi_url: Any = None,
    ) -> "MountainRecord":
        """Validate raw fields and build a record.

        Raises :class:`ValidationFailure` when the name is missing; invalid
        elevation or coordinates are silently discarded.
        """

        display = unicodedata.normalize("NFKC", str(name)).strip() if name is not None else ""
        if not display:
            raise ValidationFailure(f"mountain {id!r} has no name")
        reading = _optional_text(name_reading)
        if reading is not None:
            reading = unicodedata.normalize("NFKC", reading)
        return cls(
            id=str(id),
            name=display,
            source_label=source_label,
            name_reading=reading,
            elevation=clean_elevation(elevation),
            coordinates=clean_coordinates(latitude, longitude),
            description=_optional_text(description),
            photo_url=_optional_text(photo_url),
            regions=tuple(str(r).strip() for r in regions if r is not None and str(r).strip()),
            tags=tuple(str(t).strip() for t in tags if t is not None and str(t).strip()),
            gsi_url=_optional_text(gsi_url),
        )

    @property
    def primary_region(self) -> Optional[str]:
        return self.regions[0] if self.regions else None


@dataclass
class SearchQuery:
    name: Optional[str] = None
    id: Optional[str] = None
    limit: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not (self.name and self.name.strip()) and not (self.id and self.id.strip())


class QuizCategory(str, Enum):
    ELEVATION = "elevation-comparison"
    NAME = "name-identification"
    REGION = "region-identification"
    DESCRIPTION = "description-identification"
    PHOTO = "photo-identification"
    TRIVIA = "general-trivia"


CHOICE_COUNT = 4


@dataclass(frozen=True)
class QuizQuestion:
    id: str
    category: QuizCategory
    prompt: str
    choices: Tuple[str, ...]
    correct_index: int
    answer_text: Optional[str] = None
    mountain_id: Optional[str] = None

    def __post_init__(self) -> None:
        if len(self.choices) != CHOICE_COUNT:
            raise ValidationFailure(f"question {self.id} needs {CHOICE_COUNT} choices")
        if len(set(self.choices)) != CHOICE_COUNT:
            raise ValidationFailure(f"question {self.id} has duplicate choices")
        if not 0 <= self.correct_index < CHOICE_COUNT:
            raise ValidationFailure(f"question {self.id} has invalid correct index")

    @property
    def correct_choice(self) -> str:
        return self.choices[self.correct_index]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "prompt": self.prompt,
            "choices": list(self.choices),
            "correct_index": self.correct_index,
            "answer_text": self.answer_text,
            "mountain_id": self.mountain_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuizQuestion":
        return cls(
            id=str(data["id"]),
            category=QuizCategory(data["category"]),
            prompt=str(data["prompt"]),
            choices=tuple(str(c) for c in data["choices"]),
            correct_index=int(data["correct_index"]),
            answer_text=data.get("answer_text"),
            mountain_id=data.get("mountain_id"),
        )


@dataclass(frozen=True)
class TriviaItem:
    """A generated general-knowledge question."""

    question: str
    options: Tuple[str, ...]
    answer: str

    @classmethod
    def from_payload(cls, payload: Any) -> "TriviaItem":
        if not isinstance(payload, dict):
            raise ValidationFailure("trivia payload must be an object")
        question = _optional_text(payload.get("question"))
        options_raw = payload.get("options")
        answer = payload.get("answer")
        if question is None or not isinstance(options_raw, list) or answer is None:
            raise ValidationFailure("trivia payload is missing fields")
        options = tuple(str(option).strip() for option in options_raw)
        answer_text = str(answer).strip()
        if len(options) != CHOICE_COUNT or len(set(options)) != CHOICE_COUNT or "" in options:
            raise ValidationFailure(f"trivia {question!r} needs {CHOICE_COUNT} distinct options")
        if answer_text not in options:
            raise ValidationFailure(f"trivia {question!r} answer is not among its options")
        return cls(question=question, options=options, answer=answer_text)


@dataclass
class QuizSession:
    """In-memory play-through state, owned by the session manager."""

    session_key: str
    questions: List[QuizQuestion]
    owner_id: str
    display_name: Optional[str] = None
    current_index: int = 0
    response_times: List[int] = field(default_factory=list)
    correct_count: int = 0
    question_started_at: Optional[float] = None
    last_activity: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.current_index >= len(self.questions)

    @property
    def current_question(self) -> Optional[QuizQuestion]:
        if self.is_complete:
            return None
        return self.questions[self.current_index]

    @property
    def total_time_ms(self) -> int:
        return sum(self.response_times)


@dataclass(frozen=True)
class ScoreRecord:
    user_id: Optional[str]
    display_name: str
    score: int
    total_time_ms: int


@dataclass
class UserMountain:
    """A community-submitted mountain awaiting or past moderation."""

    id: int
    name: str
    added_by: str
    approved: bool = False
    name_reading: Optional[str] = None
    elevation: Optional[int] = None
    location: Optional[str] = None
    description: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def record_id(self) -> str:
        return f"user-{self.id}"

    def coordinates(self) -> Optional[Tuple[float, float]]:
        if not self.location or "," not in self.location:
            return None
        lat, _, lon = self.location.partition(",")
        return clean_coordinates(lat, lon)

    def to_record(self) -> MountainRecord:
        coords = self.coordinates()
        return MountainRecord.create(
            id=self.record_id,
            name=self.name,
            source_label=SOURCE_LOCAL,
            name_reading=self.name_reading,
            elevation=self.elevation,
            latitude=coords[0] if coords else None,
            longitude=coords[1] if coords else None,
            description=self.description,
            photo_url=self.photo_url,
        )


@dataclass(frozen=True)
class BugReport:
    id: int
    user_id: str
    title: str
    details: str
    steps: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class WikiSummary:
    title: str
    extract: Optional[str] = None
    image_url: Optional[str] = None
    page_url: Optional[str] = None


@dataclass(frozen=True)
class DailyForecast:
    day: date
    weather_code: Optional[int]
    temperature_max: Optional[float]
    temperature_min: Optional[float]
    precipitation_sum: Optional[float]


@dataclass(frozen=True)
class PointWeather:
    latitude: float
    longitude: float
    timezone: Optional[str]
    daily: Sequence[DailyForecast] = ()


__all__ = [
    "BugReport",
    "CHOICE_COUNT",
    "DailyForecast",
    "MountainRecord",
    "PointWeather",
    "QuizCategory",
    "QuizQuestion",
    "QuizSession",
    "ScoreRecord",
    "SearchQuery",
    "TriviaItem",
    "UserMountain",
    "ValidationFailure",
    "WikiSummary",
    "clean_coordinates",
    "clean_elevation",
    "to_number",
]
