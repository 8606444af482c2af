"""Configuration loading utilities for the mountain bot."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    search_default_limit: int
    search_max_limit: int
    mountix_base: str
    mountix_api_key: str
    mountix_timeout: float
    overpass_url: str
    overpass_timeout: float
    overpass_cache_seconds: float
    wikipedia_base: str
    wikipedia_timeout: float
    wikipedia_cache_seconds: float
    open_meteo_url: str
    nominatim_url: str
    user_agent: str
    quiz_total_questions: int
    quiz_mountain_questions: int
    quiz_trivia_questions: int
    quiz_pool_size: int
    quiz_top_n: int
    quiz_max_attempts: int
    quiz_elevation_spread: int
    quiz_categories: tuple[str, ...]
    quiz_keep_sets: int
    session_idle_seconds: float
    telemetry_retention_days: int
    telemetry_report_hours: int

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        search_cfg = data.get("search", {})
        providers = data.get("providers", {})
        quiz_cfg = data.get("quiz", {})
        telemetry_cfg = data.get("telemetry", {})
        # Environment wins over the bundled YAML for endpoints and secrets.
        mountix_base = os.getenv("MOUNTIX_API_BASE") or providers.get(
            "mountix_base", "https://mountix.codemountains.org/api/v1"
        )
        return Settings(
            search_default_limit=int(search_cfg.get("default_limit", 10)),
            search_max_limit=int(search_cfg.get("max_limit", 50)),
            mountix_base=str(mountix_base).rstrip("/"),
            mountix_api_key=os.getenv("MOUNTIX_API_KEY", ""),
            mountix_timeout=float(providers.get("mountix_timeout", 8)),
            overpass_url=str(providers.get("overpass_url", "https://overpass-api.de/api/interpreter")),
            overpass_timeout=float(providers.get("overpass_timeout", 65)),
            overpass_cache_seconds=float(providers.get("overpass_cache_minutes", 5)) * 60.0,
            wikipedia_base=str(providers.get("wikipedia_base", "https://ja.wikipedia.org")).rstrip("/"),
            wikipedia_timeout=float(providers.get("wikipedia_timeout", 5)),
            wikipedia_cache_seconds=float(
                os.getenv("WIKI_CACHE_TTL_HOURS") or providers.get("wikipedia_cache_hours", 720)
            )
            * 3600.0,
            open_meteo_url=str(providers.get("open_meteo_url", "https://api.open-meteo.com/v1/forecast")),
            nominatim_url=str(providers.get("nominatim_url", "https://nominatim.openstreetmap.org/search")),
            user_agent=str(providers.get("user_agent", "mountain-bot/1.0")),
            quiz_total_questions=int(quiz_cfg.get("total_questions", 10)),
            quiz_mountain_questions=int(quiz_cfg.get("mountain_questions", 3)),
            quiz_trivia_questions=int(quiz_cfg.get("trivia_questions", 7)),
            quiz_pool_size=int(quiz_cfg.get("pool_size", 200)),
            quiz_top_n=int(quiz_cfg.get("top_n", 50)),
            quiz_max_attempts=int(quiz_cfg.get("max_attempts", 100)),
            quiz_elevation_spread=int(quiz_cfg.get("elevation_spread", 100)),
            quiz_categories=tuple(quiz_cfg.get("categories", ["elevation", "name", "region"])),
            quiz_keep_sets=int(quiz_cfg.get("keep_quiz_sets", 20)),
            session_idle_seconds=float(quiz_cfg.get("session_idle_seconds", 900)),
            telemetry_retention_days=int(telemetry_cfg.get("retention_days", 30)),
            telemetry_report_hours=int(telemetry_cfg.get("report_hours", 24)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings"]
