"""Open-Meteo forecasts, Nominatim geocoding and static map links."""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import aiohttp

from ..models import DailyForecast, PointWeather, clean_coordinates, to_number
from .base import HttpProvider

logger = logging.getLogger(__name__)

STATIC_MAP_BASE = "https://staticmap.openstreetmap.de/staticmap.php"

# WMO weather interpretation codes used by Open-Meteo.
WEATHER_CODES = {
    0: "快晴",
    1: "晴れ",
    2: "一部曇り",
    3: "曇り",
    45: "霧",
    48: "霧氷",
    51: "弱い霧雨",
    53: "霧雨",
    55: "強い霧雨",
    61: "弱い雨",
    63: "雨",
    65: "強い雨",
    71: "弱い雪",
    73: "雪",
    75: "強い雪",
    80: "にわか雨",
    81: "強いにわか雨",
    82: "激しいにわか雨",
    95: "雷雨",
    96: "雹を伴う雷雨",
    99: "激しい雹を伴う雷雨",
}


def describe_weather(code: Optional[int]) -> str:
    if code is None:
        return "不明"
    return WEATHER_CODES.get(int(code), f"コード {code}")


def _column(daily: dict, key: str, index: int) -> Any:
    values = daily.get(key)
    if not isinstance(values, list) or index >= len(values):
        return None
    return values[index]


def parse_forecast(payload: Any, latitude: float, longitude: float) -> PointWeather:
    data = payload if isinstance(payload, dict) else {}
    daily = data.get("daily") if isinstance(data.get("daily"), dict) else {}
    rows: List[DailyForecast] = []
    for index, raw_day in enumerate(daily.get("time") or []):
        try:
            day = date.fromisoformat(str(raw_day))
        except ValueError:
            continue
        code = to_number(_column(daily, "weathercode", index))
        if code is None:
            code = to_number(_column(daily, "weather_code", index))
        rows.append(
            DailyForecast(
                day=day,
                weather_code=int(code) if code is not None else None,
                temperature_max=to_number(_column(daily, "temperature_2m_max", index)),
                temperature_min=to_number(_column(daily, "temperature_2m_min", index)),
                precipitation_sum=to_number(_column(daily, "precipitation_sum", index)),
            )
        )
    return PointWeather(
        latitude=latitude,
        longitude=longitude,
        timezone=data.get("timezone"),
        daily=tuple(rows),
    )


class OpenMeteoClient(HttpProvider):
    name = "open-meteo"

    def __init__(
        self,
        url: str = "https://api.open-meteo.com/v1/forecast",
        *,
        timeout: float = 8.0,
        user_agent: str = "mountain-bot/1.0",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(timeout=timeout, user_agent=user_agent, session=session)
        self.url = url

    async def forecast(self, latitude: float, longitude: float, days: int = 3) -> PointWeather:
        days = max(1, min(int(days), 7))
        payload = await self._get_json(
            self.url,
            params={
                "latitude": latitude,
                "longitude": longitude,
                "timezone": "auto",
                "hourly": "temperature_2m,precipitation,windspeed_10m,winddirection_10m",
                "daily": "weathercode,temperature_2m_max,temperature_2m_min,precipitation_sum",
                "forecast_days": days,
            },
        )
        return parse_forecast(payload, latitude, longitude)


class NominatimGeocoder(HttpProvider):
    """Resolves free-text locations; results outside Japan are rejected."""

    name = "nominatim"

    def __init__(
        self,
        url: str = "https://nominatim.openstreetmap.org/search",
        *,
        timeout: float = 5.0,
        user_agent: str = "mountain-bot/1.0",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(timeout=timeout, user_agent=user_agent, session=session)
        self.url = url

    async def geocode(self, text: str) -> Optional[Tuple[float, float]]:
        text = (text or "").strip()
        if not text:
            return None
        payload = await self._get_json(
            self.url,
            params={"q": text, "format": "json", "limit": 1, "accept-language": "ja"},
        )
        if not isinstance(payload, list) or not payload:
            return None
        top = payload[0] if isinstance(payload[0], dict) else {}
        return clean_coordinates(top.get("lat"), top.get("lon"))


def static_map_url(
    center: Tuple[float, float],
    zoom: int = 12,
    size: str = "600x400",
    markers: Iterable[Tuple[float, float]] = (),
    path: Optional[Sequence[Tuple[float, float]]] = None,
    path_color: str = "#ff0000",
    path_weight: int = 3,
) -> str:
    lat, lon = center
    url = f"{STATIC_MAP_BASE}?{urlencode({'center': f'{lat},{lon}', 'zoom': zoom, 'size': size}, safe=',')}"
    marker_parts = [f"{m_lat},{m_lon},red-pushpin" for m_lat, m_lon in markers]
    if marker_parts:
        url += "&markers=" + "|".join(marker_parts)
    if path:
        points = "|".join(f"{p_lat},{p_lon}" for p_lat, p_lon in path)
        url += f"&path=weight:{path_weight}|color:0x{path_color.lstrip('#')}|{points}"
    return url


__all__ = [
    "NominatimGeocoder",
    "OpenMeteoClient",
    "describe_weather",
    "parse_forecast",
    "static_map_url",
]
