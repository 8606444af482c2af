"""Tests for provider payload parsing and HTTP error mapping."""
import asyncio
from datetime import date

import aiohttp
import pytest

from mountain_bot.cache import TTLCache
from mountain_bot.models import ValidationFailure
from mountain_bot.providers import (
    MountixClient,
    NominatimGeocoder,
    OpenMeteoClient,
    OverpassClient,
    ProviderUnavailable,
    WikipediaClient,
    static_map_url,
)
from mountain_bot.providers.mountix import parse_many, parse_mountain, strip_prefix
from mountain_bot.providers.overpass import build_query, escape_name, parse_element
from mountain_bot.providers.weather import describe_weather, parse_forecast
from mountain_bot.providers.wikipedia import ensure_https, title_candidates


class FakeResponse:
    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientResponseError(None, (), status=self.status)

    async def json(self, content_type=None):
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


MOUNTIX_FUJI = {
    "id": 123,
    "name": "富士山",
    "nameKana": "ふじさん",
    "elevation": 3776,
    "location": {"latitude": 35.360556, "longitude": 138.727778, "gsiUrl": "https://maps.gsi.go.jp/#15/35.36/138.72"},
    "prefectures": ["山梨県", "静岡県"],
    "tags": [{"id": 1, "name": "百名山"}],
}


# Mountix -------------------------------------------------------------------

def test_parse_mountix_record():
    record = parse_mountain(MOUNTIX_FUJI)
    assert record.id == "mountix-123"
    assert record.name_reading == "ふじさん"
    assert record.elevation == 3776
    assert record.coordinates == (35.360556, 138.727778)
    assert record.regions == ("山梨県", "静岡県")
    assert record.tags == ("百名山",)
    assert record.gsi_url.startswith("https://maps.gsi.go.jp")


def test_parse_mountix_geojson_shape():
    record = parse_mountain(
        {"properties": {"id": 5, "name": "北岳", "elevation": 3193}, "geometry": {"coordinates": [138.2389, 35.6742]}}
    )
    assert record.id == "mountix-5"
    assert record.coordinates == (35.6742, 138.2389)


def test_parse_many_drops_invalid_entries():
    records = parse_many({"mountains": [MOUNTIX_FUJI, {"name": "no id"}, "junk"]})
    assert [r.id for r in records] == ["mountix-123"]
    assert parse_many(None) == []
    with pytest.raises(ValidationFailure):
        parse_mountain({"id": 1})


def test_strip_prefix():
    assert strip_prefix("mountix-12") == "12"
    assert strip_prefix("12") == "12"


@pytest.mark.asyncio
async def test_mountix_search_forwards_allowed_params(monkeypatch):
    client = MountixClient("https://mountix.test/api/v1/", api_key="k")
    seen = {}

    async def fake_get_json(url, **kwargs):
        seen["url"] = url
        seen.update(kwargs)
        return [MOUNTIX_FUJI]

    monkeypatch.setattr(client, "_get_json", fake_get_json)
    records = await client.search({"name": "富士", "limit": 5, "bogus": 1, "tag": None})
    assert [r.name for r in records] == ["富士山"]
    assert seen["url"] == "https://mountix.test/api/v1/mountains"
    assert seen["params"] == {"name": "富士", "limit": 5}
    assert seen["headers"] == {"Authorization": "Bearer k"}


@pytest.mark.asyncio
async def test_mountix_404_is_not_found():
    client = MountixClient("https://mountix.test", session=FakeSession(FakeResponse(404)))
    assert await client.get_by_id("mountix-999") is None


@pytest.mark.asyncio
async def test_http_errors_become_provider_unavailable():
    client = MountixClient("https://mountix.test", session=FakeSession(FakeResponse(503)))
    with pytest.raises(ProviderUnavailable) as excinfo:
        await client.get_by_id("1")
    assert excinfo.value.provider == "mountix"
    assert excinfo.value.reason == "HTTP 503"


@pytest.mark.asyncio
async def test_timeouts_become_provider_unavailable():
    client = MountixClient("https://mountix.test", session=FakeSession(error=asyncio.TimeoutError()))
    with pytest.raises(ProviderUnavailable, match="timed out"):
        await client.search({"name": "x"})


# Overpass ------------------------------------------------------------------

def test_overpass_query_escapes_and_caps_limit():
    assert escape_name("a.b(c)") == r"a\.b\(c\)"
    query = build_query("槍", 500)
    assert query.startswith("[out:json]")
    assert 'node["natural"="peak"]["name"~"槍",i]' in query
    assert 'node["natural"="volcano"]' in query
    assert query.endswith("out body 100;")


def test_parse_overpass_element_splits_reading():
    record = parse_element(
        {"type": "node", "id": 42, "lat": 36.3418, "lon": 137.6475, "tags": {"name": "槍ヶ岳やりがたけ", "ele": "3180"}}
    )
    assert record.id == "osm-node-42"
    assert record.name == "槍ヶ岳"
    assert record.name_reading == "やりがたけ"
    assert record.elevation == 3180
    assert record.source_label == "OSM"


def test_parse_overpass_element_prefers_reading_tag():
    record = parse_element({"type": "way", "id": 7, "center": {"lat": 35.0, "lon": 138.0}, "tags": {"name": "北岳", "name:ja-Hira": "きただけ"}})
    assert record.name == "北岳"
    assert record.name_reading == "きただけ"
    assert record.coordinates == (35.0, 138.0)
    with pytest.raises(ValidationFailure):
        parse_element({"type": "node", "id": 1, "tags": {}})


@pytest.mark.asyncio
async def test_overpass_search_filters_and_caches(monkeypatch):
    client = OverpassClient("https://overpass.test", cache=TTLCache(60))
    calls = []

    async def fake_post_json(url, **kwargs):
        calls.append(kwargs)
        return {
            "elements": [
                {"type": "node", "id": 1, "lat": 35.36, "lon": 138.73, "tags": {"name": "富士山", "name:ja-Hira": "ふじさん"}},
                {"type": "node", "id": 2, "lat": 35.0, "lon": 138.0, "tags": {"name": "愛鷹山"}},
                {"type": "node", "id": 3, "tags": {}},
            ]
        }

    monkeypatch.setattr(client, "_post_json", fake_post_json)
    first = await client.search_by_name("ふじ", 10)
    second = await client.search_by_name("ふじ", 10)
    assert [r.id for r in first] == ["osm-node-1"]
    assert second == first
    assert len(calls) == 1
    assert calls[0]["headers"] == {"Content-Type": "text/plain"}


def test_overpass_web_url():
    record = parse_element({"type": "node", "id": 9, "tags": {"name": "某山"}})
    assert OverpassClient.web_url(record) == "https://www.openstreetmap.org/node/9"
    assert "ODbL" in OverpassClient.license_text()


# Wikipedia -----------------------------------------------------------------

def test_wikipedia_helpers():
    assert ensure_https("//upload.wikimedia.org/a.jpg") == "https://upload.wikimedia.org/a.jpg"
    assert ensure_https("http://x/y") == "https://x/y"
    assert title_candidates("北岳", "きただけ")[:2] == ["北岳", "きただけ"]


def test_parse_summary_skips_disambiguation():
    client = WikipediaClient()
    assert client.parse_summary({"title": "富士", "type": "disambiguation"}) is None
    summary = client.parse_summary(
        {"title": "富士山", "extract": "日本最高峰", "thumbnail": {"source": "//img/fuji.jpg"}}
    )
    assert summary.image_url == "https://img/fuji.jpg"
    assert summary.page_url == "https://ja.wikipedia.org/wiki/%E5%AF%8C%E5%A3%AB%E5%B1%B1"


@pytest.mark.asyncio
async def test_find_image_caches_misses_but_not_outages(monkeypatch):
    client = WikipediaClient(image_cache=TTLCache(60))
    titles = []

    async def no_image(title):
        titles.append(title)
        return None

    monkeypatch.setattr(client, "_page_image", no_image)
    assert await client.find_image("無名山") is None
    lookups = len(titles)
    assert await client.find_image("無名山") is None
    assert len(titles) == lookups

    async def outage(title):
        raise ProviderUnavailable("wikipedia", "timed out")

    monkeypatch.setattr(client, "_page_image", outage)
    assert await client.find_image("別の山") is None

    async def found(title):
        return "https://img/other.jpg"

    monkeypatch.setattr(client, "_page_image", found)
    assert await client.find_image("別の山") == "https://img/other.jpg"


# Weather and maps ----------------------------------------------------------

def test_parse_forecast_rows():
    weather = parse_forecast(
        {
            "timezone": "Asia/Tokyo",
            "daily": {
                "time": ["2024-08-01", "2024-08-02"],
                "weathercode": [0, 61],
                "temperature_2m_max": [12.5, 10.0],
                "temperature_2m_min": [3.0, None],
                "precipitation_sum": [0.0, 8.2],
            },
        },
        35.36,
        138.73,
    )
    assert weather.timezone == "Asia/Tokyo"
    assert [d.day for d in weather.daily] == [date(2024, 8, 1), date(2024, 8, 2)]
    assert weather.daily[1].weather_code == 61
    assert weather.daily[1].temperature_min is None
    assert describe_weather(61) == "弱い雨"
    assert describe_weather(None) == "不明"


@pytest.mark.asyncio
async def test_forecast_clamps_days(monkeypatch):
    client = OpenMeteoClient()
    seen = {}

    async def fake_get_json(url, **kwargs):
        seen.update(kwargs["params"])
        return {"daily": {"time": []}}

    monkeypatch.setattr(client, "_get_json", fake_get_json)
    weather = await client.forecast(35.0, 138.0, days=30)
    assert seen["forecast_days"] == 7
    assert weather.daily == ()


@pytest.mark.asyncio
async def test_geocoder_rejects_results_outside_japan(monkeypatch):
    geocoder = NominatimGeocoder()
    payloads = [[{"lat": "35.6", "lon": "138.5"}], [{"lat": "48.8", "lon": "2.3"}], []]

    async def fake_get_json(url, **kwargs):
        return payloads.pop(0)

    monkeypatch.setattr(geocoder, "_get_json", fake_get_json)
    assert await geocoder.geocode("山梨県") == (35.6, 138.5)
    assert await geocoder.geocode("Paris") is None
    assert await geocoder.geocode("どこか") is None
    assert await geocoder.geocode("  ") is None


def test_static_map_url():
    url = static_map_url((35.36, 138.73), 12, "700x400", markers=[(35.36, 138.73)], path=[(35.0, 138.0), (35.1, 138.1)])
    assert url.startswith("https://staticmap.openstreetmap.de/staticmap.php?center=35.36,138.73&zoom=12&size=700x400")
    assert "&markers=35.36,138.73,red-pushpin" in url
    assert url.endswith("&path=weight:3|color:0xff0000|35.0,138.0|35.1,138.1")
