import json

import httpx
import pytest

from src.turnkit.core.config_loader import clear_config_cache
from src.turnkit.tools.kernel.weather import (
    assess_location_confidence,
    build_location_query_variants,
    format_place_label,
    get_weather_forecast,
    normalize_location_token,
)

BOSTON = {
    "name": "Boston",
    "admin1": "Massachusetts",
    "country_code": "US",
    "latitude": 42.36,
    "longitude": -71.06,
    "population": 650000,
}
PARIS = {"name": "Paris", "admin1": "Ile-de-France", "country_code": "FR", "latitude": 48.85, "longitude": 2.35}
FORECAST = {
    "current": {"time": "2026-10-19T09:00", "temperature_2m": 50, "weather_code": 3},
    "daily": {"time": ["2026-10-19"], "weather_code": [3], "temperature_2m_max": [55], "temperature_2m_min": [41]},
}


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch: pytest.MonkeyPatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"weather": {"forecast_days": 7}}), encoding="utf-8")
    monkeypatch.setenv("TURNKIT_CONFIG_PATH", str(config_path))
    clear_config_cache()
    yield config_path
    clear_config_cache()


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_location_helpers():
    assert normalize_location_token("NYC") == "newyork"
    assert normalize_location_token("San Francisco") == "sanfrancisco"
    assert build_location_query_variants("Austin Texas") == ["Austin Texas", "Austin"]
    assert format_place_label(BOSTON) == "Boston, Massachusetts, US"
    assert assess_location_confidence("Boston", BOSTON)[0] == "high"
    assert assess_location_confidence("Zzyzx", PARIS)[0] == "low"
    assert assess_location_confidence("", BOSTON) == ("low", 0.0)


@pytest.mark.asyncio
async def test_forecast_resolves_location_and_requests_imperial_units():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.host == "geocoding-api.open-meteo.com":
            assert request.url.params["name"] == "Boston"
            return httpx.Response(200, json={"results": [BOSTON]})
        assert request.url.host == "api.open-meteo.com"
        return httpx.Response(200, json=FORECAST)

    async with _client(handler) as client:
        result = await get_weather_forecast("Boston", client=client)

    assert result["ok"] is True
    assert result["status"] == "resolved"
    assert result["location_label"] == "Boston, Massachusetts, US"
    assert result["confidence_level"] == "high"
    assert result["forecast"] == FORECAST
    assert result["suggestions"] == ["Boston, Massachusetts, US"]
    forecast_params = seen[-1].url.params
    assert forecast_params["temperature_unit"] == "fahrenheit"
    assert forecast_params["forecast_days"] == "7"
    assert forecast_params["latitude"] == "42.36"


@pytest.mark.asyncio
async def test_forecast_reports_missing_and_low_confidence_locations():
    def empty(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    def paris_only(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "geocoding-api.open-meteo.com"
        return httpx.Response(200, json={"results": [PARIS]})

    async with _client(empty) as client:
        missing = await get_weather_forecast("Atlantis", client=client)
    async with _client(paris_only) as client:
        low = await get_weather_forecast("Zzyzx", client=client)

    assert missing["ok"] is True
    assert missing["status"] == "location_not_found"
    assert missing["suggestions"] == []
    assert low["status"] == "low_confidence"
    assert low["suggestions"] == ["Paris, Ile-de-France, FR"]
    assert "forecast" not in low


@pytest.mark.asyncio
async def test_forecast_http_failure_is_an_error_payload():
    calls: list[str] = []

    def failing(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(503, json={"error": "down"})

    async with _client(failing) as client:
        result = await get_weather_forecast("Boston", client=client)

    assert result["ok"] is False
    assert result["source"] == "open_meteo_error"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_forecast_validates_location_and_honors_config(_isolated_config):
    assert (await get_weather_forecast("  "))["source"] == "validation"

    _isolated_config.write_text(
        json.dumps({"weather": {"geocode_url": "https://geo.example.test/search", "units": "metric"}}),
        encoding="utf-8",
    )
    clear_config_cache()
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "geo.example.test":
            return httpx.Response(200, json={"results": [BOSTON]})
        return httpx.Response(200, json=FORECAST)

    async with _client(handler) as client:
        result = await get_weather_forecast("Boston", client=client)

    assert hosts == ["geo.example.test", "api.open-meteo.com"]
    assert result["status"] == "resolved"
