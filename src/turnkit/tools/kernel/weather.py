"""Weather tools backed by Open-Meteo geocoding and forecast APIs."""

from __future__ import annotations

import re
from difflib import SequenceMatcher
from typing import Any, Literal

import httpx

from src.turnkit.core.config_loader import get_weather_config

ConfidenceLevel = Literal["high", "medium", "low"]
DEFAULT_OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"
DEFAULT_GEOCODE_URL = "https://geocoding-api.open-meteo.com/v1/search"
TRANSIENT_STATUSES = {408, 425, 429}

LOCATION_ALIASES = {
    "nyc": "newyork",
    "la": "losangeles",
    "sf": "sanfrancisco",
    "dc": "washington",
    "philly": "philadelphia",
    "nola": "neworleans",
    "vegas": "lasvegas",
    "slc": "saltlakecity",
    "ldn": "london",
    "hk": "hongkong",
    "sg": "singapore",
    "kl": "kualalumpur",
    "cdmx": "mexicocity",
    "rio": "riodejaneiro",
}
QUALIFIER_TOKENS = frozenset(
    {
        "alabama", "alaska", "arizona", "california", "colorado", "florida", "georgia", "illinois",
        "massachusetts", "michigan", "minnesota", "newyork", "newjersey", "northcarolina", "ohio",
        "oregon", "pennsylvania", "texas", "utah", "virginia", "washington", "wisconsin",
        "us", "usa", "uk", "uae", "canada", "australia", "india", "japan", "france", "germany",
        "italy", "spain", "mexico", "brazil", "ireland", "netherlands",
    }
)


def _weather_settings() -> dict[str, Any]:
    weather_config = get_weather_config()
    return {
        "base_url": weather_config.get("base_url", DEFAULT_OPEN_METEO_URL),
        "geocode_url": weather_config.get("geocode_url", DEFAULT_GEOCODE_URL),
        "units": weather_config.get("units", "auto"),
        "forecast_days": max(7, min(10, int(weather_config.get("forecast_days", 8)))),
        "timeout_sec": float(weather_config.get("timeout_sec", 6)),
    }


def normalize_location_token(value: str) -> str:
    token = re.sub(r"[^a-z0-9]", "", (value or "").lower())
    return LOCATION_ALIASES.get(token, token)


def _tokenize(value: str) -> list[str]:
    tokens = [normalize_location_token(part) for part in re.split(r"[^a-z0-9]+", (value or "").lower())]
    return [token for token in tokens if len(token) >= 2]


def format_place_label(place: dict[str, Any]) -> str:
    parts = [
        str(place.get("name") or "").strip(),
        str(place.get("admin1") or "").strip(),
        str(place.get("country_code") or place.get("country") or "").strip(),
    ]
    return ", ".join(part for part in parts if part)


def _similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return SequenceMatcher(None, left, right).ratio()


def assess_location_confidence(requested: str, place: dict[str, Any]) -> tuple[ConfidenceLevel, float]:
    """Score how well a geocoder hit matches what the user typed."""
    requested_token = normalize_location_token(requested.split(",")[0])
    requested_terms = sorted(set(_tokenize(requested)))
    if not requested_token and not requested_terms:
        return "low", 0.0

    fields = [str(place.get(key) or "") for key in ("name", "admin1", "country", "country_code")]
    candidates = {normalize_location_token(value) for value in fields if value}
    for value in fields:
        candidates.update(_tokenize(value))
    candidates.discard("")
    if not candidates:
        return "low", 0.0

    target = requested_token or requested_terms[0]
    best = max(_similarity(target, candidate) for candidate in candidates)

    coverage = 0.0
    if len(requested_terms) >= 2:
        matched = sum(
            1
            for term in requested_terms
            if term in candidates or any(_similarity(term, candidate) >= 0.88 for candidate in candidates)
        )
        coverage = matched / len(requested_terms)
        if coverage >= 0.99:
            return "high", max(best, 0.99)
        if coverage >= 0.66:
            return "medium", max(best, 0.8)

    if best >= 0.9:
        return "high", best
    if best >= 0.72:
        return "medium", best
    if coverage >= 0.5:
        return "medium", best
    return "low", best


def build_location_query_variants(location: str) -> list[str]:
    base = (location or "").strip()
    first_part = base.split(",")[0].strip()
    stripped = re.sub(r"\s+", " ", re.sub(r"[^A-Za-z0-9,\s.-]", " ", base)).strip()
    variants = [base, stripped, first_part]
    alias = LOCATION_ALIASES.get(re.sub(r"[^a-z0-9]", "", first_part.lower()))
    if alias:
        variants.append(alias)
    terms = first_part.split()
    if len(terms) >= 2 and normalize_location_token(terms[-1]) in QUALIFIER_TOKENS:
        variants.append(" ".join(terms[:-1]))

    unique: list[str] = []
    for value in variants:
        if value and value not in unique:
            unique.append(value)
    return unique[:4]


def rank_places(requested: str, places: list[dict[str, Any]]) -> list[dict[str, Any]]:
    ranked: list[dict[str, Any]] = []
    for place in places:
        level, score = assess_location_confidence(requested, place)
        ranked.append({"place": place, "level": level, "score": score})
    level_rank = {"high": 3, "medium": 2, "low": 1}
    ranked.sort(
        key=lambda row: (
            level_rank[row["level"]],
            row["score"],
            float(row["place"].get("population") or 0),
        ),
        reverse=True,
    )
    return ranked


def _dedupe_places(places: list[dict[str, Any]]) -> list[dict[str, Any]]:
    seen: set[tuple[str, ...]] = set()
    out: list[dict[str, Any]] = []
    for place in places:
        key = (
            str(place.get("name") or "").lower(),
            str(place.get("admin1") or "").lower(),
            str(place.get("country_code") or "").lower(),
            str(place.get("latitude")),
            str(place.get("longitude")),
        )
        if key in seen:
            continue
        seen.add(key)
        out.append(place)
    return out


async def _fetch_json(
    client: httpx.AsyncClient, url: str, params: dict[str, Any], timeout_sec: float, attempts: int = 2
) -> dict[str, Any]:
    for attempt in range(1, attempts + 1):
        try:
            response = await client.get(url, params=params, timeout=timeout_sec)
        except httpx.TimeoutException:
            if attempt >= attempts:
                raise
            continue
        if response.status_code in TRANSIENT_STATUSES or response.status_code >= 500:
            if attempt < attempts:
                continue
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Weather API response must be a JSON object.")
        return payload
    raise RuntimeError("weather fetch retry loop exited unexpectedly")


def _unit_params(units: str, country_code: str) -> dict[str, str]:
    imperial = units == "imperial" or (units == "auto" and country_code.upper() == "US")
    if imperial:
        return {"temperature_unit": "fahrenheit", "wind_speed_unit": "mph", "precipitation_unit": "inch"}
    return {"temperature_unit": "celsius", "wind_speed_unit": "kmh", "precipitation_unit": "mm"}


async def get_weather_forecast(location: str, *, client: httpx.AsyncClient | None = None) -> dict[str, Any]:
    """Resolve `location` and return current + daily forecast data.

    `status` is `resolved`, `low_confidence` or `location_not_found`; only a
    transport or API failure yields `ok: False`.
    """
    settings = _weather_settings()
    query = (location or "").strip()
    if not query:
        return {"ok": False, "provider": "open_meteo", "source": "validation", "error": "location is required"}

    owns_client = client is None
    http = client or httpx.AsyncClient()
    try:
        places: list[dict[str, Any]] = []
        for variant in build_location_query_variants(query):
            payload = await _fetch_json(
                http,
                settings["geocode_url"],
                {"name": variant, "count": 8, "language": "en", "format": "json"},
                settings["timeout_sec"],
            )
            results = payload.get("results")
            if isinstance(results, list):
                places.extend(item for item in results if isinstance(item, dict))

        ranked = rank_places(query, _dedupe_places(places))
        suggestions = [format_place_label(row["place"]) for row in ranked[:3]]
        base = {"ok": True, "provider": "open_meteo", "requested": query, "suggestions": suggestions, "error": None}
        if not ranked:
            return {**base, "status": "location_not_found", "source": "open_meteo_geocode"}
        best = ranked[0]
        place = best["place"]
        if best["level"] == "low":
            return {**base, "status": "low_confidence", "source": "open_meteo_geocode", "confidence_score": best["score"]}

        params: dict[str, Any] = {
            "latitude": place.get("latitude"),
            "longitude": place.get("longitude"),
            "timezone": "auto",
            "current": ",".join(
                [
                    "temperature_2m",
                    "apparent_temperature",
                    "relative_humidity_2m",
                    "precipitation",
                    "weather_code",
                    "wind_speed_10m",
                ]
            ),
            "daily": ",".join(
                [
                    "weather_code",
                    "temperature_2m_max",
                    "temperature_2m_min",
                    "precipitation_probability_max",
                    "precipitation_sum",
                    "wind_speed_10m_max",
                ]
            ),
            "forecast_days": settings["forecast_days"],
            **_unit_params(str(settings["units"]), str(place.get("country_code") or "")),
        }
        forecast = await _fetch_json(http, settings["base_url"], params, settings["timeout_sec"])
    except (httpx.HTTPError, ValueError) as exc:
        return {"ok": False, "provider": "open_meteo", "source": "open_meteo_error", "error": str(exc)}
    finally:
        if owns_client:
            await http.aclose()

    return {
        **base,
        "status": "resolved",
        "source": "open_meteo",
        "location_label": format_place_label(place),
        "confidence_level": best["level"],
        "confidence_score": best["score"],
        "forecast": forecast,
    }
