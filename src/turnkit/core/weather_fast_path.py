"""Deterministic weather replies that skip the LLM when a location can be resolved."""

from __future__ import annotations

import re
from datetime import date, datetime
from time import monotonic
from typing import Any, Awaitable, Callable

from .turn_types import FastPathResult

ToolCaller = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any] | None]]

WEATHER_TOOL_NAME = "get_weather_forecast"
WEATHER_ROUTE = "weather_fast_path"
MISSING_LOCATION_REPLY = "Share the city (and state/country if needed), and I will return the weather right away."
CACHE_MAX_ENTRIES = 120

_WEATHER_RE = re.compile(r"\b(weather|forecast|temperature|rain|snow|precipitation)\b", re.IGNORECASE)
_WEEKLY_RE = re.compile(r"\b(next week|this week|7 day|7-day|week ahead)\b", re.IGNORECASE)
_CURRENT_RE = re.compile(r"\b(now|right now|currently|current|today|tonight|temperature now)\b")
_IN_DAYS_RE = re.compile(r"\bin\s+([1-7])\s+days?\b")
_LOCATION_PATTERNS = (
    re.compile(
        r"\b(?:weather|forecast|temperature|rain|snow|wind|humidity)\s+(?:(?:in|for|at)\s+)?([A-Za-z0-9][A-Za-z0-9\s,.'-]{1,80})",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:in|for|at)\s+([A-Za-z0-9][A-Za-z0-9\s,.'-]{1,80})\s+(?:weather|forecast)\b", re.IGNORECASE),
    re.compile(r"^([A-Za-z0-9][A-Za-z0-9\s,.'-]{1,80})\s+(?:weather|forecast)\b", re.IGNORECASE),
)
_LOCATION_NOISE_RE = re.compile(
    r"\b(today|tomorrow|tonight|right now|now|this week|next week|please|thanks|thank you|in\s+[1-7]\s+days?)\b",
    re.IGNORECASE,
)
_LOCATION_LEADING_WORDS = frozenset(
    {"the", "like", "be", "is", "going", "to", "what", "whats", "how", "will", "it", "in", "for", "at", "looking"}
)
_DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

WEATHER_CODE_LABELS = {
    0: "clear skies",
    1: "mostly clear",
    2: "partly cloudy",
    3: "overcast",
    45: "fog",
    48: "depositing rime fog",
    51: "light drizzle",
    53: "moderate drizzle",
    55: "dense drizzle",
    61: "light rain",
    63: "moderate rain",
    65: "heavy rain",
    66: "light freezing rain",
    67: "heavy freezing rain",
    71: "light snow",
    73: "moderate snow",
    75: "heavy snow",
    77: "snow grains",
    80: "light rain showers",
    81: "moderate rain showers",
    82: "violent rain showers",
    85: "light snow showers",
    86: "heavy snow showers",
    95: "thunderstorms",
    96: "thunderstorms with light hail",
    99: "thunderstorms with heavy hail",
}


def is_weather_request(text: str) -> bool:
    return bool(_WEATHER_RE.search(text or ""))


def weather_code_label(code: Any) -> str:
    try:
        return WEATHER_CODE_LABELS.get(int(code), "mixed conditions")
    except (TypeError, ValueError):
        return "mixed conditions"


def _strip_assistant_prefix(text: str, assistant_name: str) -> str:
    value = (text or "").strip()
    name = assistant_name.strip()
    if name:
        escaped = re.escape(name)
        value = re.sub(rf"^\s*(?:hey|hi|yo)\s+{escaped}\b[\s,:-]*", "", value, flags=re.IGNORECASE)
        value = re.sub(rf"^\s*{escaped}\b[\s,:-]*", "", value, flags=re.IGNORECASE)
    return value.strip()


def normalize_location(raw: str) -> str:
    value = re.sub(r"[?!.]", " ", raw or "")
    value = _LOCATION_NOISE_RE.sub(" ", value)
    value = re.sub(r"\s+", " ", value).strip().strip("`\"'’").rstrip(",").strip()
    words = value.split()
    while words and words[0].lower() in _LOCATION_LEADING_WORDS:
        words.pop(0)
    return " ".join(words).rstrip(",")


def infer_location(text: str, *, assistant_name: str = "") -> str:
    raw = _strip_assistant_prefix(text, assistant_name)
    for pattern in _LOCATION_PATTERNS:
        match = pattern.search(raw)
        if not match:
            continue
        location = normalize_location(match.group(1))
        if location:
            return location
    return ""


def infer_day_offset(text: str, *, today: date | None = None) -> int:
    normalized = (text or "").lower()
    if not normalized.strip():
        return 0
    in_days = _IN_DAYS_RE.search(normalized)
    if in_days:
        return max(0, min(7, int(in_days.group(1))))
    if re.search(r"\bright now\b|\bcurrently\b|\bnow\b|\btoday\b|\btonight\b", normalized):
        return 0
    if re.search(r"\btomorrow\b", normalized):
        return 1
    weekday = (today or date.today()).weekday()
    for index, day_name in enumerate(_DAY_NAMES):
        next_match = re.search(rf"\bnext\s+{day_name}\b", normalized)
        if not next_match and not re.search(rf"\b{day_name}\b", normalized):
            continue
        offset = (index - weekday) % 7
        if offset == 0 and next_match:
            offset = 7
        return offset
    return 0


def wants_weekly_outlook(text: str) -> bool:
    return bool(_WEEKLY_RE.search(text or ""))


def _has_future_timeframe(normalized: str) -> bool:
    if re.search(r"\btomorrow\b|\bin\s+[1-7]\s+days?\b", normalized):
        return True
    return any(re.search(rf"\b{day_name}\b", normalized) for day_name in _DAY_NAMES)


def is_current_weather_request(text: str) -> bool:
    normalized = (text or "").lower()
    if not normalized.strip() or wants_weekly_outlook(normalized) or _has_future_timeframe(normalized):
        return False
    return bool(_CURRENT_RE.search(normalized)) or is_weather_request(normalized)


def _rounded(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return round(value)


def _at(values: Any, index: int) -> Any:
    return values[index] if isinstance(values, list) and 0 <= index < len(values) else None


def format_freshness(forecast: dict[str, Any]) -> str:
    current = forecast.get("current") if isinstance(forecast.get("current"), dict) else {}
    try:
        stamp = datetime.fromisoformat(str(current.get("time") or ""))
    except ValueError:
        return "Freshness: live response."
    label = stamp.strftime("%I:%M %p").lstrip("0")
    abbreviation = str(forecast.get("timezone_abbreviation") or "").strip()
    return f"Freshness: updated {label}{' ' + abbreviation if abbreviation else ''}."


def build_single_day_reply(location_label: str, forecast: dict[str, Any], *, day_offset: int, prefer_current: bool) -> str:
    current = forecast.get("current") if isinstance(forecast.get("current"), dict) else {}
    current_units = forecast.get("current_units") if isinstance(forecast.get("current_units"), dict) else {}
    daily = forecast.get("daily") if isinstance(forecast.get("daily"), dict) else {}
    daily_units = forecast.get("daily_units") if isinstance(forecast.get("daily_units"), dict) else {}

    temp = _rounded(current.get("temperature_2m"))
    if prefer_current and day_offset == 0 and temp is not None:
        temp_unit = str(current_units.get("temperature_2m") or "")
        wind_unit = str(current_units.get("wind_speed_10m") or "")
        feels = _rounded(current.get("apparent_temperature"))
        humidity = _rounded(current.get("relative_humidity_2m"))
        wind = _rounded(current.get("wind_speed_10m"))
        parts = [
            f"{location_label} right now: {temp}{temp_unit}, {weather_code_label(current.get('weather_code'))}.",
            f"Feels like {feels}{temp_unit}." if feels is not None else "",
            f"Humidity {humidity}%." if humidity is not None else "",
            f"Wind {wind} {wind_unit}." if wind is not None else "",
            format_freshness(forecast),
            "Confidence: high (Open-Meteo live conditions).",
        ]
        return " ".join(part for part in parts if part)

    times = daily.get("time") if isinstance(daily.get("time"), list) else []
    if not times:
        return ""
    index = max(0, min(len(times) - 1, day_offset))
    try:
        weekday = date.fromisoformat(str(times[index])).strftime("%A")
    except ValueError:
        weekday = "Selected day"
    high = _rounded(_at(daily.get("temperature_2m_max"), index))
    low = _rounded(_at(daily.get("temperature_2m_min"), index))
    rain = _rounded(_at(daily.get("precipitation_probability_max"), index))
    wind = _rounded(_at(daily.get("wind_speed_10m_max"), index))
    temp_unit = str(daily_units.get("temperature_2m_max") or current_units.get("temperature_2m") or "")
    wind_unit = str(daily_units.get("wind_speed_10m_max") or current_units.get("wind_speed_10m") or "")
    range_text = f", high {high}{temp_unit}, low {low}{temp_unit}" if high is not None and low is not None else ""
    parts = [
        f"{location_label} on {weekday}: {weather_code_label(_at(daily.get('weather_code'), index))}{range_text}.",
        f"Rain chance up to {rain}%." if rain is not None else "",
        f"Wind up to {wind} {wind_unit}." if wind is not None else "",
        format_freshness(forecast),
        "Confidence: high (Open-Meteo forecast).",
    ]
    return " ".join(part for part in parts if part)


def build_weekly_reply(location_label: str, forecast: dict[str, Any]) -> str:
    daily = forecast.get("daily") if isinstance(forecast.get("daily"), dict) else {}
    daily_units = forecast.get("daily_units") if isinstance(forecast.get("daily_units"), dict) else {}
    times = daily.get("time") if isinstance(daily.get("time"), list) else []
    if not times:
        return ""
    temp_unit = str(daily_units.get("temperature_2m_max") or "")
    lines = [f"{location_label} next 7 days:"]
    for index in range(min(7, len(times))):
        try:
            weekday = date.fromisoformat(str(times[index])).strftime("%a")
        except ValueError:
            weekday = f"Day {index + 1}"
        high = _rounded(_at(daily.get("temperature_2m_max"), index))
        low = _rounded(_at(daily.get("temperature_2m_min"), index))
        rain = _rounded(_at(daily.get("precipitation_probability_max"), index))
        temp_range = f"{high}{temp_unit}/{low}{temp_unit}" if high is not None and low is not None else "temp range unavailable"
        rain_text = f", rain {rain}%" if rain is not None else ""
        condition = weather_code_label(_at(daily.get("weather_code"), index))
        lines.append(f"{weekday}: {condition}, {temp_range}{rain_text}")
    lines.append(format_freshness(forecast))
    lines.append("Confidence: high (Open-Meteo forecast).")
    return "\n".join(lines)


class WeatherReplyCache:
    """Short-lived reply cache keyed by location, day and horizon."""

    def __init__(self, *, ttl_sec: float = 120.0, clock: Callable[[], float] = monotonic) -> None:
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    @staticmethod
    def key(location: str, day_offset: int, weekly: bool, current_only: bool) -> str:
        horizon = "weekly" if weekly else "single"
        mode = "current" if current_only else "forecast"
        return f"{location.lower()}|{day_offset}|{horizon}|{mode}"

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry[0] > self.ttl_sec:
            del self._entries[key]
            return None
        return entry[1]

    def set(self, key: str, reply: str) -> None:
        if self.ttl_sec <= 0:
            return
        self._entries[key] = (self._clock(), reply)
        while len(self._entries) > CACHE_MAX_ENTRIES:
            oldest = min(self._entries, key=lambda item: self._entries[item][0])
            del self._entries[oldest]

    def __len__(self) -> int:
        return len(self._entries)


class WeatherFastPath:
    def __init__(
        self,
        *,
        cache: WeatherReplyCache | None = None,
        assistant_name: str = "",
        today: Callable[[], date] = date.today,
    ) -> None:
        self.cache = cache or WeatherReplyCache()
        self._assistant_name = assistant_name
        self._today = today

    def classify(self, text: str) -> dict[str, Any] | None:
        """Pure parse of a weather request; None when the text is not about weather."""
        if not is_weather_request(text):
            return None
        return {
            "location": infer_location(text, assistant_name=self._assistant_name),
            "day_offset": infer_day_offset(text, today=self._today()),
            "weekly": wants_weekly_outlook(text),
            "current_only": is_current_weather_request(text),
        }

    async def run(
        self,
        text: str,
        call_tool: ToolCaller,
        *,
        forced_location: str = "",
        bypass_confirmation: bool = False,
    ) -> FastPathResult | None:
        query = self.classify(text)
        if query is None:
            return None
        location = forced_location.strip() or query["location"]
        if not location:
            return FastPathResult(reply=MISSING_LOCATION_REPLY, route=WEATHER_ROUTE, source="validation")

        cache_key = WeatherReplyCache.key(location, query["day_offset"], query["weekly"], query["current_only"])
        cached = self.cache.get(cache_key)
        if cached:
            return FastPathResult(reply=cached, route=WEATHER_ROUTE, source="cache")

        payload = await call_tool(WEATHER_TOOL_NAME, {"location": location})
        if payload is None:
            return None

        status = payload.get("status")
        suggestions = [item for item in payload.get("suggestions") or [] if isinstance(item, str) and item]
        if status == "resolved":
            label = str(payload.get("location_label") or location)
            if not bypass_confirmation and payload.get("confidence_level") == "medium":
                return FastPathResult(
                    reply=(
                        f"I want to confirm location before I run weather. Did you mean {label}? "
                        'Reply "yes" or "no".'
                    ),
                    route=WEATHER_ROUTE,
                    source="clarify",
                    tool_call=WEATHER_TOOL_NAME,
                    needs_confirmation=True,
                    suggested_location=label,
                )
            forecast = payload.get("forecast") if isinstance(payload.get("forecast"), dict) else {}
            if query["weekly"]:
                reply = build_weekly_reply(label, forecast)
            else:
                reply = build_single_day_reply(
                    label, forecast, day_offset=query["day_offset"], prefer_current=query["current_only"]
                )
            if not reply:
                return None
            self.cache.set(cache_key, reply)
            return FastPathResult(reply=reply, route=WEATHER_ROUTE, source="open-meteo", tool_call=WEATHER_TOOL_NAME)

        if suggestions and not bypass_confirmation:
            top = suggestions[0]
            return FastPathResult(
                reply=f'I\'m not fully confident about "{location}". Did you mean {top}? Reply "yes" or "no".',
                route=WEATHER_ROUTE,
                source="clarify",
                tool_call=WEATHER_TOOL_NAME,
                needs_confirmation=True,
                suggested_location=top,
            )
        return FastPathResult(
            reply=f'I couldn\'t confidently resolve "{location}". Share city + state/country and I will run it immediately.',
            route=WEATHER_ROUTE,
            source="validation",
            tool_call=WEATHER_TOOL_NAME,
        )
