"""Fast-path router: weather, then crypto, with per-session location confirmation."""

from __future__ import annotations

import asyncio
import re
import threading
from dataclasses import dataclass, replace
from time import monotonic
from typing import Any, Callable

from src.turnkit.observability import get_logger

from .crypto_fast_path import CryptoFastPath
from .settings import PipelineSettings
from .tool_registry import ToolRegistry
from .turn_types import FastPathResult, Turn
from .weather_fast_path import WeatherFastPath, WeatherReplyCache

logger = get_logger(__name__)

CONFIRM_DECLINED_REPLY = "Okay. I will not run that location. Share the correct city and I will fetch weather immediately."

_CONFIRM_NO_RE = re.compile(r"^(no|nah|nope|n|cancel|stop|not that|wrong)\b")
_CONFIRM_YES_RE = re.compile(r"^(yes|yeah|yep|y|correct|right|affirmative|that one|go ahead|please do)\b")


def is_confirm_no(text: str) -> bool:
    return bool(_CONFIRM_NO_RE.match((text or "").strip().lower()))


def is_confirm_yes(text: str) -> bool:
    normalized = (text or "").strip().lower()
    if not normalized or is_confirm_no(normalized):
        return False
    return bool(_CONFIRM_YES_RE.match(normalized))


@dataclass(frozen=True, slots=True)
class PendingConfirm:
    prompt: str
    suggested_location: str
    created_at: float


class PendingConfirmStore:
    """Per-session weather location awaiting a yes/no from the user."""

    def __init__(self, *, ttl_sec: float = 600.0, clock: Callable[[], float] = monotonic) -> None:
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._pending: dict[str, PendingConfirm] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [key for key, item in self._pending.items() if now - item.created_at > self.ttl_sec]
        for key in expired:
            del self._pending[key]

    def get(self, session_key: str) -> PendingConfirm | None:
        key = (session_key or "").strip()
        if not key:
            return None
        with self._lock:
            self._prune(self._clock())
            return self._pending.get(key)

    def set(self, session_key: str, prompt: str, suggested_location: str) -> None:
        key = (session_key or "").strip()
        if not key or not prompt.strip() or not suggested_location.strip():
            return
        with self._lock:
            self._pending[key] = PendingConfirm(prompt.strip(), suggested_location.strip(), self._clock())

    def clear(self, session_key: str) -> bool:
        with self._lock:
            return self._pending.pop((session_key or "").strip(), None) is not None


class FastPathRouter:
    """Answers weather and crypto turns without the LLM when a tool can serve them.

    A failing fast-path tool call (error payload, exception, timeout or missing
    tool) yields None so the turn falls through to the LLM path.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        settings: PipelineSettings | None = None,
        pending: PendingConfirmStore | None = None,
        weather: WeatherFastPath | None = None,
        crypto: CryptoFastPath | None = None,
    ) -> None:
        self.settings = settings or PipelineSettings()
        self.registry = registry
        self.pending = pending or PendingConfirmStore(ttl_sec=self.settings.weather_confirm_ttl_sec)
        self.weather = weather or WeatherFastPath(cache=WeatherReplyCache(ttl_sec=self.settings.weather_cache_ttl_sec))
        self.crypto = crypto or CryptoFastPath()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any] | None:
        if not self.registry.has(name):
            logger.info("fast_path_tool_unavailable", tool=name)
            return None
        if self.settings.enforce_tool_capabilities and not self.registry.allowed(name):
            logger.info("fast_path_tool_blocked", tool=name)
            return None
        try:
            payload = await asyncio.wait_for(
                self.registry.invoke(name, **arguments), timeout=self.settings.fast_path_tool_timeout_sec
            )
        except Exception as exc:
            logger.warning("fast_path_tool_failed", tool=name, error=str(exc) or exc.__class__.__name__)
            return None
        if not isinstance(payload, dict) or payload.get("ok") is False:
            logger.info("fast_path_tool_error", tool=name, error=(payload or {}).get("error"))
            return None
        return payload

    async def _run_weather(self, turn: Turn, text: str, **kwargs: Any) -> FastPathResult | None:
        result = await self.weather.run(text, self.call_tool, **kwargs)
        if result is not None and result.needs_confirmation and result.suggested_location:
            self.pending.set(turn.session_key, text, result.suggested_location)
        return result

    async def run(self, turn: Turn) -> FastPathResult | None:
        text = turn.cleaned_text
        pending = self.pending.get(turn.session_key)
        if pending is not None:
            if is_confirm_no(text):
                self.pending.clear(turn.session_key)
                return FastPathResult(reply=CONFIRM_DECLINED_REPLY, route="weather_confirm_declined", source="confirm")
            if is_confirm_yes(text):
                self.pending.clear(turn.session_key)
                result = await self.weather.run(
                    pending.prompt,
                    self.call_tool,
                    forced_location=pending.suggested_location,
                    bypass_confirmation=True,
                )
                if result is not None and result.reply.strip():
                    return replace(result, route="weather_confirm_accepted")
                return None

        weather = await self._run_weather(turn, text)
        if weather is not None and weather.reply.strip():
            return weather
        crypto = await self.crypto.run(text, self.call_tool, user_context_id=turn.user_context_id)
        if crypto is not None and crypto.reply.strip():
            return crypto
        return None

    def is_weather_turn(self, text: str) -> bool:
        return self.weather.classify(text) is not None

    def is_crypto_turn(self, text: str) -> bool:
        return self.crypto.classify(text) is not None
