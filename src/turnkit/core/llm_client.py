"""Provider-agnostic completion client with config-driven model resolution and retries."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Protocol

import httpx

from src.turnkit.observability import get_logger

from .config_loader import get_fallback_model, get_model_config, get_provider_config, load_config_or_empty
from .providers import OpenAICompatibleProvider, ProviderError

logger = get_logger(__name__)

DEFAULT_RETRY_BACKOFF_SCHEDULE_SEC = (1.0, 3.0, 5.0)
DEFAULT_PROVIDER_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "grok": "https://api.x.ai/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
}


@dataclass(slots=True)
class CompletionRequest:
    messages: list[dict[str, Any]]
    model: str | None = None
    tools: list[dict[str, Any]] | None = None
    max_completion_tokens: int | None = None
    temperature: float | None = None
    timeout_sec: float | None = None

    def with_model(self, model: str | None) -> "CompletionRequest":
        return CompletionRequest(
            messages=list(self.messages),
            model=model,
            tools=self.tools,
            max_completion_tokens=self.max_completion_tokens,
            temperature=self.temperature,
            timeout_sec=self.timeout_sec,
        )


@dataclass(slots=True)
class CompletionResult:
    reply: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str | None = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    retries: list[dict[str, Any]] = field(default_factory=list)
    attempts_used: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "reply": self.reply,
            "model": self.model,
            "provider": self.provider,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "finish_reason": self.finish_reason,
            "tool_calls": list(self.tool_calls),
            "retries": list(self.retries),
            "attempts_used": self.attempts_used,
        }


class CompletionProvider(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResult: ...

    def stream(self, request: CompletionRequest) -> AsyncIterator[dict[str, Any]]: ...


def is_likely_timeout_error(exc: BaseException, patterns: Iterable[str] = ()) -> bool:
    """Classify an exception as a timeout by type, then by message patterns."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return True
    if isinstance(exc, ProviderError) and exc.code == "timeout":
        return True
    message = str(exc).lower()
    return any(re.search(pattern, message, re.IGNORECASE) for pattern in patterns)


def _coerce_retry_schedule_sec(raw: Any) -> list[float]:
    if not isinstance(raw, list):
        return list(DEFAULT_RETRY_BACKOFF_SCHEDULE_SEC)
    out = [float(val) for val in raw if isinstance(val, (int, float)) and not isinstance(val, bool) and val >= 0]
    return out or list(DEFAULT_RETRY_BACKOFF_SCHEDULE_SEC)


def _usage_int(usage: dict[str, Any], key: str) -> int:
    value = usage.get(key)
    return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


class LLMClient:
    """Resolve models from config and call their providers.

    Provider instances share one `httpx.AsyncClient`; pass `transport` to route
    every request through a custom transport.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config if config is not None else load_config_or_empty()
        self._http = httpx.AsyncClient(transport=transport) if transport is not None else httpx.AsyncClient()
        self._sleep = sleep
        self._providers: dict[str, OpenAICompatibleProvider] = {}

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    def fallback_model(self) -> str | None:
        if not isinstance(self._config.get("models"), dict):
            return None
        try:
            resolved = get_fallback_model(self._config)
        except ValueError:
            logger.warning("fallback_model_unresolved", alias=self._config.get("fallback_model_alias"))
            return None
        return resolved[0] if resolved else None

    def resolve_model(self, model_ref: str | None) -> tuple[str, dict[str, Any], str, dict[str, Any]]:
        try:
            model_id, model_cfg = get_model_config(model_ref, self._config)
            provider_name = model_cfg.get("provider")
            if not isinstance(provider_name, str) or not provider_name:
                raise ValueError(f"Model '{model_id}' missing provider.")
            provider_cfg = get_provider_config(provider_name, self._config)
        except ValueError as exc:
            raise ProviderError(str(exc), code="provider_error") from exc
        return model_id, model_cfg, provider_name, provider_cfg

    def _provider(self, provider_name: str, provider_cfg: dict[str, Any]) -> OpenAICompatibleProvider:
        cached = self._providers.get(provider_name)
        if cached is not None:
            return cached
        api_key = provider_cfg.get("apikey") or provider_cfg.get("api_key")
        if not isinstance(api_key, str) or not api_key:
            raise ProviderError(f"API key missing for provider '{provider_name}'.", code="provider_error")
        headers: dict[str, str] = {}
        if isinstance(provider_cfg.get("referer"), str):
            headers["HTTP-Referer"] = provider_cfg["referer"]
        if isinstance(provider_cfg.get("app_title"), str):
            headers["X-Title"] = provider_cfg["app_title"]
        timeout = provider_cfg.get("timeout_sec")
        provider = OpenAICompatibleProvider(
            api_key=api_key,
            base_url=str(provider_cfg.get("base_url") or DEFAULT_PROVIDER_BASE_URLS.get(provider_name, "")),
            provider_name=provider_name,
            timeout_sec=float(timeout) if isinstance(timeout, (int, float)) else 30.0,
            extra_headers=headers,
            client=self._http,
        )
        self._providers[provider_name] = provider
        return provider

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        model_id, model_cfg, provider_name, provider_cfg = self.resolve_model(request.model)
        provider = self._provider(provider_name, provider_cfg)
        endpoint = str(model_cfg.get("endpoint") or model_id)

        schedule = _coerce_retry_schedule_sec(provider_cfg.get("retry_backoff_schedule_sec"))
        attempts_raw = provider_cfg.get("retry_attempts")
        attempts = attempts_raw if isinstance(attempts_raw, int) and attempts_raw > 0 else len(schedule) + 1

        for attempt in range(1, attempts + 1):
            try:
                raw = await provider.chat(
                    model=endpoint,
                    messages=request.messages,
                    tools=request.tools,
                    max_tokens=request.max_completion_tokens,
                    temperature=request.temperature,
                    timeout_sec=request.timeout_sec,
                )
            except ProviderError as exc:
                if attempt >= attempts or not exc.retryable:
                    raise
                delay = schedule[min(attempt - 1, len(schedule) - 1)]
                logger.info(
                    "provider_retry",
                    provider=provider_name,
                    model=model_id,
                    attempt=attempt,
                    delay_sec=delay,
                    code=exc.code,
                )
                if delay > 0:
                    await self._sleep(delay)
                continue

            usage = raw.get("usage") or {}
            return CompletionResult(
                reply=(raw.get("text") or "").strip(),
                model=model_id,
                provider=provider_name,
                prompt_tokens=_usage_int(usage, "prompt_tokens"),
                completion_tokens=_usage_int(usage, "completion_tokens"),
                finish_reason=raw.get("finish_reason"),
                tool_calls=list(raw.get("tool_calls") or []),
                attempts_used=attempt,
            )
        raise ProviderError("Provider retry loop exited unexpectedly.")

    async def stream(self, request: CompletionRequest) -> AsyncIterator[dict[str, Any]]:
        """Yield delta chunks, then a final chunk carrying usage, model and provider."""
        model_id, model_cfg, provider_name, provider_cfg = self.resolve_model(request.model)
        provider = self._provider(provider_name, provider_cfg)
        endpoint = str(model_cfg.get("endpoint") or model_id)
        async for chunk in provider.stream_chat(
            model=endpoint,
            messages=request.messages,
            max_tokens=request.max_completion_tokens,
            temperature=request.temperature,
            timeout_sec=request.timeout_sec,
        ):
            if "delta" in chunk:
                yield chunk
                continue
            usage = chunk.get("usage") or {}
            yield {
                "finish_reason": chunk.get("finish_reason"),
                "prompt_tokens": _usage_int(usage, "prompt_tokens"),
                "completion_tokens": _usage_int(usage, "completion_tokens"),
                "model": model_id,
                "provider": provider_name,
            }

    async def aclose(self) -> None:
        await self._http.aclose()
