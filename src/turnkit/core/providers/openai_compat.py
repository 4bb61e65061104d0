"""OpenAI-compatible chat-completions adapter over httpx."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx

from src.turnkit.observability import get_logger

logger = get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
RETRYABLE_HTTP_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class ProviderError(Exception):
    """Normalized provider failure; never leaks transport exceptions to callers."""

    def __init__(self, message: str, *, code: str = "provider_error", status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    @property
    def retryable(self) -> bool:
        if self.code in {"timeout", "network_error"}:
            return True
        return self.status is not None and self.status in RETRYABLE_HTTP_CODES

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "code": self.code, "message": self.message}


def _error_detail(response: httpx.Response) -> str:
    body = response.text.strip()
    try:
        parsed = json.loads(body) if body else None
    except json.JSONDecodeError:
        return body or response.reason_phrase
    if isinstance(parsed, dict):
        err = parsed.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err.get("code") or body)
        if isinstance(err, str):
            return err
        if isinstance(parsed.get("message"), str):
            return parsed["message"]
    return body or response.reason_phrase


def _http_error(response: httpx.Response) -> ProviderError:
    code = "rate_limited" if response.status_code == 429 else "http_error"
    return ProviderError(
        f"HTTP {response.status_code}: {_error_detail(response)}",
        code=code,
        status=response.status_code,
    )


def _extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return ""


def _checked_tool_calls(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ProviderError("Provider tool_calls must be a list.", code="malformed_response")
    for idx, call in enumerate(raw):
        function = call.get("function") if isinstance(call, dict) else None
        name = function.get("name") if isinstance(function, dict) else None
        if not isinstance(name, str) or not name.strip():
            raise ProviderError(f"Provider tool call {idx} is malformed.", code="malformed_response")
    return raw


def normalize_completion(raw: Any, *, provider: str, model: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ProviderError("Provider response must be a JSON object.", code="malformed_response")
    choices = raw.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise ProviderError("Provider response has no choices.", code="malformed_response")
    first = choices[0]
    message = first.get("message") if isinstance(first.get("message"), dict) else {}
    usage = raw.get("usage") if isinstance(raw.get("usage"), dict) else {}
    tool_calls = _checked_tool_calls(message.get("tool_calls"))
    return {
        "provider": provider,
        "model": str(raw.get("model") or model),
        "text": _extract_text(message.get("content")),
        "tool_calls": tool_calls,
        "finish_reason": first.get("finish_reason"),
        "usage": usage,
    }


class OpenAICompatibleProvider:
    """Chat-completions client for any endpoint speaking the OpenAI wire format."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = OPENAI_BASE_URL,
        provider_name: str = "openai",
        timeout_sec: float = 30.0,
        extra_headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError(f"API key missing for provider '{provider_name}'.")
        self.provider_name = provider_name
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self._api_key = api_key
        self._extra_headers = dict(extra_headers or {})
        self._client = client or httpx.AsyncClient()

    @property
    def chat_url(self) -> str:
        if self.base_url.endswith("/chat/completions"):
            return self.base_url
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self._extra_headers)
        return headers

    @staticmethod
    def _payload(
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        max_tokens: int | None,
        temperature: float | None,
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if max_tokens is not None:
            payload["max_tokens"] = int(max_tokens)
        if temperature is not None:
            payload["temperature"] = float(temperature)
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def chat(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout_sec: float | None = None,
    ) -> dict[str, Any]:
        payload = self._payload(
            model=model, messages=messages, tools=tools, max_tokens=max_tokens, temperature=temperature, stream=False
        )
        try:
            response = await self._client.post(
                self.chat_url,
                headers=self._headers(),
                json=payload,
                timeout=timeout_sec or self.timeout_sec,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(f"Request to {self.provider_name} timed out.", code="timeout") from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"Network error calling {self.provider_name}: {exc}", code="network_error") from exc

        if response.status_code >= 400:
            logger.warning("provider_http_error", provider=self.provider_name, status_code=response.status_code)
            raise _http_error(response)
        try:
            raw = response.json()
        except json.JSONDecodeError as exc:
            raise ProviderError("Provider returned invalid JSON.", code="malformed_response") from exc
        return normalize_completion(raw, provider=self.provider_name, model=model)

    async def stream_chat(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout_sec: float | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield `{"delta": str}` chunks, then one `{"finish_reason", "usage"}` chunk."""
        payload = self._payload(
            model=model, messages=messages, tools=None, max_tokens=max_tokens, temperature=temperature, stream=True
        )
        finish_reason: str | None = None
        usage: dict[str, Any] = {}
        try:
            async with self._client.stream(
                "POST",
                self.chat_url,
                headers=self._headers(),
                json=payload,
                timeout=timeout_sec or self.timeout_sec,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise _http_error(response)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError as exc:
                        raise ProviderError("Provider stream sent invalid JSON.", code="malformed_response") from exc
                    if isinstance(chunk.get("usage"), dict):
                        usage = chunk["usage"]
                    choices = chunk.get("choices")
                    if not isinstance(choices, list) or not choices:
                        continue
                    first = choices[0] if isinstance(choices[0], dict) else {}
                    delta = first.get("delta") if isinstance(first.get("delta"), dict) else {}
                    text = _extract_text(delta.get("content"))
                    if text:
                        yield {"delta": text}
                    if first.get("finish_reason"):
                        finish_reason = str(first["finish_reason"])
        except httpx.TimeoutException as exc:
            raise ProviderError(f"Stream from {self.provider_name} timed out.", code="timeout") from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"Network error streaming from {self.provider_name}: {exc}", code="network_error") from exc
        yield {"finish_reason": finish_reason, "usage": usage}

    async def aclose(self) -> None:
        await self._client.aclose()
