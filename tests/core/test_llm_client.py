import json

import httpx
import pytest

from src.turnkit.core.llm_client import CompletionRequest, LLMClient, is_likely_timeout_error
from src.turnkit.core.providers import ProviderError


def _config(**provider_overrides) -> dict:
    provider = {"apikey": "sk-test", "base_url": "https://llm.test/v1", "retry_backoff_schedule_sec": [0.5, 2]}
    provider.update(provider_overrides)
    return {
        "default_model_alias": "primary",
        "fallback_model_alias": "backup",
        "models": {
            "mini": {"alias": "primary", "provider": "openai", "endpoint": "gpt-mini"},
            "big": {"alias": "backup", "provider": "openai", "endpoint": "gpt-big"},
        },
        "model_providers": {"openai": provider},
    }


def _completion(text: str, *, finish_reason: str = "stop") -> dict:
    return {
        "model": "gpt-mini",
        "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 4},
    }


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.mark.asyncio
async def test_complete_posts_openai_payload_and_normalizes_result():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion("  Hello there.  "))

    client = LLMClient(_config(), transport=httpx.MockTransport(handler))
    result = await client.complete(
        CompletionRequest(messages=[{"role": "user", "content": "hi"}], max_completion_tokens=200)
    )
    await client.aclose()

    assert result.reply == "Hello there."
    assert result.model == "mini"
    assert result.provider == "openai"
    assert result.prompt_tokens == 12
    assert result.completion_tokens == 4
    assert result.attempts_used == 1

    request = seen[0]
    assert str(request.url) == "https://llm.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-mini"
    assert body["max_tokens"] == 200
    assert "tools" not in body


@pytest.mark.asyncio
async def test_complete_retries_retryable_errors_with_backoff():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json=_completion("ok"))

    sleeps = _Sleeps()
    client = LLMClient(_config(), transport=httpx.MockTransport(handler), sleep=sleeps)
    result = await client.complete(CompletionRequest(messages=[{"role": "user", "content": "hi"}]))
    await client.aclose()

    assert result.reply == "ok"
    assert result.attempts_used == 3
    assert sleeps.calls == [0.5, 2.0]


@pytest.mark.asyncio
async def test_complete_does_not_retry_client_errors():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    client = LLMClient(_config(), transport=httpx.MockTransport(handler), sleep=_Sleeps())
    with pytest.raises(ProviderError) as exc_info:
        await client.complete(CompletionRequest(messages=[{"role": "user", "content": "hi"}]))
    await client.aclose()

    assert calls["count"] == 1
    assert exc_info.value.status == 401
    assert "bad key" in exc_info.value.message
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_timeout_is_normalized_and_exhausts_attempts():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    sleeps = _Sleeps()
    client = LLMClient(_config(retry_attempts=2), transport=httpx.MockTransport(handler), sleep=sleeps)
    with pytest.raises(ProviderError) as exc_info:
        await client.complete(CompletionRequest(messages=[{"role": "user", "content": "hi"}]))
    await client.aclose()

    assert exc_info.value.code == "timeout"
    assert sleeps.calls == [0.5]
    assert is_likely_timeout_error(exc_info.value)


@pytest.mark.asyncio
async def test_malformed_response_raises_provider_error():
    client = LLMClient(_config(), transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"x": 1})))
    with pytest.raises(ProviderError, match="no choices"):
        await client.complete(CompletionRequest(messages=[{"role": "user", "content": "hi"}]))
    await client.aclose()


@pytest.mark.asyncio
async def test_malformed_tool_calls_raise_provider_error():
    good = {"id": "call_1", "type": "function", "function": {"name": "echo", "arguments": "{}"}}
    body = _completion("")
    body["choices"][0]["message"]["tool_calls"] = [good, "bad"]
    client = LLMClient(_config(), transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))
    with pytest.raises(ProviderError, match="tool call 1 is malformed") as exc_info:
        await client.complete(CompletionRequest(messages=[{"role": "user", "content": "hi"}]))
    await client.aclose()

    assert exc_info.value.code == "malformed_response"
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_well_formed_tool_calls_pass_through():
    call = {"id": "call_1", "type": "function", "function": {"name": "echo", "arguments": "{}"}}
    body = _completion("", finish_reason="tool_calls")
    body["choices"][0]["message"]["tool_calls"] = [call]
    client = LLMClient(_config(), transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))
    result = await client.complete(CompletionRequest(messages=[{"role": "user", "content": "hi"}]))
    await client.aclose()

    assert result.tool_calls == [call]
    assert result.finish_reason == "tool_calls"


@pytest.mark.asyncio
async def test_stream_yields_deltas_then_usage_chunk():
    events = [
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
        {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2}},
    ]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["stream"] is True
        return httpx.Response(200, content=body.encode("utf-8"), headers={"content-type": "text/event-stream"})

    client = LLMClient(_config(), transport=httpx.MockTransport(handler))
    chunks = [chunk async for chunk in client.stream(CompletionRequest(messages=[{"role": "user", "content": "hi"}]))]
    await client.aclose()

    assert chunks[:2] == [{"delta": "Hel"}, {"delta": "lo"}]
    assert chunks[-1] == {
        "finish_reason": "stop",
        "prompt_tokens": 9,
        "completion_tokens": 2,
        "model": "mini",
        "provider": "openai",
    }


@pytest.mark.asyncio
async def test_stream_http_error_raises():
    client = LLMClient(
        _config(), transport=httpx.MockTransport(lambda request: httpx.Response(429, text="slow down"))
    )
    with pytest.raises(ProviderError) as exc_info:
        async for _chunk in client.stream(CompletionRequest(messages=[{"role": "user", "content": "hi"}])):
            pass
    await client.aclose()
    assert exc_info.value.code == "rate_limited"
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_model_resolution_and_fallback():
    client = LLMClient(_config())
    assert client.fallback_model() == "big"
    assert client.resolve_model("backup")[0] == "big"
    with pytest.raises(ProviderError, match="No model found"):
        client.resolve_model("missing")
    await client.aclose()

    no_models = LLMClient({})
    assert no_models.fallback_model() is None
    await no_models.aclose()


@pytest.mark.asyncio
async def test_missing_api_key_is_provider_error():
    client = LLMClient(_config(apikey=""))
    with pytest.raises(ProviderError, match="API key missing"):
        await client.complete(CompletionRequest(messages=[{"role": "user", "content": "hi"}]))
    await client.aclose()


def test_is_likely_timeout_error_by_pattern():
    assert is_likely_timeout_error(TimeoutError())
    assert is_likely_timeout_error(RuntimeError("Gateway deadline exceeded"), [r"deadline exceeded"])
    assert not is_likely_timeout_error(RuntimeError("bad request"), [r"deadline exceeded"])
