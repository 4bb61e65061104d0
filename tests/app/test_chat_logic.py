import asyncio

import pytest

from app.chat_logic import MAX_MESSAGE_CHARS, handle_chat_message
from src.turnkit.core.llm_client import CompletionRequest, CompletionResult
from src.turnkit.core.pipeline import TurnPipeline
from src.turnkit.core.tool_registry import ToolRegistry


class _Provider:
    def __init__(self, reply: str = "Sure thing.", gate: asyncio.Event | None = None) -> None:
        self.reply = reply
        self.gate = gate
        self.stream_calls = 0

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        return CompletionResult(reply=self.reply, model="mini", provider="fake")

    async def stream(self, request: CompletionRequest):
        self.stream_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        yield {"delta": self.reply}
        yield {"model": "mini", "provider": "fake", "prompt_tokens": 4, "completion_tokens": 2}


def _pipeline(provider: _Provider) -> TurnPipeline:
    return TurnPipeline(provider, ToolRegistry(), default_model="mini")


@pytest.mark.asyncio
async def test_handle_chat_message_empty():
    provider = _Provider()
    result = await handle_chat_message("   ", pipeline=_pipeline(provider))
    assert result == {
        "ok": False,
        "reply": "Please enter a message.",
        "route": "validation",
        "data": None,
        "error": "empty_message",
    }
    assert provider.stream_calls == 0


@pytest.mark.asyncio
async def test_handle_chat_message_too_long():
    result = await handle_chat_message("x" * (MAX_MESSAGE_CHARS + 1), pipeline=_pipeline(_Provider()))
    assert not result["ok"]
    assert result["error"] == "message_too_long"
    assert result["route"] == "validation"


@pytest.mark.asyncio
async def test_handle_chat_message_success_carries_summary():
    result = await handle_chat_message(
        "tell me a story about dragons",
        pipeline=_pipeline(_Provider("Once upon a time.")),
        session_id="s1",
        user_context_id="user_1",
        conversation_id="conv_1",
        source="telegram",
        hints={"channel": "dm"},
    )

    assert result["ok"] is True
    assert result["reply"] == "Once upon a time."
    assert result["route"] == "stream"
    assert result["error"] is None
    summary = result["data"]["summary"]
    assert result["data"]["turn_id"].startswith("turn_")
    assert summary["session_key"] == "s1"
    assert summary["user_context_id"] == "user_1"
    assert summary["conversation_id"] == "conv_1"
    assert summary["source"] == "telegram"
    assert summary["request_hints"]["channel"] == "dm"


@pytest.mark.asyncio
async def test_handle_chat_message_duplicate():
    pipeline = _pipeline(_Provider())
    first = await handle_chat_message("tell me a story about dragons", pipeline=pipeline, session_id="s1")
    second = await handle_chat_message("tell me a story about dragons", pipeline=pipeline, session_id="s1")

    assert first["ok"]
    assert second["ok"] is False
    assert second["error"] == "duplicate_turn"
    assert second["route"] == "duplicate_skipped"
    assert second["data"]["duplicate"] is True
    assert second["data"]["turn_id"].startswith("turn_")


@pytest.mark.asyncio
async def test_cancelled_request_still_completes_turn():
    gate = asyncio.Event()
    pipeline = _pipeline(_Provider("late reply", gate=gate))

    request = asyncio.ensure_future(handle_chat_message("tell me a story about dragons", pipeline=pipeline))
    for _ in range(5):
        await asyncio.sleep(0)
    request.cancel()
    with pytest.raises(asyncio.CancelledError):
        await request

    assert pipeline.stats()["inflight_turns"] == 1
    gate.set()
    await pipeline.drain()

    assert pipeline.stats()["inflight_turns"] == 0
    runs = pipeline.recent_runs()
    assert len(runs) == 1
    assert runs[0]["reply"] == "late reply"
