from __future__ import annotations

import pytest

from src.turnkit.core.llm_client import CompletionRequest, CompletionResult
from src.turnkit.core.pipeline import TurnPipeline
from src.turnkit.core.session_store import TranscriptStore
from src.turnkit.core.tool_registry import ToolRegistry
from src.turnkit.runtime import service as service_module
from src.turnkit.runtime.service import RuntimeService, get_runtime_service, set_runtime_service


class _StreamingProvider:
    def __init__(self, reply: str = "Hello!") -> None:
        self.reply = reply
        self.calls = 0

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.calls += 1
        return CompletionResult(reply=self.reply, model="mini", provider="fake")

    async def stream(self, request: CompletionRequest):
        self.calls += 1
        yield {"delta": self.reply}
        yield {"model": "mini", "provider": "fake", "prompt_tokens": 5, "completion_tokens": 2}


def _service(tmp_path=None, provider: _StreamingProvider | None = None) -> RuntimeService:
    store = None
    if tmp_path is not None:
        store = TranscriptStore(sessions_dir=tmp_path / "sessions", usage_path=tmp_path / "usage.jsonl")
    pipeline = TurnPipeline(provider or _StreamingProvider(), ToolRegistry(), store=store, default_model="mini")
    return RuntimeService(config={}, pipeline=pipeline)


@pytest.mark.asyncio
async def test_runtime_service_start_stop_lifecycle():
    service = _service()

    first = service.start(source="test")
    second = service.start(source="test_again")
    assert first["ok"] and first["already_started"] is False
    assert second["already_started"] is True
    assert service.health()["runtime"]["last_start_source"] == "test_again"
    assert service.health()["pipeline"]["recent_runs"] == 0

    stopped = await service.stop(source="test")
    assert stopped == {"ok": True, "source": "runtime_service", "stopped": True, "stop_source": "test"}
    health = service.health()
    assert health["runtime"]["started"] is False
    assert health["runtime"]["last_stop_source"] == "test"
    assert health["pipeline"] is None


@pytest.mark.asyncio
async def test_runtime_service_chat_and_runs(tmp_path):
    provider = _StreamingProvider("Hi there.")
    service = _service(tmp_path, provider)

    response = await service.chat(message="tell me a story about dragons", session_id="s1")
    assert response["ok"] is True
    assert response["reply"] == "Hi there."
    assert response["route"] == "stream"
    assert response["data"]["summary"]["session_key"] == "s1"

    runs = service.recent_runs(limit=5)
    assert runs["ok"] and runs["count"] == 1
    assert runs["runs"][0]["turn_id"] == response["data"]["turn_id"]
    await service.stop(source="test")


@pytest.mark.asyncio
async def test_runtime_service_reset_and_deliver(tmp_path):
    service = _service(tmp_path)
    await service.chat(message="tell me a story about dragons", session_id="s1")
    await service.pipeline.drain()

    reset = await service.reset_session(session_id="s1")
    assert reset["transcript_cleared"] is True
    assert reset["dedupe_entries_cleared"] == 1

    delivered = await service.deliver(conversation_id="conv1", text="Report ready.", node_id="node_a", run_key="run_1")
    assert delivered["delivered"] is True
    assert delivered["delivery_key"] == ":run_1:node_a:0:"
    duplicate = await service.deliver(conversation_id="conv1", text="Report ready.", node_id="node_a", run_key="run_1")
    assert duplicate["reason"] == "duplicate_delivery"

    invalid = await service.deliver(conversation_id="conv1", text="Report ready.", node_id="node_a")
    assert invalid["ok"] is False
    assert "mission_run_id or run_key" in invalid["error"]
    await service.stop(source="test")


@pytest.mark.asyncio
async def test_runtime_service_builds_pipeline_from_config(tmp_path):
    config = {
        "persistence": {
            "sessions_dir": str(tmp_path / "sessions"),
            "usage_path": str(tmp_path / "usage.jsonl"),
        },
        "pipeline": {"tool_loop_max_steps": 3},
        "assistant": {"name": "Turnkit"},
    }
    service = RuntimeService(config=config)

    pipeline = service.pipeline
    assert pipeline is service.pipeline
    assert pipeline.settings.tool_loop_max_steps == 3
    assert pipeline.assistant_name == "Turnkit"
    assert pipeline.fallback_model is None
    assert pipeline.store.sessions_dir == tmp_path / "sessions"
    assert "get_weather_forecast" in pipeline.registry.names()
    assert service.bus is pipeline.bus
    await service.stop(source="test")


def test_runtime_service_singleton(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(service_module, "_RUNTIME_SERVICE", None)
    first = get_runtime_service()
    assert get_runtime_service() is first

    replacement = _service()
    set_runtime_service(replacement)
    assert get_runtime_service() is replacement
