import json

import pytest

from src.turnkit.core.idempotency import IdempotencyLedger
from src.turnkit.core.llm_client import CompletionRequest, CompletionResult
from src.turnkit.core.settings import PipelineSettings
from src.turnkit.core.tool_loop import (
    BUDGET_EXHAUSTED_REPLY,
    FINALIZE_PROMPT,
    TOOL_OUTPUT_FALLBACK_PREFIX,
    ToolLoopRunner,
)
from src.turnkit.core.tool_registry import ToolRegistry, ToolSpec


class _ScriptedProvider:
    def __init__(self, steps: list, *, on_call=None) -> None:
        self.steps = list(steps)
        self.requests: list[CompletionRequest] = []
        self.on_call = on_call

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        if self.on_call is not None:
            self.on_call()
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _call(name: str, args: dict, call_id: str = "call_1") -> dict:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}


def _result(reply: str = "", *, tool_calls: list | None = None, model: str = "mini") -> CompletionResult:
    return CompletionResult(
        reply=reply,
        model=model,
        provider="openai",
        prompt_tokens=10,
        completion_tokens=5,
        tool_calls=tool_calls or [],
    )


def _registry(calls: list[str] | None = None) -> ToolRegistry:
    seen = calls if calls is not None else []

    def echo(text: str) -> dict:
        seen.append(text)
        return {"ok": True, "echo": text}

    def send(text: str) -> dict:
        seen.append(f"send:{text}")
        return {"ok": True, "sent": text}

    registry = ToolRegistry(granted_capabilities=("basic",))
    registry.register(
        ToolSpec(name="echo", handler=echo, category="test", description="Echo.", parameters={"text": {"required": True}})
    )
    registry.register(
        ToolSpec(
            name="send",
            handler=send,
            category="test",
            description="Send.",
            parameters={"text": {"required": True}},
            side_effecting=True,
        )
    )
    registry.register(
        ToolSpec(
            name="admin_only",
            handler=echo,
            category="test",
            description="Needs admin.",
            required_capabilities=frozenset({"admin"}),
        )
    )
    return registry


def _messages() -> list[dict]:
    return [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "do the thing"}]


@pytest.mark.asyncio
async def test_tool_call_then_final_response():
    provider = _ScriptedProvider([_result(tool_calls=[_call("echo", {"text": "hi"})]), _result("Final answer.")])
    runner = ToolLoopRunner(provider, _registry())

    outcome = await runner.run(_messages(), model="mini", max_completion_tokens=500)

    assert outcome.reply == "Final answer."
    assert outcome.state == "done"
    assert outcome.stop_reason == "final_response"
    assert outcome.steps == 2
    assert outcome.tool_calls == ["echo"]
    assert outcome.tool_executions[0]["status"] == "ok"
    assert outcome.prompt_tokens == 20
    assert outcome.completion_tokens == 10
    assert provider.requests[0].tools

    loop_messages = provider.requests[-1].messages
    assert loop_messages[2]["role"] == "assistant"
    assert loop_messages[2]["tool_calls"][0]["id"] == "call_1"
    assert loop_messages[3] == {
        "role": "tool",
        "tool_call_id": "call_1",
        "content": json.dumps({"ok": True, "echo": "hi"}, ensure_ascii=False),
    }


@pytest.mark.asyncio
async def test_step_budget_exhaustion_runs_finalize_request():
    provider = _ScriptedProvider(
        [
            _result(tool_calls=[_call("echo", {"text": "a"})]),
            _result(tool_calls=[_call("echo", {"text": "b"})]),
            _result("Wrapped up."),
        ]
    )
    runner = ToolLoopRunner(provider, _registry(), settings=PipelineSettings(tool_loop_max_steps=2))

    outcome = await runner.run(_messages())

    assert outcome.stop_reason == "step_budget_exhausted"
    assert outcome.steps == 2
    assert outcome.reply == "Wrapped up."
    finalize = provider.requests[-1]
    assert finalize.tools is None
    assert finalize.messages[-1] == {"role": "user", "content": FINALIZE_PROMPT}


@pytest.mark.asyncio
async def test_failed_finalize_falls_back_to_last_tool_output():
    provider = _ScriptedProvider(
        [_result(tool_calls=[_call("echo", {"text": "payload"})]), RuntimeError("finalize broke")]
    )
    runner = ToolLoopRunner(provider, _registry(), settings=PipelineSettings(tool_loop_max_steps=1))

    outcome = await runner.run(_messages())

    assert outcome.reply.startswith(TOOL_OUTPUT_FALLBACK_PREFIX)
    assert '"echo": "payload"' in outcome.reply
    assert outcome.state == "done"


@pytest.mark.asyncio
async def test_duration_budget_stops_before_tool_execution():
    clock = _Clock()
    calls: list[str] = []

    def _advance() -> None:
        clock.now += 40.0

    provider = _ScriptedProvider([_result(tool_calls=[_call("echo", {"text": "late"})])], on_call=_advance)
    runner = ToolLoopRunner(provider, _registry(calls), clock=clock)

    outcome = await runner.run(_messages())

    assert calls == []
    assert outcome.stop_reason == "duration_budget_exhausted"
    assert outcome.guardrails["budget_exhausted"] is True
    assert outcome.guardrails["recovery_budget_exhausted"] is True
    assert outcome.reply == BUDGET_EXHAUSTED_REPLY
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_primary_failure_retries_once_on_fallback_model():
    provider = _ScriptedProvider([RuntimeError("primary down"), _result("From fallback.", model="big")])
    runner = ToolLoopRunner(provider, _registry(), fallback_model="big")

    outcome = await runner.run(_messages(), model="mini")

    assert outcome.reply == "From fallback."
    assert provider.requests[1].model == "big"
    assert outcome.retries == [
        {"stage": "tool_loop_completion", "from_model": "mini", "to_model": "big", "reason": "primary_failed"}
    ]


@pytest.mark.asyncio
async def test_unrecoverable_request_failure_aborts_loop():
    provider = _ScriptedProvider([RuntimeError("primary down"), RuntimeError("request timed out")])
    runner = ToolLoopRunner(provider, _registry(), fallback_model="big")

    outcome = await runner.run(_messages(), model="mini")

    assert outcome.aborted
    assert outcome.stop_reason == "aborted"
    assert outcome.reply == ""
    assert outcome.error == "request timed out"
    assert outcome.guardrails["step_timeouts"] == 1


@pytest.mark.asyncio
async def test_tool_calls_per_step_are_capped():
    provider = _ScriptedProvider(
        [
            _result(tool_calls=[_call("echo", {"text": "1"}, "c1"), _call("echo", {"text": "2"}, "c2")]),
            _result("ok"),
        ]
    )
    calls: list[str] = []
    runner = ToolLoopRunner(provider, _registry(calls), settings=PipelineSettings(tool_loop_max_tool_calls_per_step=1))

    outcome = await runner.run(_messages())

    assert calls == ["1"]
    assert outcome.guardrails["capped_tool_calls"] == 1


@pytest.mark.asyncio
async def test_capability_enforcement_blocks_tool():
    provider = _ScriptedProvider([_result(tool_calls=[_call("admin_only", {"text": "x"})]), _result("done")])
    calls: list[str] = []
    runner = ToolLoopRunner(provider, _registry(calls), settings=PipelineSettings(enforce_tool_capabilities=True))

    outcome = await runner.run(_messages())

    assert calls == []
    assert outcome.tool_executions[0]["status"] == "blocked"
    assert outcome.tool_executions[0]["error"] == "capability_blocked:admin_only"


@pytest.mark.asyncio
async def test_invalid_arguments_and_tool_errors_are_reported_to_model():
    bad_args = {"id": "c1", "type": "function", "function": {"name": "echo", "arguments": "{not json"}}
    provider = _ScriptedProvider(
        [_result(tool_calls=[bad_args, _call("missing_tool", {}, "c2")]), _result("handled")]
    )
    runner = ToolLoopRunner(provider, _registry())

    outcome = await runner.run(_messages())

    assert [row["status"] for row in outcome.tool_executions] == ["error", "error"]
    tool_messages = [msg for msg in provider.requests[-1].messages if msg.get("role") == "tool"]
    assert all(msg["content"].startswith("Tool execution failed:") for msg in tool_messages)
    assert outcome.reply == "handled"


@pytest.mark.asyncio
async def test_malformed_call_entries_do_not_stop_valid_calls():
    seen: list[str] = []
    nameless = {"id": "c3", "type": "function", "function": {"arguments": "{}"}}
    provider = _ScriptedProvider(
        [_result(tool_calls=[_call("echo", {"text": "hi"}), "bad", nameless]), _result("Done.")]
    )
    runner = ToolLoopRunner(provider, _registry(seen))

    outcome = await runner.run(_messages())

    assert seen == ["hi"]
    assert outcome.state == "done"
    assert outcome.reply == "Done."
    assert outcome.tool_calls == ["echo", "unknown", "unknown"]
    assert [row["status"] for row in outcome.tool_executions] == ["ok", "error", "error"]
    assert outcome.tool_executions[1]["error"] == "malformed_tool_call"

    loop_messages = provider.requests[-1].messages
    assert loop_messages[2]["tool_calls"] == [_call("echo", {"text": "hi"})]
    assert [msg["tool_call_id"] for msg in loop_messages if msg.get("role") == "tool"] == ["call_1"]


@pytest.mark.asyncio
async def test_side_effecting_tool_runs_once_for_identical_calls():
    provider = _ScriptedProvider(
        [
            _result(tool_calls=[_call("send", {"text": "hello"}, "c1"), _call("send", {"text": "hello"}, "c2")]),
            _result("sent"),
        ]
    )
    calls: list[str] = []
    runner = ToolLoopRunner(provider, _registry(calls), idempotency=IdempotencyLedger())

    outcome = await runner.run(_messages(), conversation_id="conv_1")

    assert calls == ["send:hello"]
    assert [row["status"] for row in outcome.tool_executions] == ["ok", "ok"]
