import pytest

from src.turnkit.core.turn_types import (
    DeliveryKey,
    ExecutionPolicy,
    IdempotencyRecord,
    RunSummary,
    ToolLoopBudget,
    Turn,
    TurnResult,
    clean_turn_text,
    derive_turn_id,
)


class _Clock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_turn_defaults_and_identity():
    turn = Turn(text="  hello\r\n  there ", session_key="", received_at=1000.0)
    assert turn.session_key == "default"
    assert turn.conversation_id == "default"
    assert turn.source == "chat"
    assert turn.raw_text == "  hello\r\n  there "
    assert turn.cleaned_text == "hello there"
    assert turn.turn_id.startswith("turn_")
    assert len(turn.turn_id) == len("turn_") + 24


def test_turn_id_is_stable_within_a_time_bucket():
    first = Turn(text="Hello", session_key="s1", received_at=1000.0)
    second = Turn(text="  hello ", session_key="s1", received_at=1004.0)
    later = Turn(text="Hello", session_key="s1", received_at=1012.0)
    other_session = Turn(text="Hello", session_key="s2", received_at=1000.0)
    assert first.turn_id == second.turn_id
    assert first.turn_id != later.turn_id
    assert first.turn_id != other_session.turn_id


def test_turn_rejects_non_string_text():
    with pytest.raises(ValueError, match="string"):
        Turn(text=None)  # type: ignore[arg-type]


def test_clean_turn_text_and_derive_turn_id():
    assert clean_turn_text("a\r\n\tb   c") == "a b c"
    assert derive_turn_id(session_key="s", text="x", received_at=0.0) == derive_turn_id(
        session_key="s", text="X ", received_at=9.9
    )


def test_execution_policy_lane():
    assert ExecutionPolicy(fast_lane=True).lane == "fast"
    assert ExecutionPolicy().to_dict()["lane"] == "default"


def test_tool_loop_budget_resolves_timeouts_against_remaining_time():
    clock = _Clock()
    budget = ToolLoopBudget(
        max_steps=2,
        max_duration_sec=10.0,
        max_tool_calls_per_step=2,
        tool_exec_timeout_sec=8.0,
        request_timeout_sec=14.0,
        recovery_timeout_sec=6.0,
        clock=clock,
    )
    assert budget.resolve_timeout(14.0) == 10.0
    clock.now += 9.5
    assert budget.resolve_timeout(14.0) == 1.0
    clock.now += 1.0
    assert budget.is_exhausted()
    assert budget.resolve_timeout(14.0) == 0.0

    budget.record_step()
    budget.record_step()
    assert budget.steps_exhausted()

    capped, dropped = budget.cap_tool_calls([{"id": "1"}, {"id": "2"}, {"id": "3"}])
    assert [call["id"] for call in capped] == ["1", "2"]
    assert dropped == 1


def test_tool_loop_budget_validates_bounds():
    with pytest.raises(ValueError, match="max_steps"):
        ToolLoopBudget(
            max_steps=0,
            max_duration_sec=1,
            max_tool_calls_per_step=1,
            tool_exec_timeout_sec=1,
            request_timeout_sec=1,
            recovery_timeout_sec=1,
        )


def test_run_summary_accumulates_and_completes():
    summary = RunSummary(turn_id="turn_1", session_key="s1")
    summary.add_usage(10, 5)
    summary.add_usage(-3, 2)
    summary.add_stage("llm_generation", 12.7)
    summary.add_stage("llm_generation", 3)
    summary.add_retry(stage="direct_completion", from_model="a", to_model="b", reason="primary_failed")
    summary.mark_fallback(stage="refinement", reason="empty_reply", had_candidate=False)

    with pytest.raises(ValueError, match="without a reply"):
        summary.complete("   ")
    summary.complete("Done.")

    snapshot = summary.snapshot()
    assert snapshot["ok"] is True
    assert snapshot["total_tokens"] == 17
    assert snapshot["latency_stages"] == {"llm_generation": 15}
    assert snapshot["retries"][0]["to_model"] == "b"
    assert snapshot["fallback_reason"] == "empty_reply"


def test_turn_result_to_dict_copies_summary():
    summary = {"retries": []}
    result = TurnResult(ok=True, reply="hi", route="stream", turn_id="turn_1", summary=summary)
    payload = result.to_dict()
    payload["summary"]["retries"].append("x")
    assert summary == {"retries": []}


def test_idempotency_record_validation():
    with pytest.raises(ValueError, match="status"):
        IdempotencyRecord(key="k", scope="tool", user_context_id="", status="done", first_seen_at=1, expires_at=2)  # type: ignore[arg-type]
    record = IdempotencyRecord(key="k", scope="tool", user_context_id="", status="pending", first_seen_at=1, expires_at=2)
    assert record.updated_at == 1


def test_delivery_key_requires_node_and_run():
    key = DeliveryKey(node_id="node_a", output_index=1, run_key="run_1", schedule_id="sched", channel="chat")
    assert key.as_string() == "sched:run_1:node_a:1:chat"
    with pytest.raises(ValueError, match="node_id"):
        DeliveryKey(node_id=" ", run_key="run_1")
    with pytest.raises(ValueError, match="mission_run_id or run_key"):
        DeliveryKey(node_id="node_a")
