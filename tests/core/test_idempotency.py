import asyncio

import pytest

from src.turnkit.core.idempotency import IdempotencyLedger, build_idempotency_key


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_build_idempotency_key_is_scoped_and_stable():
    key = build_idempotency_key("tool:conv_1", "send|{}")
    assert key.startswith("tool:conv_1:")
    assert key == build_idempotency_key("tool:conv_1", "send|{}")
    assert key != build_idempotency_key("tool:conv_2", "send|{}")


@pytest.mark.asyncio
async def test_second_claim_while_pending_is_rejected_with_retry_hint():
    clock = _Clock()
    ledger = IdempotencyLedger(pending_ttl_sec=120.0, clock=clock)
    first = await ledger.claim("k1", "tool")
    second = await ledger.claim("k1", "tool")

    assert first.accepted
    assert not second.accepted
    assert second.status == "pending"
    assert second.retry_after_sec == 4.0


@pytest.mark.asyncio
async def test_pending_claim_expires_and_can_be_reclaimed():
    clock = _Clock()
    ledger = IdempotencyLedger(pending_ttl_sec=10.0, clock=clock)
    await ledger.claim("k1", "tool")
    clock.now += 10.0
    again = await ledger.claim("k1", "tool")
    assert again.accepted


@pytest.mark.asyncio
async def test_completed_result_is_returned_to_later_claimants():
    clock = _Clock()
    ledger = IdempotencyLedger(result_ttl_sec=300.0, clock=clock)
    await ledger.claim("k1", "tool", user_context_id="u1")
    record = await ledger.complete("k1", "tool", "completed", {"sent": True})
    assert record is not None
    assert record.expires_at == clock.now + 300.0

    later = await ledger.claim("k1", "tool")
    assert not later.accepted
    assert later.status == "completed"
    assert later.result_ref == {"sent": True}
    assert later.retry_after_sec is None
    assert ledger.get("k1") is record


@pytest.mark.asyncio
async def test_complete_unknown_key_or_scope_returns_none():
    ledger = IdempotencyLedger()
    assert await ledger.complete("missing", "tool", "completed") is None
    await ledger.claim("k1", "tool")
    assert await ledger.complete("k1", "other", "completed") is None
    with pytest.raises(ValueError):
        await ledger.complete("k1", "tool", "pending")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_run_once_executes_action_once_under_concurrency():
    ledger = IdempotencyLedger()
    calls = {"count": 0}
    gate = asyncio.Event()

    async def action() -> str:
        calls["count"] += 1
        await gate.wait()
        return "done"

    first = asyncio.create_task(ledger.run_once("k1", "tool", action))
    await asyncio.sleep(0)
    second_claim, second_value = await ledger.run_once("k1", "tool", action)
    gate.set()
    first_claim, first_value = await first

    assert calls["count"] == 1
    assert first_claim.accepted and first_value == "done"
    assert not second_claim.accepted and second_value is None

    third_claim, third_value = await ledger.run_once("k1", "tool", action)
    assert not third_claim.accepted
    assert third_value == "done"


@pytest.mark.asyncio
async def test_run_once_marks_failure_and_reraises():
    ledger = IdempotencyLedger()

    async def action() -> str:
        raise RuntimeError("smtp down")

    with pytest.raises(RuntimeError, match="smtp down"):
        await ledger.run_once("k1", "tool", action)

    record = ledger.get("k1")
    assert record is not None
    assert record.status == "failed"
    assert record.result_ref == {"error": "smtp down"}
    assert len(ledger) == 1
