import pytest

from src.turnkit.core.fallbacks import GENERIC_FALLBACK_REPLY
from src.turnkit.core.llm_client import CompletionRequest, CompletionResult
from src.turnkit.core.output_constraints import parse_output_constraints
from src.turnkit.core.refinement import (
    EmptyReplyRecovery,
    GenericFallback,
    RefinementContext,
    RefinementRunner,
)


class _QueueProvider:
    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.requests: list[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return CompletionResult(reply=reply, model=request.model or "mini", provider="fake", prompt_tokens=5, completion_tokens=3)


def _messages(text: str) -> list[dict]:
    return [{"role": "user", "content": text}]


@pytest.mark.asyncio
async def test_valid_reply_passes_through():
    outcome = await RefinementRunner().refine(RefinementContext(user_text="hi", reply="  Hello!  ", origin="stream"))
    assert outcome.reply == "Hello!"
    assert outcome.strategy == "passthrough"
    assert not outcome.used_fallback
    assert outcome.had_candidate


@pytest.mark.asyncio
async def test_empty_reply_recovers_with_larger_cap():
    provider = _QueueProvider("Recovered answer.")
    ctx = RefinementContext(
        user_text="Explain tides",
        reply="",
        origin="stream",
        messages=_messages("Explain tides"),
        model="mini",
        finish_reason="length",
        completion_tokens=1200,
        max_completion_tokens=1200,
        provider=provider,
    )
    outcome = await RefinementRunner().refine(ctx)

    assert outcome.reply == "Recovered answer."
    assert outcome.strategy == "empty_reply_recovery"
    assert outcome.fallback_stage == "stream_empty_reply_recovery"
    assert outcome.fallback_reason == "empty_reply_after_llm_call:finish_reason_length:near_token_cap"
    assert not outcome.had_candidate
    assert provider.requests[0].max_completion_tokens == 2040
    assert outcome.retries[0]["stage"] == "empty_reply_recovery"
    assert outcome.prompt_tokens == 5


@pytest.mark.asyncio
async def test_constraint_violation_is_corrected_once():
    text = "Reply with exactly one word: ready"
    provider = _QueueProvider("Ready.")
    ctx = RefinementContext(
        user_text=text,
        reply="I am ready now",
        origin="direct",
        constraints=parse_output_constraints(text),
        messages=_messages(text),
        provider=provider,
    )
    outcome = await RefinementRunner().refine(ctx)

    assert outcome.reply == "Ready."
    assert outcome.corrected
    assert outcome.correction_pass_count == 1
    assert outcome.fallback_reason == "requires_one_word"
    correction_messages = provider.requests[0].messages
    assert correction_messages[-2] == {"role": "assistant", "content": "I am ready now"}
    assert "Violation: requires_one_word." in correction_messages[-1]["content"]


@pytest.mark.asyncio
async def test_failed_correction_falls_back_to_constraint_safe_reply():
    text = "Reply with exactly one word: ready"
    provider = _QueueProvider("Still not one word")
    ctx = RefinementContext(
        user_text=text,
        reply="I am ready now",
        origin="direct",
        constraints=parse_output_constraints(text),
        messages=_messages(text),
        provider=provider,
    )
    outcome = await RefinementRunner().refine(ctx)

    assert outcome.reply == "ready"
    assert outcome.strategy == "constraint_safe_fallback"
    assert outcome.fallback_stage == "direct_constraint_safe_fallback"
    assert outcome.had_candidate
    assert outcome.attempts[0] == {
        "strategy": "constraint_correction",
        "accepted": False,
        "violation": "requires_one_word",
    }


@pytest.mark.asyncio
async def test_exception_origin_without_provider_uses_deterministic_reply():
    ctx = RefinementContext(user_text="Tell me a story", reply="", origin="exception", base_reason="timeout")
    outcome = await RefinementRunner().refine(ctx)

    assert outcome.reply == GENERIC_FALLBACK_REPLY
    assert outcome.fallback_reason == "timeout"
    assert outcome.fallback_stage == "exception_constraint_safe_fallback"


@pytest.mark.asyncio
async def test_recovery_provider_error_continues_down_the_chain():
    text = "Give exactly 2 bullet points."
    provider = _QueueProvider(RuntimeError("down"))
    ctx = RefinementContext(
        user_text=text,
        reply="",
        origin="tool_loop",
        constraints=parse_output_constraints(text),
        messages=_messages(text),
        finish_reason="length",
        provider=provider,
    )
    outcome = await RefinementRunner().refine(ctx)

    assert outcome.reply == "- Retry step 1.\n- Retry step 2."
    assert outcome.retries[0]["stage"] == "empty_reply_recovery"
    assert [attempt["strategy"] for attempt in outcome.attempts] == [
        "empty_reply_recovery",
        "constraint_safe_fallback",
    ]


@pytest.mark.asyncio
async def test_custom_chain_must_end_with_terminal_strategy():
    with pytest.raises(ValueError, match="terminal"):
        RefinementRunner((EmptyReplyRecovery(),))

    outcome = await RefinementRunner((GenericFallback(),)).refine(
        RefinementContext(user_text="x", reply="", origin="stream")
    )
    assert outcome.reply == GENERIC_FALLBACK_REPLY
    assert outcome.strategy == "generic_fallback"
