"""Ordered fallback chain that turns any candidate reply into a valid, non-empty one."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from src.turnkit.observability import get_logger

from .fallbacks import (
    GENERIC_FALLBACK_REPLY,
    build_constraint_safe_fallback,
    build_empty_reply_failure_reason,
    resolve_recovery_max_completion_tokens,
    should_attempt_empty_reply_recovery,
)
from .llm_client import CompletionProvider, CompletionRequest
from .output_constraints import NO_CONSTRAINTS, OutputConstraints, validate_output_constraints

logger = get_logger(__name__)

Origin = Literal["direct", "stream", "tool_loop", "exception"]

CORRECTION_TEMPLATE = (
    "Rewrite your previous answer to the same user request.\n"
    "Violation: {reason}.\n"
    "Strict requirements:\n"
    "{instructions}\n"
    "Return only the corrected answer."
)


@dataclass(slots=True)
class RefinementContext:
    user_text: str
    reply: str
    origin: Origin
    constraints: OutputConstraints = NO_CONSTRAINTS
    messages: list[dict[str, Any]] = field(default_factory=list)
    model: str | None = None
    finish_reason: str | None = None
    completion_tokens: int = 0
    max_completion_tokens: int = 1200
    recovery_token_ceiling: int = 2048
    request_timeout_sec: float = 45.0
    provider: CompletionProvider | None = None
    base_reason: str = "empty_reply_after_llm_call"

    @property
    def strict(self) -> bool:
        return self.constraints.enabled


@dataclass(slots=True)
class StrategyResult:
    reply: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    correction_passes: int = 0
    retry: dict[str, Any] | None = None


@dataclass(slots=True)
class RefinementOutcome:
    reply: str
    strategy: str
    fallback_stage: str = ""
    fallback_reason: str = ""
    had_candidate: bool = False
    attempts: list[dict[str, Any]] = field(default_factory=list)
    correction_pass_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    retries: list[dict[str, Any]] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return self.strategy != "passthrough"

    @property
    def corrected(self) -> bool:
        return self.strategy == ConstraintCorrection.name


class Strategy(Protocol):
    name: str
    terminal: bool

    async def attempt(self, ctx: RefinementContext, failure_reason: str) -> StrategyResult | None: ...


@dataclass(frozen=True)
class EmptyReplyRecovery:
    """Retry once with a larger completion cap when an empty reply looks token-starved."""

    name: str = "empty_reply_recovery"
    terminal: bool = False

    async def attempt(self, ctx: RefinementContext, failure_reason: str) -> StrategyResult | None:
        if ctx.provider is None or not ctx.messages:
            return None
        if not should_attempt_empty_reply_recovery(
            reply=ctx.reply,
            finish_reason=ctx.finish_reason,
            completion_tokens=ctx.completion_tokens,
            max_completion_tokens=ctx.max_completion_tokens,
        ):
            return None
        max_tokens = resolve_recovery_max_completion_tokens(ctx.max_completion_tokens, ceiling=ctx.recovery_token_ceiling)
        request = CompletionRequest(messages=list(ctx.messages), model=ctx.model, max_completion_tokens=max_tokens)
        retry = {"stage": self.name, "from_model": ctx.model or "default", "to_model": ctx.model or "default", "reason": failure_reason}
        try:
            result = await asyncio.wait_for(ctx.provider.complete(request), timeout=ctx.request_timeout_sec)
        except Exception as exc:
            logger.warning("empty_reply_recovery_failed", error=str(exc) or exc.__class__.__name__)
            return StrategyResult(reply="", retry=retry)
        return StrategyResult(
            reply=result.reply.strip(),
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            retry=retry,
        )


@dataclass(frozen=True)
class ConstraintCorrection:
    """Ask the model once to rewrite a non-empty reply that breaks the requested format."""

    name: str = "constraint_correction"
    terminal: bool = False

    async def attempt(self, ctx: RefinementContext, failure_reason: str) -> StrategyResult | None:
        if ctx.provider is None or not ctx.reply.strip() or not ctx.constraints.enabled:
            return None
        instruction = CORRECTION_TEMPLATE.format(reason=failure_reason, instructions=ctx.constraints.instructions)
        request = CompletionRequest(
            messages=[
                *ctx.messages,
                {"role": "assistant", "content": ctx.reply},
                {"role": "user", "content": instruction},
            ],
            model=ctx.model,
            max_completion_tokens=ctx.max_completion_tokens,
        )
        retry = {
            "stage": "output_constraint_correction",
            "from_model": ctx.model or "default",
            "to_model": ctx.model or "default",
            "reason": failure_reason,
        }
        try:
            result = await asyncio.wait_for(ctx.provider.complete(request), timeout=ctx.request_timeout_sec)
        except Exception as exc:
            logger.warning("constraint_correction_failed", error=str(exc) or exc.__class__.__name__)
            return StrategyResult(reply="", correction_passes=1, retry=retry)
        return StrategyResult(
            reply=result.reply.strip(),
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            correction_passes=1,
            retry=retry,
        )


@dataclass(frozen=True)
class ConstraintSafeFallback:
    name: str = "constraint_safe_fallback"
    terminal: bool = False

    async def attempt(self, ctx: RefinementContext, failure_reason: str) -> StrategyResult | None:
        return StrategyResult(reply=build_constraint_safe_fallback(ctx.constraints, ctx.user_text, strict=ctx.strict))


@dataclass(frozen=True)
class GenericFallback:
    name: str = "generic_fallback"
    terminal: bool = True

    async def attempt(self, ctx: RefinementContext, failure_reason: str) -> StrategyResult | None:
        return StrategyResult(reply=GENERIC_FALLBACK_REPLY)


DEFAULT_CHAIN: tuple[Strategy, ...] = (
    EmptyReplyRecovery(),
    ConstraintCorrection(),
    ConstraintSafeFallback(),
    GenericFallback(),
)


class RefinementRunner:
    def __init__(self, strategies: tuple[Strategy, ...] = DEFAULT_CHAIN) -> None:
        if not strategies or not strategies[-1].terminal:
            raise ValueError("Refinement chain must end with a terminal strategy.")
        self.strategies = strategies

    def failure_reason(self, ctx: RefinementContext) -> str:
        if not ctx.reply.strip():
            return build_empty_reply_failure_reason(
                ctx.base_reason,
                finish_reason=ctx.finish_reason,
                completion_tokens=ctx.completion_tokens,
                max_completion_tokens=ctx.max_completion_tokens,
            )
        _, reason = validate_output_constraints(ctx.reply, ctx.constraints)
        return reason

    async def refine(self, ctx: RefinementContext) -> RefinementOutcome:
        candidate = ctx.reply.strip()
        ok, _ = validate_output_constraints(candidate, ctx.constraints)
        if candidate and ok:
            return RefinementOutcome(reply=candidate, strategy="passthrough", had_candidate=True)

        reason = self.failure_reason(ctx)
        outcome = RefinementOutcome(reply="", strategy="", fallback_reason=reason, had_candidate=bool(candidate))
        for strategy in self.strategies:
            result = await strategy.attempt(ctx, reason)
            if result is None:
                continue
            outcome.prompt_tokens += result.prompt_tokens
            outcome.completion_tokens += result.completion_tokens
            outcome.correction_pass_count += result.correction_passes
            if result.retry:
                outcome.retries.append(result.retry)

            reply = result.reply.strip()
            valid, violation = validate_output_constraints(reply, ctx.constraints)
            accepted = bool(reply) and (valid or strategy.terminal)
            outcome.attempts.append({"strategy": strategy.name, "accepted": accepted, "violation": violation or None})
            if accepted:
                outcome.reply = reply
                outcome.strategy = strategy.name
                outcome.fallback_stage = f"{ctx.origin}_{strategy.name}"
                logger.info(
                    "reply_refined",
                    strategy=strategy.name,
                    fallback_stage=outcome.fallback_stage,
                    fallback_reason=reason,
                )
                return outcome
        raise RuntimeError("Refinement chain produced no reply.")
