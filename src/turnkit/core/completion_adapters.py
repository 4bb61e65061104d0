"""Direct, streaming and tool-calling completion shapes behind one `complete` contract."""

from __future__ import annotations

import asyncio
from typing import Any

from src.turnkit.observability import get_logger

from .event_bus import AssistantStream
from .llm_client import CompletionProvider, CompletionRequest, CompletionResult
from .providers import ProviderError
from .tool_loop import ToolLoopOutcome, ToolLoopRunner

logger = get_logger(__name__)

DEFAULT_REQUEST_TIMEOUT_SEC = 45.0


def as_provider_error(exc: BaseException) -> ProviderError:
    """Normalize any provider-side failure so callers only handle `ProviderError`."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ProviderError("Provider request timed out.", code="timeout")
    return ProviderError(str(exc) or exc.__class__.__name__, code="provider_error")


def _retry_entry(stage: str, from_model: str | None, to_model: str) -> dict[str, Any]:
    return {"stage": stage, "from_model": from_model or "default", "to_model": to_model, "reason": "primary_failed"}


class DirectCompletionAdapter:
    """Single-shot completion with one retry on the fallback model."""

    stage = "direct_completion"

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        fallback_model: str | None = None,
        timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC,
    ) -> None:
        self.provider = provider
        self.fallback_model = fallback_model
        self.timeout_sec = timeout_sec

    async def _attempt(self, request: CompletionRequest) -> CompletionResult:
        timeout = request.timeout_sec or self.timeout_sec
        try:
            return await asyncio.wait_for(self.provider.complete(request), timeout=timeout)
        except Exception as exc:
            raise as_provider_error(exc) from exc

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        try:
            return await self._attempt(request)
        except ProviderError as primary:
            if not self.fallback_model or self.fallback_model == request.model:
                raise
            logger.warning(
                "completion_primary_failed",
                stage=self.stage,
                model=request.model,
                fallback=self.fallback_model,
                code=primary.code,
            )
            result = await self._attempt(request.with_model(self.fallback_model))
            result.retries.insert(0, _retry_entry(self.stage, request.model, self.fallback_model))
            return result


class StreamingCompletionAdapter:
    """Streams deltas through an `AssistantStream`.

    The fallback model is tried only when the primary failed before emitting a
    delta; a failure mid-stream keeps the partial text and is surfaced to the caller.
    `done` is left to the caller so it can carry the refined reply.
    """

    stage = "stream_completion"

    def __init__(
        self,
        provider: CompletionProvider,
        stream: AssistantStream,
        *,
        fallback_model: str | None = None,
        timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC,
    ) -> None:
        self.provider = provider
        self.stream = stream
        self.fallback_model = fallback_model
        self.timeout_sec = timeout_sec

    async def _consume(self, request: CompletionRequest) -> CompletionResult:
        final: dict[str, Any] = {}
        chunks: list[str] = []

        async def _drain() -> None:
            async for chunk in self.provider.stream(request):
                delta = chunk.get("delta")
                if isinstance(delta, str):
                    if delta:
                        chunks.append(delta)
                        await self.stream.delta(delta)
                    continue
                final.update(chunk)

        timeout = request.timeout_sec or self.timeout_sec
        try:
            await asyncio.wait_for(_drain(), timeout=timeout)
        except Exception as exc:
            raise as_provider_error(exc) from exc
        return CompletionResult(
            reply="".join(chunks).strip(),
            model=str(final.get("model") or request.model or ""),
            provider=str(final.get("provider") or ""),
            prompt_tokens=int(final.get("prompt_tokens") or 0),
            completion_tokens=int(final.get("completion_tokens") or 0),
            finish_reason=final.get("finish_reason"),
        )

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        if self.stream.state == "idle":
            await self.stream.start()
        try:
            return await self._consume(request)
        except ProviderError as primary:
            emitted = self.stream.delta_count > 0
            if emitted or not self.fallback_model or self.fallback_model == request.model:
                raise
            logger.warning(
                "completion_primary_failed",
                stage=self.stage,
                model=request.model,
                fallback=self.fallback_model,
                code=primary.code,
            )
            result = await self._consume(request.with_model(self.fallback_model))
            result.retries.insert(0, _retry_entry(self.stage, request.model, self.fallback_model))
            return result


class ToolCallingAdapter:
    """Delegates to the tool loop; an aborted loop comes back as an empty reply."""

    stage = "tool_loop_completion"

    def __init__(self, runner: ToolLoopRunner, *, conversation_id: str = "", user_context_id: str = "") -> None:
        self.runner = runner
        self.conversation_id = conversation_id
        self.user_context_id = user_context_id
        self.last_outcome: ToolLoopOutcome | None = None

    async def run(self, request: CompletionRequest) -> ToolLoopOutcome:
        outcome = await self.runner.run(
            request.messages,
            model=request.model,
            max_completion_tokens=request.max_completion_tokens,
            conversation_id=self.conversation_id,
            user_context_id=self.user_context_id,
        )
        self.last_outcome = outcome
        return outcome

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        outcome = await self.run(request)
        return CompletionResult(
            reply="" if outcome.aborted else outcome.reply,
            model=outcome.model or request.model or "",
            provider=outcome.provider,
            prompt_tokens=outcome.prompt_tokens,
            completion_tokens=outcome.completion_tokens,
            finish_reason="aborted" if outcome.aborted else outcome.stop_reason,
            retries=list(outcome.retries),
            attempts_used=max(1, outcome.steps),
        )
