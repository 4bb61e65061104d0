"""Turn orchestration: dedupe gate, fast paths, LLM adapters, refinement, events and persistence."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from time import monotonic
from typing import Any, Awaitable, Callable

from structlog.contextvars import bound_contextvars

from src.turnkit.observability import get_logger

from .completion_adapters import DirectCompletionAdapter, StreamingCompletionAdapter, ToolCallingAdapter
from .dedupe import DeliveryLedger, InboundDedupe
from .event_bus import AssistantStream, EventBus, LifecycleEvent
from .fast_path import FastPathRouter, PendingConfirmStore
from .idempotency import IdempotencyLedger
from .latency_policy import build_execution_policy
from .llm_client import CompletionProvider, CompletionRequest
from .output_constraints import OutputConstraints, parse_output_constraints
from .prompt_builder import PromptBuilder, PromptSection
from .providers import ProviderError
from .refinement import Origin, RefinementContext, RefinementRunner
from .session_store import TranscriptStore
from .settings import PipelineSettings
from .token_estimator import TokenEstimator
from .tool_loop import ToolLoopRunner
from .tool_registry import ToolRegistry
from .turn_types import DeliveryKey, ExecutionPolicy, FastPathResult, RunSummary, Turn, TurnResult

logger = get_logger(__name__)

MemoryRecall = Callable[[Turn], Awaitable[str]]

WEB_SEARCH_TOOL = "web_search"
WEB_CONTEXT_MAX_CHARS = 4000
DEFAULT_RECENT_RUNS = 50


def _elapsed_ms(started: float) -> int:
    return int((monotonic() - started) * 1000)


class TurnPipeline:
    """Produces exactly one reply per accepted turn.

    Owns every piece of shared turn state (dedupe, idempotency and delivery
    ledgers, pending weather confirmations, the weather reply cache) so two
    pipelines never share it.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        registry: ToolRegistry,
        *,
        settings: PipelineSettings | None = None,
        store: TranscriptStore | None = None,
        bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        refinement: RefinementRunner | None = None,
        estimator: TokenEstimator | None = None,
        memory_recall: MemoryRecall | None = None,
        fast_path: FastPathRouter | None = None,
        assistant_name: str = "",
        recent_runs_limit: int = DEFAULT_RECENT_RUNS,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.settings = settings or PipelineSettings()
        s = self.settings
        self.provider = provider
        self.registry = registry
        self.store = store
        self.bus = bus or EventBus()
        self.default_model = default_model
        self.fallback_model = fallback_model
        self.assistant_name = assistant_name
        self.memory_recall = memory_recall

        self.dedupe = InboundDedupe(window_sec=s.inbound_dedupe_window_sec, clock=clock)
        self.idempotency = IdempotencyLedger(
            pending_ttl_sec=s.idempotency_pending_ttl_sec,
            result_ttl_sec=s.idempotency_result_ttl_sec,
        )
        self.deliveries = DeliveryLedger(ttl_sec=s.delivery_ttl_sec, clock=clock)
        self.fast_path = fast_path or FastPathRouter(
            registry,
            settings=s,
            pending=PendingConfirmStore(ttl_sec=s.weather_confirm_ttl_sec, clock=clock),
        )
        self.prompt_builder = PromptBuilder(s, estimator=estimator)
        self.tool_loop = ToolLoopRunner(
            provider,
            registry,
            settings=s,
            idempotency=self.idempotency,
            fallback_model=fallback_model,
            clock=clock,
        )
        self.refiner = refinement or RefinementRunner()

        self._background: set[asyncio.Task[None]] = set()
        self._inflight: set[asyncio.Task[TurnResult]] = set()
        self._recent_runs: deque[dict[str, Any]] = deque(maxlen=max(1, recent_runs_limit))

    async def execute_turn(self, turn: Turn) -> TurnResult:
        if self.dedupe.check_and_record(turn):
            logger.info("turn_duplicate_skipped", turn_id=turn.turn_id, session_key=turn.session_key)
            return TurnResult(ok=False, reply="", route="duplicate_skipped", turn_id=turn.turn_id, duplicate=True)

        with bound_contextvars(turn_id=turn.turn_id, session_key=turn.session_key):
            return await self._execute(turn)

    def start_turn(self, turn: Turn) -> asyncio.Task[TurnResult]:
        """Run `execute_turn` on a task the pipeline holds until it finishes, even if the caller goes away."""
        task = asyncio.get_running_loop().create_task(self.execute_turn(turn))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def deliver_output(
        self,
        key: DeliveryKey | str,
        conversation_id: str,
        text: str,
        *,
        user_context_id: str = "",
    ) -> dict[str, Any]:
        """Post a generated output into a conversation at most once per delivery key."""
        body = (text or "").strip()
        conversation = (conversation_id or "").strip()
        if not body:
            return {"ok": False, "error": "Delivery text must be non-empty."}
        if not conversation:
            return {"ok": False, "error": "conversation_id is required."}
        key_str = key.as_string() if isinstance(key, DeliveryKey) else str(key)
        if not self.deliveries.claim_delivery(key_str, conversation):
            logger.info("delivery_duplicate_skipped", delivery_key=key_str, conversation_id=conversation)
            return {"ok": True, "delivered": False, "delivery_key": key_str, "reason": "duplicate_delivery"}

        stream = self.bus.stream(conversation_id=conversation, user_context_id=user_context_id)
        try:
            await stream.start()
            await stream.delta(body)
        finally:
            await stream.done(reply=body, meta={"delivery_key": key_str})
        await self.bus.publish(
            LifecycleEvent(
                type="delivery",
                stream_id=stream.stream_id,
                conversation_id=conversation,
                user_context_id=user_context_id,
                payload={"delivery_key": key_str, "text": body},
            )
        )
        if self.store is not None:
            self._spawn(
                "delivery_transcript",
                self.store.append_transcript_turn,
                conversation,
                "assistant",
                body,
                {"delivery_key": key_str, "route": "delivery"},
            )
        logger.info("delivery_posted", delivery_key=key_str, conversation_id=conversation)
        return {"ok": True, "delivered": True, "delivery_key": key_str, "stream_id": stream.stream_id}

    async def reset_session(self, session_key: str) -> dict[str, Any]:
        key = (session_key or "").strip() or "default"
        dedupe_cleared = self.dedupe.forget_session(key)
        pending_cleared = self.fast_path.pending.clear(key)
        transcript_cleared = False
        if self.store is not None:
            transcript_cleared = await asyncio.to_thread(self.store.reset, key)
        logger.info("session_reset", session_key=key, transcript_cleared=transcript_cleared)
        return {
            "ok": True,
            "session_key": key,
            "dedupe_entries_cleared": dedupe_cleared,
            "pending_confirmation_cleared": pending_cleared,
            "transcript_cleared": transcript_cleared,
        }

    def recent_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self._recent_runs)[-limit:]

    @property
    def pending_writes(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for in-flight turns and their transcript and usage writes."""
        while self._inflight or self._background:
            await asyncio.gather(*list(self._inflight), *list(self._background), return_exceptions=True)

    def stats(self) -> dict[str, Any]:
        return {
            "dedupe_entries": len(self.dedupe),
            "idempotency_records": len(self.idempotency),
            "pending_writes": self.pending_writes,
            "inflight_turns": len(self._inflight),
            "recent_runs": len(self._recent_runs),
            "event_subscribers": self.bus.subscriber_count,
        }

    async def _execute(self, turn: Turn) -> TurnResult:
        started = monotonic()
        text = turn.cleaned_text
        constraints = parse_output_constraints(text)
        summary = RunSummary(
            turn_id=turn.turn_id,
            session_key=turn.session_key,
            user_context_id=turn.user_context_id,
            conversation_id=turn.conversation_id,
            source=turn.source,
            route="chat",
        )
        summary.request_hints.update(turn.hints)
        summary.request_hints["output_constraints"] = constraints.to_dict()
        stream = self.bus.stream(conversation_id=turn.conversation_id, user_context_id=turn.user_context_id)
        state: dict[str, Any] = {"route": "llm"}
        reply = ""

        try:
            reply = await self._resolve_reply(turn, text, constraints, summary, stream, state)
        except Exception as exc:
            if isinstance(exc, ProviderError):
                logger.warning("turn_failed", error=str(exc), code=exc.code, status=exc.status)
            else:
                logger.exception("turn_failed", error=str(exc) or exc.__class__.__name__)
            summary.error = str(exc) or exc.__class__.__name__
            state["route"] = f"{state['route']}_error_recovered"
            base_reason = exc.code if isinstance(exc, ProviderError) else "request_error"
            outcome = await self.refiner.refine(
                RefinementContext(
                    user_text=text,
                    reply="",
                    origin="exception",
                    constraints=constraints,
                    base_reason=base_reason,
                )
            )
            summary.mark_fallback(stage=outcome.fallback_stage, reason=outcome.fallback_reason, had_candidate=False)
            reply = outcome.reply
        finally:
            summary.response_route = state["route"]
            if reply.strip():
                summary.complete(reply)
            summary.latency_ms = _elapsed_ms(started)
            await self._close_stream(stream, reply, summary)

        snapshot = summary.snapshot()
        self._recent_runs.append(snapshot)
        await self.bus.publish(
            LifecycleEvent(
                type="turn_summary",
                stream_id=stream.stream_id,
                conversation_id=turn.conversation_id,
                user_context_id=turn.user_context_id,
                payload=snapshot,
            )
        )
        self._persist(turn, text, reply, summary)
        logger.info(
            "turn_completed",
            route=summary.response_route,
            model=summary.model,
            prompt_tokens=summary.prompt_tokens,
            completion_tokens=summary.completion_tokens,
            latency_ms=summary.latency_ms,
            fallback_stage=summary.fallback_stage or None,
        )
        return TurnResult(
            ok=summary.ok,
            reply=reply,
            route=summary.response_route,
            turn_id=turn.turn_id,
            summary=snapshot,
        )

    async def _resolve_reply(
        self,
        turn: Turn,
        text: str,
        constraints: OutputConstraints,
        summary: RunSummary,
        stream: AssistantStream,
        state: dict[str, Any],
    ) -> str:
        stage_started = monotonic()
        fast = await self.fast_path.run(turn)
        summary.add_stage("fast_path", _elapsed_ms(stage_started))
        if fast is not None:
            return self._apply_fast_path(fast, summary, state)

        policy = build_execution_policy(
            text,
            settings=self.settings,
            available_tools=self._available_tools(),
            constraints=constraints,
            weather_intent=self.fast_path.is_weather_turn(text),
            crypto_intent=self.fast_path.is_crypto_turn(text),
            has_memory_recall=self.memory_recall is not None,
            assistant_name=self.assistant_name,
        )
        summary.can_run_tool_loop = policy.can_run_tool_loop
        summary.request_hints["policy"] = policy.to_dict()

        stage_started = monotonic()
        messages = await self._build_messages(turn, text, policy, summary)
        summary.add_stage("prompt_build", _elapsed_ms(stage_started))

        request = CompletionRequest(
            messages=messages,
            model=self.default_model,
            max_completion_tokens=policy.max_completion_tokens,
            timeout_sec=self.settings.request_timeout_sec,
        )
        origin: Origin
        base_reason = "empty_reply_after_llm_call"
        stage_started = monotonic()
        if policy.can_run_tool_loop:
            origin = "tool_loop"
            state["route"] = "tool_loop"
            adapter = ToolCallingAdapter(
                self.tool_loop, conversation_id=turn.conversation_id, user_context_id=turn.user_context_id
            )
            loop = await adapter.run(request)
            summary.tool_calls.extend(loop.tool_calls)
            summary.tool_executions.extend(loop.tool_executions)
            summary.tool_loop_guardrails = dict(loop.guardrails)
            if loop.aborted:
                summary.error = loop.error
                base_reason = "tool_loop_aborted"
            result_reply, finish_reason = ("" if loop.aborted else loop.reply), loop.stop_reason
            result_model, result_provider = loop.model, loop.provider
            usage = (loop.prompt_tokens, loop.completion_tokens)
            retries = loop.retries
            completion_tokens = loop.completion_tokens
        else:
            if policy.strict_output:
                origin = "direct"
                state["route"] = "direct_constraints"
                completion_adapter: DirectCompletionAdapter | StreamingCompletionAdapter = DirectCompletionAdapter(
                    self.provider, fallback_model=self.fallback_model, timeout_sec=self.settings.request_timeout_sec
                )
            else:
                origin = "stream"
                state["route"] = "stream"
                completion_adapter = StreamingCompletionAdapter(
                    self.provider, stream, fallback_model=self.fallback_model, timeout_sec=self.settings.request_timeout_sec
                )
            result = await completion_adapter.complete(request)
            result_reply, finish_reason = result.reply, result.finish_reason
            result_model, result_provider = result.model, result.provider
            usage = (result.prompt_tokens, result.completion_tokens)
            retries = result.retries
            completion_tokens = result.completion_tokens
        summary.add_stage("llm_generation", _elapsed_ms(stage_started))

        summary.model = result_model or summary.model
        summary.provider = result_provider or summary.provider
        summary.add_usage(*usage)
        summary.retries.extend(retries)

        stage_started = monotonic()
        outcome = await self.refiner.refine(
            RefinementContext(
                user_text=text,
                reply=result_reply,
                origin=origin,
                constraints=constraints,
                messages=messages,
                model=result_model or self.default_model,
                finish_reason=finish_reason,
                completion_tokens=completion_tokens,
                max_completion_tokens=policy.max_completion_tokens,
                recovery_token_ceiling=self.settings.tool_loop_max_completion_tokens,
                request_timeout_sec=self.settings.request_timeout_sec,
                provider=self.provider,
                base_reason=base_reason,
            )
        )
        summary.add_stage("refinement", _elapsed_ms(stage_started))
        summary.add_usage(outcome.prompt_tokens, outcome.completion_tokens)
        summary.retries.extend(outcome.retries)
        summary.correction_pass_count += outcome.correction_pass_count
        if outcome.used_fallback:
            summary.mark_fallback(
                stage=outcome.fallback_stage, reason=outcome.fallback_reason, had_candidate=outcome.had_candidate
            )
            suffix = "constraint_corrected" if outcome.corrected else outcome.strategy
            state["route"] = f"{state['route']}_{suffix}"
        return outcome.reply

    def _apply_fast_path(self, fast: FastPathResult, summary: RunSummary, state: dict[str, Any]) -> str:
        state["route"] = fast.route
        summary.request_hints["fast_path_source"] = fast.source
        if fast.needs_confirmation:
            summary.request_hints["awaiting_confirmation"] = fast.suggested_location
        if fast.tool_call:
            summary.tool_calls.append(fast.tool_call)
        return fast.reply

    def _available_tools(self) -> list[str]:
        names = self.registry.names()
        if self.settings.enforce_tool_capabilities:
            return [name for name in names if self.registry.allowed(name)]
        return names

    async def _build_messages(
        self,
        turn: Turn,
        text: str,
        policy: ExecutionPolicy,
        summary: RunSummary,
    ) -> list[dict[str, Any]]:
        history: list[dict[str, Any]] = []
        if self.store is not None and self.settings.history_turn_limit > 0:
            history = await asyncio.to_thread(
                self.store.load_history, turn.session_key, limit=self.settings.history_turn_limit
            )

        memory_hints = ""
        recall = self.memory_recall
        if policy.should_attempt_memory_recall and recall is not None:
            memory_hints = await self._recall_memory(recall, turn)
            summary.memory_recall_used = bool(memory_hints.strip())

        sections: list[PromptSection] = []
        if policy.should_preload_web_search:
            web_context = await self._preload_web_context(text)
            if web_context:
                sections.append(PromptSection(title="Live Web Context", body=web_context))
                summary.web_search_preload_used = True

        built = self.prompt_builder.build(text, history=history, memory_hints=memory_hints, sections=sections)
        summary.prompt_hash = built.prompt_hash
        summary.request_hints["prompt"] = built.to_dict()
        return built.messages

    async def _recall_memory(self, recall: MemoryRecall, turn: Turn) -> str:
        try:
            hints = await asyncio.wait_for(recall(turn), timeout=self.settings.memory_recall_timeout_sec)
        except Exception as exc:
            logger.info("memory_recall_skipped", error=str(exc) or exc.__class__.__name__)
            return ""
        return hints if isinstance(hints, str) else ""

    async def _preload_web_context(self, text: str) -> str:
        try:
            payload = await asyncio.wait_for(
                self.registry.invoke(WEB_SEARCH_TOOL, query=text), timeout=self.settings.web_preload_timeout_sec
            )
        except Exception as exc:
            logger.info("web_preload_skipped", error=str(exc) or exc.__class__.__name__)
            return ""
        if payload.get("ok") is False:
            logger.info("web_preload_skipped", error=payload.get("error"))
            return ""
        results = payload.get("results", payload)
        return json.dumps(results, ensure_ascii=False, default=str)[:WEB_CONTEXT_MAX_CHARS]

    async def _close_stream(self, stream: AssistantStream, reply: str, summary: RunSummary) -> None:
        if stream.state == "idle":
            await stream.start()
        if stream.delta_count == 0 and reply:
            await stream.delta(reply)
        await stream.done(
            reply=reply,
            meta={"turn_id": summary.turn_id, "route": summary.response_route, "ok": summary.ok},
        )

    def _spawn(self, label: str, fn: Callable[..., Any], *args: Any) -> None:
        async def _write() -> None:
            try:
                await asyncio.to_thread(fn, *args)
            except Exception as exc:
                logger.warning("background_write_failed", write=label, error=str(exc) or exc.__class__.__name__)

        task = asyncio.get_running_loop().create_task(_write())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _persist(self, turn: Turn, text: str, reply: str, summary: RunSummary) -> None:
        if self.store is None:
            return
        store = self.store
        route = summary.response_route

        # One write keeps the user row ahead of the assistant row.
        def _append_exchange() -> None:
            store.append_transcript_turn(turn.session_key, "user", text, {"turn_id": turn.turn_id, "source": turn.source})
            if reply.strip():
                store.append_transcript_turn(
                    turn.session_key, "assistant", reply, {"turn_id": turn.turn_id, "route": route}
                )

        self._spawn("transcript", _append_exchange)
        if summary.total_tokens > 0:
            self._spawn(
                "usage",
                self.store.persist_usage,
                summary.model,
                summary.prompt_tokens,
                summary.completion_tokens,
            )
