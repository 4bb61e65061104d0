"""Multi-step tool-calling loop with deterministic stop conditions."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from time import monotonic
from typing import Any, Callable, Literal

from src.turnkit.observability import get_logger

from .idempotency import IdempotencyLedger, build_idempotency_key
from .llm_client import CompletionProvider, CompletionRequest, CompletionResult, is_likely_timeout_error
from .settings import PipelineSettings
from .tool_registry import ToolRegistry, ToolResult
from .turn_types import ToolLoopBudget

logger = get_logger(__name__)

LoopState = Literal["requesting", "executing_tools", "finalizing", "done", "aborted"]
StopReason = Literal["final_response", "step_budget_exhausted", "duration_budget_exhausted", "aborted"]

FINALIZE_PROMPT = "Provide the final answer to the user using the tool results above. Keep it concise and actionable."
TOOL_OUTPUT_FALLBACK_PREFIX = "I ran tools but the model returned no final text. Tool output:\n\n"
BUDGET_EXHAUSTED_REPLY = (
    "I hit the tool execution time budget before finalizing the response. Please retry with a narrower request."
)
TOOL_OUTPUT_FALLBACK_MAX_CHARS = 2200
RESULT_PREVIEW_CHARS = 200
STEP_TIMEOUT_FLOOR_SEC = 3.0
TOOL_TIMEOUT_FLOOR_SEC = 1.0


@dataclass(slots=True)
class ToolLoopOutcome:
    reply: str
    state: LoopState
    stop_reason: StopReason
    steps: int = 0
    model: str = ""
    provider: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tool_calls: list[str] = field(default_factory=list)
    tool_executions: list[dict[str, Any]] = field(default_factory=list)
    retries: list[dict[str, Any]] = field(default_factory=list)
    guardrails: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def aborted(self) -> bool:
        return self.state == "aborted"


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Tool arguments must be a JSON object.")
    return parsed


def _tool_name(call: Any) -> str:
    if not isinstance(call, dict):
        return ""
    function = call.get("function") if isinstance(call.get("function"), dict) else {}
    return str(function.get("name") or call.get("name") or "").strip()


class ToolLoopRunner:
    """Run requesting -> executing_tools cycles until a final answer or a budget stops the loop."""

    def __init__(
        self,
        provider: CompletionProvider,
        registry: ToolRegistry,
        *,
        settings: PipelineSettings | None = None,
        idempotency: IdempotencyLedger | None = None,
        fallback_model: str | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._settings = settings or PipelineSettings()
        self._idempotency = idempotency
        self._fallback_model = fallback_model
        self._clock = clock

    def new_budget(self) -> ToolLoopBudget:
        s = self._settings
        return ToolLoopBudget(
            max_steps=s.tool_loop_max_steps,
            max_duration_sec=s.tool_loop_max_duration_sec,
            max_tool_calls_per_step=s.tool_loop_max_tool_calls_per_step,
            tool_exec_timeout_sec=s.tool_loop_tool_exec_timeout_sec,
            request_timeout_sec=s.tool_loop_request_timeout_sec,
            recovery_timeout_sec=s.tool_loop_recovery_timeout_sec,
            clock=self._clock,
        )

    async def _request(self, request: CompletionRequest, timeout_sec: float) -> CompletionResult:
        return await asyncio.wait_for(self._provider.complete(request), timeout=timeout_sec)

    async def _execute_call(
        self,
        call: Any,
        *,
        budget: ToolLoopBudget,
        guardrails: dict[str, Any],
        conversation_id: str,
        user_context_id: str,
    ) -> tuple[str, dict[str, Any]]:
        name = _tool_name(call) or "unknown"
        started = monotonic()
        record: dict[str, Any] = {"name": name, "status": "ok", "duration_ms": 0, "error": None, "result_preview": ""}

        def _finish(content: str, status: str, error: str | None) -> tuple[str, dict[str, Any]]:
            record["status"] = status
            record["error"] = error
            record["duration_ms"] = int((monotonic() - started) * 1000)
            record["result_preview"] = content[:RESULT_PREVIEW_CHARS] if status == "ok" else ""
            return content, record

        if not isinstance(call, dict) or not _tool_name(call):
            return _finish("Tool execution failed: malformed tool call", "error", "malformed_tool_call")

        if self._settings.enforce_tool_capabilities and not self._registry.allowed(name):
            payload = {"ok": False, "tool_name": name, "error": "blocked: missing capability", "source": "tool_loop"}
            return _finish(json.dumps(payload), "blocked", f"capability_blocked:{name}")

        try:
            function = call.get("function") if isinstance(call.get("function"), dict) else {}
            arguments = _parse_arguments(function.get("arguments"))
        except (json.JSONDecodeError, ValueError) as exc:
            return _finish(f"Tool execution failed: invalid arguments ({exc})", "error", str(exc))

        timeout_sec = budget.resolve_timeout(budget.tool_exec_timeout_sec, TOOL_TIMEOUT_FLOOR_SEC)
        if timeout_sec <= 0:
            return _finish("Tool execution failed: tool loop execution budget exhausted", "error", "budget_exhausted")

        async def _run() -> ToolResult:
            return await asyncio.wait_for(self._registry.execute(name, arguments), timeout=timeout_sec)

        try:
            if self._idempotency is not None and self._registry.is_side_effecting(name):
                scope = f"tool:{conversation_id or 'default'}"
                seed = f"{name}|{json.dumps(arguments, sort_keys=True, default=str)}"
                claim, result = await self._idempotency.run_once(
                    build_idempotency_key(scope, seed), scope, _run, user_context_id=user_context_id
                )
                if not claim.accepted and not isinstance(result, ToolResult):
                    if claim.status == "failed":
                        error = f"previous identical {name} call failed"
                        return _finish(f"Tool execution failed: {error}", "error", "idempotency_failed")
                    message = f"Tool execution failed: {name} is already running; retry in {claim.retry_after_sec}s"
                    return _finish(message, "error", "idempotency_pending")
            else:
                result = await _run()
        except Exception as exc:
            if is_likely_timeout_error(exc, self._settings.timeout_error_patterns):
                guardrails["tool_execution_timeouts"] += 1
                error = f"Tool {name} timed out after {timeout_sec:.1f}s"
            else:
                error = str(exc) or exc.__class__.__name__
            logger.warning("tool_execution_failed", tool=name, error=error)
            return _finish(f"Tool execution failed: {error}", "error", error)

        if result.is_error:
            error = str(result.payload.get("error") or "tool returned an error")
            return _finish(f"Tool execution failed: {error}", "error", error)
        return _finish(result.content, "ok", None)

    async def run(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        max_completion_tokens: int | None = None,
        conversation_id: str = "",
        user_context_id: str = "",
        budget: ToolLoopBudget | None = None,
    ) -> ToolLoopOutcome:
        budget = budget or self.new_budget()
        loop_messages = list(messages)
        tools = self._registry.openai_tool_schemas()
        guardrails: dict[str, Any] = {
            "max_duration_sec": budget.max_duration_sec,
            "request_timeout_sec": budget.request_timeout_sec,
            "tool_exec_timeout_sec": budget.tool_exec_timeout_sec,
            "recovery_timeout_sec": budget.recovery_timeout_sec,
            "max_tool_calls_per_step": budget.max_tool_calls_per_step,
            "budget_exhausted": False,
            "step_timeouts": 0,
            "tool_execution_timeouts": 0,
            "recovery_budget_exhausted": False,
            "capped_tool_calls": 0,
        }
        outcome = ToolLoopOutcome(reply="", state="requesting", stop_reason="step_budget_exhausted", guardrails=guardrails)
        active_model = model
        used_fallback = False
        tool_outputs: list[str] = []

        def _budget_hit() -> None:
            guardrails["budget_exhausted"] = True
            outcome.stop_reason = "duration_budget_exhausted"
            outcome.state = "finalizing"

        while outcome.state == "requesting":
            if budget.steps_exhausted():
                outcome.stop_reason = "step_budget_exhausted"
                outcome.state = "finalizing"
                break
            step_timeout = budget.resolve_timeout(budget.request_timeout_sec, STEP_TIMEOUT_FLOOR_SEC)
            if budget.is_exhausted() or step_timeout <= 0:
                _budget_hit()
                break

            budget.record_step()
            outcome.steps = budget.steps_taken
            request = CompletionRequest(
                messages=loop_messages, model=active_model, tools=tools, max_completion_tokens=max_completion_tokens
            )
            try:
                completion = await self._request(request, step_timeout)
            except Exception as primary_exc:
                completion = None
                failure: Exception = primary_exc
                if not used_fallback and self._fallback_model and self._fallback_model != active_model:
                    used_fallback = True
                    outcome.retries.append(
                        {
                            "stage": "tool_loop_completion",
                            "from_model": active_model or "default",
                            "to_model": self._fallback_model,
                            "reason": "primary_failed",
                        }
                    )
                    logger.warning("tool_loop_primary_failed", model=active_model, fallback=self._fallback_model)
                    active_model = self._fallback_model
                    retry_timeout = budget.resolve_timeout(budget.request_timeout_sec, STEP_TIMEOUT_FLOOR_SEC)
                    if retry_timeout > 0:
                        try:
                            completion = await self._request(request.with_model(active_model), retry_timeout)
                        except Exception as fallback_exc:
                            failure = fallback_exc
                if completion is None:
                    if is_likely_timeout_error(failure, self._settings.timeout_error_patterns):
                        guardrails["step_timeouts"] += 1
                    logger.warning("tool_loop_aborted", error=str(failure), steps=outcome.steps)
                    outcome.state = "aborted"
                    outcome.stop_reason = "aborted"
                    outcome.error = str(failure) or failure.__class__.__name__
                    break

            outcome.prompt_tokens += completion.prompt_tokens
            outcome.completion_tokens += completion.completion_tokens
            outcome.model = completion.model
            outcome.provider = completion.provider

            if not completion.tool_calls:
                outcome.reply = completion.reply.strip()
                outcome.stop_reason = "final_response"
                outcome.state = "finalizing"
                break

            outcome.state = "executing_tools"
            capped, dropped = budget.cap_tool_calls(completion.tool_calls)
            if dropped:
                guardrails["capped_tool_calls"] += dropped
                logger.info("tool_calls_capped", requested=len(completion.tool_calls), cap=len(capped))
            # Malformed entries get an error record but never reach the next request.
            well_formed = [call for call in capped if isinstance(call, dict) and _tool_name(call)]
            assistant_message: dict[str, Any] = {"role": "assistant", "content": completion.reply or ""}
            if well_formed:
                assistant_message["tool_calls"] = well_formed
            loop_messages.append(assistant_message)

            for call in capped:
                if budget.is_exhausted():
                    _budget_hit()
                    break
                name = _tool_name(call) or "unknown"
                outcome.tool_calls.append(name)
                content, record = await self._execute_call(
                    call,
                    budget=budget,
                    guardrails=guardrails,
                    conversation_id=conversation_id,
                    user_context_id=user_context_id,
                )
                outcome.tool_executions.append(record)
                if record["status"] == "ok" and content.strip():
                    tool_outputs.append(content)
                if record["error"] != "malformed_tool_call":
                    loop_messages.append({"role": "tool", "tool_call_id": call.get("id") or name, "content": content})

            if outcome.state == "executing_tools":
                outcome.state = "requesting"

        if outcome.state == "aborted":
            return outcome

        if not outcome.reply:
            outcome.reply = await self._finalize(loop_messages, outcome, budget, active_model, max_completion_tokens)
        if not outcome.reply and tool_outputs:
            outcome.reply = f"{TOOL_OUTPUT_FALLBACK_PREFIX}{tool_outputs[-1][:TOOL_OUTPUT_FALLBACK_MAX_CHARS]}"
        if not outcome.reply and outcome.stop_reason != "final_response":
            outcome.reply = BUDGET_EXHAUSTED_REPLY
        outcome.state = "done"
        return outcome

    async def _finalize(
        self,
        loop_messages: list[dict[str, Any]],
        outcome: ToolLoopOutcome,
        budget: ToolLoopBudget,
        model: str | None,
        max_completion_tokens: int | None,
    ) -> str:
        if outcome.steps == 0:
            return ""
        timeout_sec = budget.resolve_timeout(budget.recovery_timeout_sec, TOOL_TIMEOUT_FLOOR_SEC)
        if timeout_sec <= 0:
            outcome.guardrails["recovery_budget_exhausted"] = True
            return ""
        request = CompletionRequest(
            messages=[*loop_messages, {"role": "user", "content": FINALIZE_PROMPT}],
            model=model,
            max_completion_tokens=max_completion_tokens,
        )
        try:
            completion = await self._request(request, timeout_sec)
        except Exception as exc:
            logger.warning("tool_loop_finalize_failed", error=str(exc) or exc.__class__.__name__)
            return ""
        outcome.prompt_tokens += completion.prompt_tokens
        outcome.completion_tokens += completion.completion_tokens
        return completion.reply.strip()
