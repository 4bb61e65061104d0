"""Core schemas for turn execution."""

from __future__ import annotations

import copy
import hashlib
import re
from dataclasses import asdict, dataclass, field
from time import monotonic, time
from typing import Any, Callable, Literal

Lane = Literal["fast", "default"]
IdempotencyStatus = Literal["pending", "completed", "failed"]
Clock = Callable[[], float]

_WHITESPACE_RE = re.compile(r"\s+")


def clean_turn_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text.replace("\r\n", "\n")).strip()


def derive_turn_id(*, session_key: str, text: str, received_at: float, bucket_sec: float = 10.0) -> str:
    """Stable id for a turn: same text in the same session and time bucket hashes the same."""
    bucket = int(received_at // max(1.0, bucket_sec))
    seed = f"{session_key}|{clean_turn_text(text).lower()}|{bucket}"
    return f"turn_{hashlib.sha256(seed.encode('utf-8')).hexdigest()[:24]}"


@dataclass(slots=True)
class Turn:
    """One inbound user message."""

    text: str
    session_key: str = "default"
    user_context_id: str = ""
    conversation_id: str = ""
    source: str = "chat"
    hints: dict[str, Any] = field(default_factory=dict)
    raw_text: str = ""
    received_at: float = field(default_factory=time)
    bucket_sec: float = 10.0
    turn_id: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.text, str):
            raise ValueError("Turn.text must be a string.")
        self.session_key = (self.session_key or "").strip() or "default"
        self.user_context_id = (self.user_context_id or "").strip()
        self.conversation_id = (self.conversation_id or "").strip() or self.session_key
        self.source = (self.source or "").strip() or "chat"
        if not self.raw_text:
            self.raw_text = self.text
        if not self.turn_id:
            self.turn_id = derive_turn_id(
                session_key=self.session_key,
                text=self.text,
                received_at=self.received_at,
                bucket_sec=self.bucket_sec,
            )

    @property
    def cleaned_text(self) -> str:
        return clean_turn_text(self.text)

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "session_key": self.session_key,
            "user_context_id": self.user_context_id,
            "conversation_id": self.conversation_id,
            "source": self.source,
            "hints": self.hints,
            "raw_text": self.raw_text,
            "cleaned_text": self.cleaned_text,
            "received_at": self.received_at,
        }


@dataclass(frozen=True, slots=True)
class ExecutionPolicy:
    """Routing decisions computed once per turn."""

    fast_lane: bool = False
    weather_intent: bool = False
    crypto_intent: bool = False
    tool_loop_candidate: bool = False
    can_run_tool_loop: bool = False
    can_run_web_search: bool = False
    should_preload_web_search: bool = False
    should_attempt_memory_recall: bool = False
    strict_output: bool = False
    max_completion_tokens: int = 1200

    @property
    def lane(self) -> Lane:
        return "fast" if self.fast_lane else "default"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["lane"] = self.lane
        return payload


class ToolLoopBudget:
    """Step, wall-clock, per-call and per-step bounds for one tool loop."""

    def __init__(
        self,
        *,
        max_steps: int,
        max_duration_sec: float,
        max_tool_calls_per_step: int,
        tool_exec_timeout_sec: float,
        request_timeout_sec: float,
        recovery_timeout_sec: float,
        clock: Clock = monotonic,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if max_duration_sec <= 0:
            raise ValueError("max_duration_sec must be > 0")
        if max_tool_calls_per_step < 1:
            raise ValueError("max_tool_calls_per_step must be >= 1")
        self.max_steps = int(max_steps)
        self.max_duration_sec = float(max_duration_sec)
        self.max_tool_calls_per_step = int(max_tool_calls_per_step)
        self.tool_exec_timeout_sec = float(tool_exec_timeout_sec)
        self.request_timeout_sec = float(request_timeout_sec)
        self.recovery_timeout_sec = float(recovery_timeout_sec)
        self._clock = clock
        self.started_at = clock()
        self.steps_taken = 0

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return self.max_duration_sec - self.elapsed()

    def is_exhausted(self) -> bool:
        return self.remaining() <= 0

    def steps_exhausted(self) -> bool:
        return self.steps_taken >= self.max_steps

    def record_step(self) -> None:
        self.steps_taken += 1

    def resolve_timeout(self, requested_sec: float, minimum_sec: float = 1.0) -> float:
        """Clamp a per-call timeout to the remaining loop time.

        Returns 0 once the loop budget is spent; otherwise never less than `minimum_sec`,
        so one call may overrun the loop budget by at most its own floor.
        """
        remaining = self.remaining()
        if remaining <= 0:
            return 0.0
        return max(minimum_sec, min(requested_sec, remaining))

    def cap_tool_calls(self, calls: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], int]:
        capped = list(calls[: self.max_tool_calls_per_step])
        return capped, max(0, len(calls) - len(capped))

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_steps": self.max_steps,
            "max_duration_sec": self.max_duration_sec,
            "max_tool_calls_per_step": self.max_tool_calls_per_step,
            "tool_exec_timeout_sec": self.tool_exec_timeout_sec,
            "request_timeout_sec": self.request_timeout_sec,
            "recovery_timeout_sec": self.recovery_timeout_sec,
            "steps_taken": self.steps_taken,
            "elapsed_sec": round(self.elapsed(), 3),
        }


@dataclass(slots=True)
class RunSummary:
    """Accumulated record of how one turn was resolved."""

    turn_id: str
    session_key: str
    user_context_id: str = ""
    conversation_id: str = ""
    source: str = "chat"
    route: str = ""
    response_route: str = ""
    ok: bool = False
    provider: str = ""
    model: str = ""
    reply: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: int = 0
    tool_calls: list[str] = field(default_factory=list)
    tool_executions: list[dict[str, Any]] = field(default_factory=list)
    retries: list[dict[str, Any]] = field(default_factory=list)
    request_hints: dict[str, Any] = field(default_factory=dict)
    can_run_tool_loop: bool = False
    memory_recall_used: bool = False
    web_search_preload_used: bool = False
    correction_pass_count: int = 0
    latency_stages: dict[str, int] = field(default_factory=dict)
    prompt_hash: str = ""
    error: str | None = None
    fallback_stage: str = ""
    fallback_reason: str = ""
    had_candidate_before_fallback: bool = False
    tool_loop_guardrails: dict[str, Any] | None = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add_stage(self, name: str, duration_ms: float) -> None:
        self.latency_stages[name] = self.latency_stages.get(name, 0) + max(0, int(duration_ms))

    def add_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        self.prompt_tokens += max(0, int(prompt_tokens))
        self.completion_tokens += max(0, int(completion_tokens))

    def add_retry(self, *, stage: str, from_model: str, to_model: str, reason: str) -> None:
        self.retries.append({"stage": stage, "from_model": from_model, "to_model": to_model, "reason": reason})

    def mark_fallback(self, *, stage: str, reason: str, had_candidate: bool) -> None:
        self.fallback_stage = stage
        self.fallback_reason = reason
        self.had_candidate_before_fallback = had_candidate

    def complete(self, reply: str) -> None:
        if not reply.strip():
            raise ValueError("RunSummary cannot be completed without a reply.")
        self.reply = reply
        self.ok = True

    def snapshot(self) -> dict[str, Any]:
        payload = copy.deepcopy(asdict(self))
        payload["total_tokens"] = self.total_tokens
        return payload


@dataclass(frozen=True, slots=True)
class TurnResult:
    ok: bool
    reply: str
    route: str
    turn_id: str
    duplicate: bool = False
    summary: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "reply": self.reply,
            "route": self.route,
            "turn_id": self.turn_id,
            "duplicate": self.duplicate,
            "summary": copy.deepcopy(self.summary),
        }


@dataclass(slots=True)
class IdempotencyRecord:
    key: str
    scope: str
    user_context_id: str
    status: IdempotencyStatus
    first_seen_at: float
    expires_at: float
    result_ref: Any = None
    updated_at: float = 0.0

    def __post_init__(self) -> None:
        if not self.key.strip():
            raise ValueError("IdempotencyRecord.key must be non-empty.")
        if not self.scope.strip():
            raise ValueError("IdempotencyRecord.scope must be non-empty.")
        if self.status not in {"pending", "completed", "failed"}:
            raise ValueError("IdempotencyRecord.status must be one of: pending, completed, failed.")
        if not self.updated_at:
            self.updated_at = self.first_seen_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "scope": self.scope,
            "user_context_id": self.user_context_id,
            "status": self.status,
            "result_ref": self.result_ref,
            "first_seen_at": self.first_seen_at,
            "expires_at": self.expires_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class ClaimResult:
    accepted: bool
    record: IdempotencyRecord
    retry_after_sec: float | None = None

    @property
    def status(self) -> IdempotencyStatus:
        return self.record.status

    @property
    def result_ref(self) -> Any:
        return self.record.result_ref


@dataclass(frozen=True, slots=True)
class DeliveryKey:
    """Identity of one generated output delivered into a conversation."""

    node_id: str
    output_index: int = 0
    mission_run_id: str = ""
    run_key: str = ""
    schedule_id: str = ""
    channel: str = ""

    def __post_init__(self) -> None:
        if not self.node_id.strip():
            raise ValueError("DeliveryKey.node_id must be non-empty.")
        if not (self.mission_run_id.strip() or self.run_key.strip()):
            raise ValueError("DeliveryKey requires mission_run_id or run_key.")
        if self.output_index < 0:
            raise ValueError("DeliveryKey.output_index must be >= 0.")

    def as_string(self) -> str:
        run = self.mission_run_id.strip() or self.run_key.strip()
        return f"{self.schedule_id.strip()}:{run}:{self.node_id.strip()}:{self.output_index}:{self.channel.strip()}"


@dataclass(frozen=True, slots=True)
class FastPathResult:
    reply: str
    route: str
    source: str
    tool_call: str | None = None
    needs_confirmation: bool = False
    suggested_location: str = ""
