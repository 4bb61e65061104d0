"""Bounded pipeline settings read from the `pipeline` config section."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from .config_loader import get_pipeline_config

DEFAULT_PERSONA = (
    "You are a concise, helpful personal assistant. Answer directly, prefer concrete next steps, "
    "and say so plainly when you are unsure."
)
DEFAULT_TIMEOUT_ERROR_PATTERNS = (
    r"timed?\s*out",
    r"timeout",
    r"\babort(ed)?\b",
    r"deadline exceeded",
)
MAX_PROMPT_TOKENS = 6000
PROMPT_RESPONSE_RESERVE_TOKENS = 1400
PROMPT_CONTEXT_SECTION_MAX_TOKENS = 1000
MIN_INPUT_PROMPT_TOKENS = 480


def _bounded_int(raw: Any, fallback: int, minimum: int, maximum: int) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        return fallback
    try:
        value = int(float(raw))
    except ValueError:
        return fallback
    return max(minimum, min(maximum, value))


def _bounded_float(raw: Any, fallback: float, minimum: float, maximum: float) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    return max(minimum, min(maximum, value))


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    max_prompt_tokens: int = MAX_PROMPT_TOKENS
    prompt_response_reserve_tokens: int = PROMPT_RESPONSE_RESERVE_TOKENS
    prompt_history_target_tokens: int = 1400
    prompt_min_history_tokens: int = 220
    session_max_history_tokens: int = 3200
    prompt_context_section_max_tokens: int = PROMPT_CONTEXT_SECTION_MAX_TOKENS

    tool_loop_enabled: bool = True
    tool_loop_max_steps: int = 6
    tool_loop_request_timeout_sec: float = 14.0
    tool_loop_max_duration_sec: float = 32.0
    tool_loop_tool_exec_timeout_sec: float = 8.0
    tool_loop_recovery_timeout_sec: float = 6.0
    tool_loop_max_tool_calls_per_step: int = 6
    enforce_tool_capabilities: bool = False

    request_timeout_sec: float = 45.0
    default_max_completion_tokens: int = 1200
    fast_lane_max_completion_tokens: int = 700
    strict_max_completion_tokens: int = 900
    tool_loop_max_completion_tokens: int = 2048

    inbound_dedupe_window_sec: float = 8.0
    turn_id_bucket_sec: float = 10.0
    idempotency_pending_ttl_sec: float = 120.0
    idempotency_result_ttl_sec: float = 300.0
    delivery_ttl_sec: float = 86400.0
    weather_confirm_ttl_sec: float = 600.0
    weather_cache_ttl_sec: float = 120.0
    fast_path_tool_timeout_sec: float = 6.0

    memory_recall_timeout_sec: float = 0.45
    web_preload_timeout_sec: float = 0.9
    history_turn_limit: int = 40

    persona: str = DEFAULT_PERSONA
    timeout_error_patterns: tuple[str, ...] = field(default_factory=lambda: DEFAULT_TIMEOUT_ERROR_PATTERNS)

    @property
    def input_prompt_budget(self) -> int:
        return max(MIN_INPUT_PROMPT_TOKENS, self.max_prompt_tokens - self.prompt_response_reserve_tokens)

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None) -> "PipelineSettings":
        raw = get_pipeline_config(config)
        defaults = cls()
        patterns_raw = raw.get("timeout_error_patterns")
        patterns = (
            tuple(str(item) for item in patterns_raw if isinstance(item, str) and item.strip())
            if isinstance(patterns_raw, list)
            else defaults.timeout_error_patterns
        )
        persona_raw = raw.get("persona")
        max_prompt_tokens = _bounded_int(raw.get("max_prompt_tokens"), defaults.max_prompt_tokens, 1000, 200_000)
        # The reserve never pushes the input budget below its floor.
        reserve_ceiling = min(32_000, max_prompt_tokens - MIN_INPUT_PROMPT_TOKENS)
        return cls(
            max_prompt_tokens=max_prompt_tokens,
            prompt_response_reserve_tokens=_bounded_int(
                raw.get("prompt_response_reserve_tokens"),
                min(defaults.prompt_response_reserve_tokens, reserve_ceiling),
                128,
                reserve_ceiling,
            ),
            prompt_history_target_tokens=_bounded_int(
                raw.get("prompt_history_target_tokens"), defaults.prompt_history_target_tokens, 0, 64_000
            ),
            prompt_min_history_tokens=_bounded_int(
                raw.get("prompt_min_history_tokens"), defaults.prompt_min_history_tokens, 0, 8_000
            ),
            session_max_history_tokens=_bounded_int(
                raw.get("session_max_history_tokens"), defaults.session_max_history_tokens, 0, 128_000
            ),
            prompt_context_section_max_tokens=_bounded_int(
                raw.get("prompt_context_section_max_tokens"), defaults.prompt_context_section_max_tokens, 48, 16_000
            ),
            tool_loop_enabled=raw.get("tool_loop_enabled", defaults.tool_loop_enabled) is not False,
            tool_loop_max_steps=_bounded_int(raw.get("tool_loop_max_steps"), defaults.tool_loop_max_steps, 1, 32),
            tool_loop_request_timeout_sec=_bounded_float(
                raw.get("tool_loop_request_timeout_sec"), defaults.tool_loop_request_timeout_sec, 1.0, 120.0
            ),
            tool_loop_max_duration_sec=_bounded_float(
                raw.get("tool_loop_max_duration_sec"), defaults.tool_loop_max_duration_sec, 5.0, 600.0
            ),
            tool_loop_tool_exec_timeout_sec=_bounded_float(
                raw.get("tool_loop_tool_exec_timeout_sec"), defaults.tool_loop_tool_exec_timeout_sec, 1.0, 120.0
            ),
            tool_loop_recovery_timeout_sec=_bounded_float(
                raw.get("tool_loop_recovery_timeout_sec"), defaults.tool_loop_recovery_timeout_sec, 1.0, 120.0
            ),
            tool_loop_max_tool_calls_per_step=_bounded_int(
                raw.get("tool_loop_max_tool_calls_per_step"), defaults.tool_loop_max_tool_calls_per_step, 1, 20
            ),
            enforce_tool_capabilities=raw.get("enforce_tool_capabilities") is True,
            request_timeout_sec=_bounded_float(raw.get("request_timeout_sec"), defaults.request_timeout_sec, 1.0, 600.0),
            default_max_completion_tokens=_bounded_int(
                raw.get("default_max_completion_tokens"), defaults.default_max_completion_tokens, 64, 100_000
            ),
            fast_lane_max_completion_tokens=_bounded_int(
                raw.get("fast_lane_max_completion_tokens"), defaults.fast_lane_max_completion_tokens, 64, 100_000
            ),
            strict_max_completion_tokens=_bounded_int(
                raw.get("strict_max_completion_tokens"), defaults.strict_max_completion_tokens, 64, 100_000
            ),
            tool_loop_max_completion_tokens=_bounded_int(
                raw.get("tool_loop_max_completion_tokens"), defaults.tool_loop_max_completion_tokens, 256, 100_000
            ),
            inbound_dedupe_window_sec=_bounded_float(
                raw.get("inbound_dedupe_window_sec"), defaults.inbound_dedupe_window_sec, 0.0, 3600.0
            ),
            turn_id_bucket_sec=_bounded_float(raw.get("turn_id_bucket_sec"), defaults.turn_id_bucket_sec, 1.0, 3600.0),
            idempotency_pending_ttl_sec=_bounded_float(
                raw.get("idempotency_pending_ttl_sec"), defaults.idempotency_pending_ttl_sec, 1.0, 86_400.0
            ),
            idempotency_result_ttl_sec=_bounded_float(
                raw.get("idempotency_result_ttl_sec"), defaults.idempotency_result_ttl_sec, 1.0, 86_400.0
            ),
            delivery_ttl_sec=_bounded_float(raw.get("delivery_ttl_sec"), defaults.delivery_ttl_sec, 60.0, 30 * 86_400.0),
            weather_confirm_ttl_sec=_bounded_float(
                raw.get("weather_confirm_ttl_sec"), defaults.weather_confirm_ttl_sec, 10.0, 86_400.0
            ),
            weather_cache_ttl_sec=_bounded_float(
                raw.get("weather_cache_ttl_sec"), defaults.weather_cache_ttl_sec, 0.0, 86_400.0
            ),
            fast_path_tool_timeout_sec=_bounded_float(
                raw.get("fast_path_tool_timeout_sec"), defaults.fast_path_tool_timeout_sec, 0.5, 60.0
            ),
            memory_recall_timeout_sec=_bounded_float(
                raw.get("memory_recall_timeout_sec"), defaults.memory_recall_timeout_sec, 0.05, 10.0
            ),
            web_preload_timeout_sec=_bounded_float(
                raw.get("web_preload_timeout_sec"), defaults.web_preload_timeout_sec, 0.05, 30.0
            ),
            history_turn_limit=_bounded_int(raw.get("history_turn_limit"), defaults.history_turn_limit, 0, 500),
            persona=persona_raw.strip() if isinstance(persona_raw, str) and persona_raw.strip() else defaults.persona,
            timeout_error_patterns=patterns or defaults.timeout_error_patterns,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["timeout_error_patterns"] = list(self.timeout_error_patterns)
        return payload
