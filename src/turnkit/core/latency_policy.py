"""Per-turn routing heuristics: fast lane, tool loop, recall and preload."""

from __future__ import annotations

import re
from typing import Iterable

from .fallbacks import resolve_adaptive_max_completion_tokens
from .output_constraints import OutputConstraints, parse_output_constraints
from .settings import PipelineSettings
from .turn_types import ExecutionPolicy

FAST_LANE_MAX_CHARS = 42
FAST_LANE_MAX_WORDS = 8
MEMORY_RECALL_MIN_CHARS = 18
MEMORY_RECALL_MIN_WORDS = 6

FAST_LANE_ALLOWED_PHRASES = frozenset(
    {
        "hey",
        "hi",
        "hello",
        "yo",
        "sup",
        "ping",
        "test",
        "ok",
        "okay",
        "thanks",
        "thank you",
        "good morning",
        "good afternoon",
        "good evening",
        "how are you",
        "you there",
    }
)

_FAST_LANE_BLOCKED_KEYWORDS = re.compile(
    r"\b(weather|forecast|temperature|rain|snow|mission|workflow|automation|schedule|spotify|shutdown|search|news|"
    r"crypto|coinbase|bitcoin|ethereum|price|portfolio|transaction|trades)\b"
)
_FAST_LANE_BLOCKED_ACTIONS = re.compile(r"\b(remind|create|build|deploy|send|email|discord|telegram)\b")
_WEB_INTENT = re.compile(r"\b(search|lookup|look up|browse|web|latest|news|price|scores?)\b")
_NEGATED_WEB_INTENT = re.compile(r"\b(do\s+not|don't|dont|without|no)\s+(browse|search|lookup|look up|web|internet)\b")
_COMMAND_INTENT = re.compile(r"\b(run|execute|terminal|shell|command|script|npm|node|python|git|build)\b")
_REPO_INTENT = re.compile(r"\b(file|folder|directory|read|write|edit|patch|code|refactor|repository|repo)\b")
_TOOL_INTENT = re.compile(r"\b(tool|tool call|web fetch|web search|memory search|memory get)\b")
_MEMORY_RECALL_INTENT = re.compile(r"\b(remember|earlier|before|preference|profile|context|resume|continue|project|my)\b")
_LIVE_DATA_INTENT = re.compile(
    r"\b(latest|most recent|today|tonight|yesterday|last night|current|breaking|update|updates|live|score|scores|"
    r"recap|price|prices|market|news|weather)\b"
)
_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)


def normalize_latency_text(text: str, *, assistant_name: str = "") -> str:
    value = text or ""
    name = assistant_name.strip()
    if name:
        escaped = re.escape(name)
        value = re.sub(rf"^\s*(hey|hi|yo)\s+{escaped}[\s,:-]*", "", value, flags=re.IGNORECASE)
        value = re.sub(rf"^\s*{escaped}[\s,:-]*", "", value, flags=re.IGNORECASE)
    value = re.sub(r"[^\w\s]", " ", value.lower())
    return re.sub(r"\s+", " ", value).strip()


def is_simple_fast_lane_turn(text: str, *, assistant_name: str = "") -> bool:
    normalized = normalize_latency_text(text, assistant_name=assistant_name)
    if not normalized or len(normalized) > FAST_LANE_MAX_CHARS:
        return False
    if len(normalized.split()) > FAST_LANE_MAX_WORDS:
        return False
    if _FAST_LANE_BLOCKED_KEYWORDS.search(normalized) or _FAST_LANE_BLOCKED_ACTIONS.search(normalized):
        return False
    return normalized in FAST_LANE_ALLOWED_PHRASES


def should_use_tool_loop(
    text: str,
    *,
    fast_lane: bool = False,
    weather_intent: bool = False,
    crypto_intent: bool = False,
    can_run_web_search: bool = False,
    can_run_web_fetch: bool = False,
    assistant_name: str = "",
) -> bool:
    normalized = normalize_latency_text(text, assistant_name=assistant_name)
    if not normalized or fast_lane or weather_intent or crypto_intent:
        return False
    if _NEGATED_WEB_INTENT.search(normalized):
        return False
    if can_run_web_fetch and _URL_RE.search(text or ""):
        return True
    if can_run_web_search and _WEB_INTENT.search(normalized):
        return True
    return bool(
        _COMMAND_INTENT.search(normalized) or _REPO_INTENT.search(normalized) or _TOOL_INTENT.search(normalized)
    )


def should_attempt_memory_recall(
    text: str,
    *,
    fast_lane: bool = False,
    weather_intent: bool = False,
    crypto_intent: bool = False,
    assistant_name: str = "",
) -> bool:
    normalized = normalize_latency_text(text, assistant_name=assistant_name)
    if len(normalized) < MEMORY_RECALL_MIN_CHARS:
        return False
    if fast_lane or weather_intent or crypto_intent:
        return False
    if len(normalized.split()) >= MEMORY_RECALL_MIN_WORDS:
        return True
    return bool(_MEMORY_RECALL_INTENT.search(normalized))


def should_preload_web_search(text: str) -> bool:
    return bool(_LIVE_DATA_INTENT.search((text or "").lower()))


def build_execution_policy(
    text: str,
    *,
    settings: PipelineSettings,
    available_tools: Iterable[str] = (),
    constraints: OutputConstraints | None = None,
    weather_intent: bool = False,
    crypto_intent: bool = False,
    has_memory_recall: bool = False,
    assistant_name: str = "",
) -> ExecutionPolicy:
    """Compute routing flags and the completion cap for one turn."""
    active = constraints if constraints is not None else parse_output_constraints(text)
    tool_names = set(available_tools)
    can_execute_tools = settings.tool_loop_enabled and bool(tool_names)
    can_run_web_search = can_execute_tools and "web_search" in tool_names
    can_run_web_fetch = can_execute_tools and "web_fetch" in tool_names

    fast_lane = is_simple_fast_lane_turn(text, assistant_name=assistant_name)
    candidate = should_use_tool_loop(
        text,
        fast_lane=fast_lane,
        weather_intent=weather_intent,
        crypto_intent=crypto_intent,
        can_run_web_search=True,
        can_run_web_fetch=True,
        assistant_name=assistant_name,
    )
    can_run_tool_loop = can_execute_tools and should_use_tool_loop(
        text,
        fast_lane=fast_lane,
        weather_intent=weather_intent,
        crypto_intent=crypto_intent,
        can_run_web_search=can_run_web_search,
        can_run_web_fetch=can_run_web_fetch,
        assistant_name=assistant_name,
    )
    recall = has_memory_recall and should_attempt_memory_recall(
        text,
        fast_lane=fast_lane,
        weather_intent=weather_intent,
        crypto_intent=crypto_intent,
        assistant_name=assistant_name,
    )
    preload = not fast_lane and can_run_web_search and should_preload_web_search(text)

    strict = active.enabled
    if can_run_tool_loop:
        max_tokens = settings.tool_loop_max_completion_tokens
    else:
        max_tokens = resolve_adaptive_max_completion_tokens(
            text,
            strict=strict,
            fast_lane=fast_lane,
            default_cap=settings.default_max_completion_tokens,
            strict_cap=settings.strict_max_completion_tokens,
            fast_lane_cap=settings.fast_lane_max_completion_tokens,
        )

    return ExecutionPolicy(
        fast_lane=fast_lane,
        weather_intent=weather_intent,
        crypto_intent=crypto_intent,
        tool_loop_candidate=candidate,
        can_run_tool_loop=can_run_tool_loop,
        can_run_web_search=can_run_web_search,
        should_preload_web_search=preload,
        should_attempt_memory_recall=recall,
        strict_output=strict,
        max_completion_tokens=max_tokens,
    )
