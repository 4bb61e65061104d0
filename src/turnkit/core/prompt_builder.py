"""Assemble a token-bounded prompt from persona, context sections, history and the user turn."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from src.turnkit.observability import get_logger

from .settings import PipelineSettings
from .token_estimator import TokenEstimator, compute_budget, default_estimator

logger = get_logger(__name__)

CHARS_PER_TOKEN_GUESS = 3.4
MIN_SYSTEM_BUDGET_TOKENS = 240
SECTION_SKIP_SYSTEM_TOKENS = 28
SECTION_SKIP_BODY_TOKENS = 18
MIN_SECTION_MAX_TOKENS = 48


@dataclass(frozen=True, slots=True)
class PromptSection:
    title: str
    body: str


@dataclass(slots=True)
class BuiltPrompt:
    system_prompt: str
    trimmed_history: list[dict[str, Any]]
    messages: list[dict[str, Any]]
    prompt_hash: str
    prompt_tokens: int
    sections_included: list[str] = field(default_factory=list)
    sections_dropped: dict[str, str] = field(default_factory=dict)
    history_dropped: int = 0
    budget: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_hash": self.prompt_hash,
            "prompt_tokens": self.prompt_tokens,
            "history_messages": len(self.trimmed_history),
            "history_dropped": self.history_dropped,
            "sections_included": list(self.sections_included),
            "sections_dropped": dict(self.sections_dropped),
            "budget": dict(self.budget),
        }


def _normalize(text: str | None) -> str:
    return (text or "").replace("\r\n", "\n").strip()


def truncate_at_word_boundary(text: str, max_chars: int) -> str:
    normalized = _normalize(text)
    if len(normalized) <= max_chars:
        return normalized
    window = normalized[: max(1, max_chars + 1)]
    cut = max(window.rfind("\n"), window.rfind(". "), window.rfind("; "), window.rfind(", "), window.rfind(" "))
    index = cut if cut >= int(max_chars * 0.6) else max_chars
    return f"{window[:index].strip()}..."


def compact_text_to_token_budget(
    text: str,
    max_tokens: int,
    *,
    estimator: TokenEstimator | None = None,
    min_chars: int = 96,
) -> str:
    """Shrink text toward `max_tokens`, cutting at word boundaries and never below `min_chars`."""
    active = estimator or default_estimator()
    normalized = _normalize(text)
    budget = max(0, int(max_tokens))
    if not normalized or budget <= 0:
        return ""
    if active.estimate_text(normalized) <= budget:
        return normalized

    def _clamp(value: int) -> int:
        return max(min_chars, min(len(normalized), value))

    max_chars = _clamp(int(budget * CHARS_PER_TOKEN_GUESS))
    compacted = truncate_at_word_boundary(normalized, max_chars)
    guard = 0
    while compacted and active.estimate_text(compacted) > budget and max_chars > min_chars and guard < 8:
        max_chars = _clamp(int(max_chars * 0.82))
        compacted = truncate_at_word_boundary(normalized, max_chars)
        guard += 1
    return compacted


def _hard_fit(text: str, max_tokens: int, estimator: TokenEstimator) -> str:
    value = compact_text_to_token_budget(text, max_tokens, estimator=estimator)
    while value and estimator.estimate_text(value) > max_tokens:
        value = value[: int(len(value) * 0.8)].rstrip()
    return value


def compute_history_token_budget(
    *,
    input_budget: int,
    system_tokens: int,
    user_tokens: int,
    max_history_tokens: int,
    min_history_tokens: int = 0,
    target_history_tokens: int = 0,
) -> int:
    available = max(0, input_budget - system_tokens - user_tokens)
    max_history = max(0, max_history_tokens)
    min_history = max(0, min_history_tokens)
    target = max(min_history, target_history_tokens)
    if available <= min_history:
        return min(max_history, available)
    return min(max_history, max(min_history, min(target, available)))


def compute_prompt_hash(messages: list[dict[str, Any]]) -> str:
    canonical = json.dumps(messages, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class PromptBuilder:
    """Budgeted prompt assembly.

    Context sections are appended in the order given; once the system budget runs
    low the remaining (lower priority) sections are dropped. History is trimmed from
    the oldest message. A final guard keeps the whole message list within
    `settings.input_prompt_budget` as measured by the same estimator.
    """

    def __init__(self, settings: PipelineSettings | None = None, *, estimator: TokenEstimator | None = None) -> None:
        self.settings = settings or PipelineSettings()
        self.estimator = estimator or default_estimator()

    @property
    def input_budget(self) -> int:
        return self.settings.input_prompt_budget

    def append_section(self, prompt: str, section: PromptSection, *, user_text: str) -> tuple[str, str]:
        """Return `(prompt, reason)`; reason is `full` or `compacted` when the section was included."""
        title = _normalize(section.title) or "Context"
        body = _normalize(section.body)
        if not body:
            return prompt, "empty_body"

        estimate = self.estimator.estimate_text
        max_system = max(
            MIN_SYSTEM_BUDGET_TOKENS,
            self.input_budget - estimate(user_text) - self.settings.prompt_history_target_tokens,
        )
        available = max_system - estimate(prompt)
        if available <= SECTION_SKIP_SYSTEM_TOKENS:
            return prompt, "no_system_budget"

        header = f"\n\n## {title}\n"
        section_cap = max(MIN_SECTION_MAX_TOKENS, self.settings.prompt_context_section_max_tokens)
        body_budget = max(0, min(available, section_cap) - estimate(header))
        if body_budget <= SECTION_SKIP_BODY_TOKENS:
            return prompt, "header_exhausted"

        compacted = compact_text_to_token_budget(body, body_budget, estimator=self.estimator, min_chars=120)
        candidate = f"{prompt}{header}{compacted}"
        overflow = estimate(candidate) - max_system
        if overflow > 0:
            compacted = compact_text_to_token_budget(
                body, max(20, body_budget - overflow - 8), estimator=self.estimator, min_chars=120
            )
            candidate = f"{prompt}{header}{compacted}"
        if not compacted or estimate(candidate) > max_system:
            return prompt, "overflow"
        return candidate, "compacted" if len(compacted) < len(body) else "full"

    def trim_history(self, history: list[dict[str, Any]], budget_tokens: int) -> tuple[list[dict[str, Any]], int]:
        """Keep the newest history messages that fit; return `(kept, dropped_count)`."""
        if budget_tokens <= 0:
            return [], len(history)
        kept_reversed: list[dict[str, Any]] = []
        used = 0
        for message in reversed(history):
            cost = self.estimator.estimate_messages([message])
            if used + cost > budget_tokens:
                break
            kept_reversed.append(message)
            used += cost
        kept = list(reversed(kept_reversed))
        return kept, len(history) - len(kept)

    def _assemble(self, system_prompt: str, history: list[dict[str, Any]], user_text: str) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(history)
        messages.append({"role": "user", "content": user_text})
        return messages

    def _enforce_ceiling(
        self, system_prompt: str, history: list[dict[str, Any]], user_text: str
    ) -> tuple[str, list[dict[str, Any]], str, int]:
        budget = self.input_budget
        framing = self.estimator.estimate_messages([{"role": "user", "content": ""}])
        dropped = 0
        history = list(history)
        while history and self.estimator.estimate_messages(self._assemble(system_prompt, history, user_text)) > budget:
            history.pop(0)
            dropped += 1
        if self.estimator.estimate_messages(self._assemble(system_prompt, history, user_text)) <= budget:
            return system_prompt, history, user_text, dropped

        user_tokens = self.estimator.estimate_text(user_text)
        system_room = budget - user_tokens - 2 * framing
        system_prompt = _hard_fit(system_prompt, system_room, self.estimator) if system_room > 0 else ""
        if self.estimator.estimate_messages(self._assemble(system_prompt, history, user_text)) <= budget:
            return system_prompt, history, user_text, dropped

        system_cost = self.estimator.estimate_messages([{"role": "system", "content": system_prompt}]) if system_prompt else 0
        user_room = max(1, budget - system_cost - framing)
        user_text = _hard_fit(user_text, user_room, self.estimator)
        return system_prompt, history, user_text, dropped

    def build(
        self,
        turn_text: str,
        *,
        persona: str | None = None,
        history: list[dict[str, Any]] | None = None,
        memory_hints: str = "",
        sections: list[PromptSection] | None = None,
    ) -> BuiltPrompt:
        user_text = _normalize(turn_text)
        system_prompt = _normalize(persona if persona is not None else self.settings.persona)

        ordered: list[PromptSection] = []
        if _normalize(memory_hints):
            ordered.append(PromptSection(title="Memory Recall", body=memory_hints))
        ordered.extend(sections or [])

        included: list[str] = []
        dropped: dict[str, str] = {}
        for section in ordered:
            system_prompt, reason = self.append_section(system_prompt, section, user_text=user_text)
            if reason in {"full", "compacted"}:
                included.append(section.title)
            elif reason != "empty_body":
                dropped[section.title] = reason

        history_budget = compute_history_token_budget(
            input_budget=self.input_budget,
            system_tokens=self.estimator.estimate_text(system_prompt),
            user_tokens=self.estimator.estimate_text(user_text),
            max_history_tokens=self.settings.session_max_history_tokens,
            min_history_tokens=self.settings.prompt_min_history_tokens,
            target_history_tokens=self.settings.prompt_history_target_tokens,
        )
        clean_history = [
            {"role": item.get("role"), "content": item.get("content")}
            for item in history or []
            if isinstance(item, dict) and item.get("role") in {"user", "assistant"} and isinstance(item.get("content"), str)
        ]
        trimmed, history_dropped = self.trim_history(clean_history, history_budget)
        system_prompt, trimmed, user_text, guard_dropped = self._enforce_ceiling(system_prompt, trimmed, user_text)

        messages = self._assemble(system_prompt, trimmed, user_text)
        prompt_tokens = self.estimator.estimate_messages(messages)
        if dropped or history_dropped or guard_dropped:
            logger.debug(
                "prompt_trimmed",
                sections_dropped=dropped,
                history_dropped=history_dropped + guard_dropped,
                prompt_tokens=prompt_tokens,
            )
        return BuiltPrompt(
            system_prompt=system_prompt,
            trimmed_history=trimmed,
            messages=messages,
            prompt_hash=compute_prompt_hash(messages),
            prompt_tokens=prompt_tokens,
            sections_included=included,
            sections_dropped=dropped,
            history_dropped=history_dropped + guard_dropped,
            budget=compute_budget(
                input_tokens=prompt_tokens,
                max_context_tokens=self.settings.max_prompt_tokens,
                reserved_output_tokens=self.settings.prompt_response_reserve_tokens,
            ),
        )
