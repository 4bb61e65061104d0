"""Heuristic token estimation and context budgeting utilities.

Counts are approximations derived from character length, not tokenizer output.
Budget logic only depends on the `TokenEstimator` protocol so a real tokenizer
can be dropped in without touching callers.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

MESSAGE_FRAMING_TOKENS = 6


class TokenEstimator(Protocol):
    def estimate_text(self, text: str) -> int: ...

    def estimate_messages(self, messages: list[dict[str, Any]]) -> int: ...


class CharRatioTokenEstimator:
    """Approximate tokens as characters divided by a fixed ratio."""

    def __init__(self, *, chars_per_token: float = 3.6, framing_tokens: int = MESSAGE_FRAMING_TOKENS) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        self.chars_per_token = chars_per_token
        self.framing_tokens = max(0, int(framing_tokens))

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0
        return max(1, int(len(text) / self.chars_per_token))

    def estimate_messages(self, messages: list[dict[str, Any]]) -> int:
        total = 0
        for message in messages:
            total += self.framing_tokens
            content = message.get("content")
            if isinstance(content, str):
                total += self.estimate_text(content)
            elif content is not None:
                total += estimate_payload_tokens(content, estimator=self)
        return total


_DEFAULT_ESTIMATOR = CharRatioTokenEstimator()


def default_estimator() -> TokenEstimator:
    return _DEFAULT_ESTIMATOR


def estimate_text_tokens(text: str) -> int:
    """Approximate token count for plain text."""
    return _DEFAULT_ESTIMATOR.estimate_text(text)


def estimate_payload_tokens(payload: Any, *, estimator: TokenEstimator | None = None) -> int:
    active = estimator or _DEFAULT_ESTIMATOR
    if isinstance(payload, str):
        return active.estimate_text(payload)
    serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return active.estimate_text(serialized)


def estimate_messages_tokens(messages: list[dict[str, Any]]) -> int:
    return _DEFAULT_ESTIMATOR.estimate_messages(messages)


def compute_budget(
    *,
    input_tokens: int,
    max_context_tokens: int,
    reserved_output_tokens: int,
) -> dict[str, Any]:
    if max_context_tokens <= 0:
        raise ValueError("max_context_tokens must be > 0")
    if reserved_output_tokens < 0:
        raise ValueError("reserved_output_tokens must be >= 0")

    available_for_input = max(0, max_context_tokens - reserved_output_tokens)
    remaining_input_tokens = max(0, available_for_input - input_tokens)
    fill_ratio = input_tokens / max_context_tokens

    level = "ok"
    if fill_ratio >= 0.95:
        level = "critical"
    elif fill_ratio >= 0.85:
        level = "high"
    elif fill_ratio >= 0.70:
        level = "medium"

    return {
        "input_tokens": input_tokens,
        "max_context_tokens": max_context_tokens,
        "reserved_output_tokens": reserved_output_tokens,
        "available_for_input": available_for_input,
        "remaining_input_tokens": remaining_input_tokens,
        "fill_ratio": fill_ratio,
        "fill_level": level,
        "within_budget": input_tokens <= available_for_input,
    }
