"""Detect and validate strict output formats requested in a user message."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

_ONE_WORD_PATTERNS = (
    re.compile(r"\b(?:answer|respond|reply)\s+(?:with|in)\s+(?:exactly\s+|only\s+)?one[- ]word\b", re.IGNORECASE),
    re.compile(r"\bexactly\s+one\s+word\b", re.IGNORECASE),
    re.compile(r"\bone-word\s+reply\s+only\b", re.IGNORECASE),
)
_BULLET_COUNT_RE = re.compile(r"\bexactly\s+(\d{1,2})\s+bullet(?:\s+points?)?\b", re.IGNORECASE)
MAX_EXACT_BULLETS = 99
_JSON_ONLY_RE = re.compile(r"\bjson\s+only\b", re.IGNORECASE)
_TWO_SENTENCES_RE = re.compile(r"\btwo\s+short\s+sentences\b|\bexactly\s+two\s+sentences\b", re.IGNORECASE)
_ONE_SENTENCE_RE = re.compile(r"\bin\s+one\s+sentence\b|\bexactly\s+one\s+sentence\b", re.IGNORECASE)

_KEYS_CLAUSE_RE = re.compile(r"\bkeys?\b([^.?!\n]*)", re.IGNORECASE)
_KEYS_PREFIX_RE = re.compile(r"^\s*(?:are|is|=|:|with)\s+", re.IGNORECASE)
_KEYS_NOISE_RE = re.compile(r"\b(top[- ]level|only|just|required|json|object)\b", re.IGNORECASE)
_KEYS_AND_RE = re.compile(r"\band\b", re.IGNORECASE)
_KEY_TOKEN_RE = re.compile(r"^[a-z][a-z0-9_-]{0,31}$")
_KEY_STOPWORDS = {"key", "keys", "with", "and", "or"}
MAX_JSON_KEYS = 8

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+(?=\s|$)")
_WORD_LEAD_RE = re.compile(r"^[`\"'(\[{]+")
_WORD_TRAIL_RE = re.compile(r"[`\"')\]}.,!?;:]+$")


def _normalize(text: str | None) -> str:
    return (text or "").replace("\r\n", "\n").strip()


@dataclass(frozen=True, slots=True)
class OutputConstraints:
    one_word: bool = False
    exact_bullet_count: int = 0
    json_only: bool = False
    required_json_keys: tuple[str, ...] = ()
    sentence_count: int = 0
    rules: tuple[str, ...] = field(default_factory=tuple)

    @property
    def enabled(self) -> bool:
        return bool(self.rules)

    @property
    def instructions(self) -> str:
        return "\n".join(self.rules)

    def to_dict(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "one_word": self.one_word,
            "exact_bullet_count": self.exact_bullet_count,
            "json_only": self.json_only,
            "required_json_keys": list(self.required_json_keys),
            "sentence_count": self.sentence_count,
            "instructions": self.instructions,
        }


NO_CONSTRAINTS = OutputConstraints()


def extract_required_json_keys(text: str) -> list[str]:
    match = _KEYS_CLAUSE_RE.search(text or "")
    if not match or not match.group(1):
        return []
    clause = _KEYS_PREFIX_RE.sub("", match.group(1))
    clause = _KEYS_NOISE_RE.sub(" ", clause)
    clause = _KEYS_AND_RE.sub(",", clause)

    keys: list[str] = []
    for token in re.split(r"[^a-z0-9_-]+", clause, flags=re.IGNORECASE):
        cleaned = token.strip().lower()
        if not cleaned or cleaned in _KEY_STOPWORDS:
            continue
        if not _KEY_TOKEN_RE.match(cleaned) or cleaned in keys:
            continue
        keys.append(cleaned)
        if len(keys) >= MAX_JSON_KEYS:
            break
    return keys


def parse_output_constraints(text: str | None) -> OutputConstraints:
    raw = _normalize(text)
    if not raw:
        return NO_CONSTRAINTS

    rules: list[str] = []
    one_word = any(pattern.search(raw) for pattern in _ONE_WORD_PATTERNS)
    if one_word:
        rules.append("Return exactly one word with no extra words.")

    bullet_count = 0
    bullet_match = _BULLET_COUNT_RE.search(raw)
    if bullet_match:
        bullet_count = min(MAX_EXACT_BULLETS, int(bullet_match.group(1)))
    if bullet_count > 0:
        rules.append(f"Return exactly {bullet_count} bullet points.")
        rules.append('Each bullet line must start with "- ".')

    json_only = bool(_JSON_ONLY_RE.search(raw))
    required_keys: list[str] = []
    if json_only:
        rules.append("Return raw JSON only with no markdown or prose outside the JSON.")
        required_keys = extract_required_json_keys(raw)
        if required_keys:
            rules.append(f"JSON object must include exactly these top-level keys: {', '.join(required_keys)}.")
            rules.append("Do not include any additional top-level keys.")

    sentence_count = 0
    if _TWO_SENTENCES_RE.search(raw):
        sentence_count = 2
        rules.append("Return exactly two short sentences.")
    elif _ONE_SENTENCE_RE.search(raw):
        sentence_count = 1
        rules.append("Return exactly one sentence.")

    return OutputConstraints(
        one_word=one_word,
        exact_bullet_count=bullet_count,
        json_only=json_only,
        required_json_keys=tuple(required_keys),
        sentence_count=sentence_count,
        rules=tuple(rules),
    )


def count_sentences(text: str) -> int:
    normalized = re.sub(r"\n+", " ", _normalize(text))
    if not normalized:
        return 0
    matches = _SENTENCE_RE.findall(normalized)
    return len(matches) if matches else 1


def is_single_word(text: str) -> bool:
    tokens = _normalize(text).split()
    if len(tokens) != 1:
        return False
    token = _WORD_TRAIL_RE.sub("", _WORD_LEAD_RE.sub("", tokens[0]))
    return bool(token)


def _check_json_only(text: str, required_keys: tuple[str, ...]) -> str:
    if re.search(r"^```", text, re.MULTILINE):
        return "json_only_markdown_fence"
    if not (text.startswith("{") or text.startswith("[")):
        return "json_only_non_json_prefix"
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return "json_only_invalid_json"
    if not required_keys:
        return ""
    if not isinstance(parsed, dict):
        return "json_required_object"
    present = [str(key).strip().lower() for key in parsed if str(key).strip()]
    for key in required_keys:
        if key.strip().lower() not in present:
            return f"json_missing_key:{key}"
    for key in present:
        if key not in required_keys:
            return f"json_extra_key:{key}"
    return ""


def _check_bullets(text: str, expected: int) -> str:
    lines = [line.strip() for line in re.split(r"\n+", text) if line.strip()]
    bullets = [line for line in lines if line.startswith("- ")]
    if len(bullets) != expected:
        return f"exact_bullet_count_mismatch:{expected}"
    if len(bullets) != len(lines):
        return "bullet_contains_non_bullet_lines"
    return ""


def validate_output_constraints(reply: str | None, constraints: OutputConstraints) -> tuple[bool, str]:
    """Return `(ok, reason)`; `reason` is empty when the reply satisfies every constraint."""
    if not constraints.enabled:
        return True, ""
    text = _normalize(reply)
    if not text:
        return False, "empty_reply"
    if constraints.one_word and not is_single_word(text):
        return False, "requires_one_word"
    if constraints.exact_bullet_count > 0:
        reason = _check_bullets(text, constraints.exact_bullet_count)
        if reason:
            return False, reason
    if constraints.json_only:
        reason = _check_json_only(text, constraints.required_json_keys)
        if reason:
            return False, reason
    if constraints.sentence_count > 0 and count_sentences(text) != constraints.sentence_count:
        return False, f"sentence_count_mismatch:{constraints.sentence_count}"
    return True, ""
