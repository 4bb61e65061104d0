"""Inbound turn dedupe and outbound delivery dedupe."""

from __future__ import annotations

import hashlib
import threading
from time import monotonic
from typing import Callable

from .turn_types import DeliveryKey, Turn, clean_turn_text

Clock = Callable[[], float]


def build_turn_signature(session_key: str, text: str) -> str:
    normalized = clean_turn_text(text).lower()
    return hashlib.sha256(f"{session_key}|{normalized}".encode("utf-8")).hexdigest()


class InboundDedupe:
    """Rejects a repeated `(session_key, text)` seen within `window_sec`.

    Check and insert happen under one lock, so of two racing identical turns
    exactly one is accepted.
    """

    def __init__(self, *, window_sec: float = 8.0, clock: Clock = monotonic, max_entries: int = 5000) -> None:
        self.window_sec = max(0.0, float(window_sec))
        self._clock = clock
        self._max_entries = max(1, int(max_entries))
        self._seen: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [sig for sig, (_, seen_at) in self._seen.items() if now - seen_at >= self.window_sec]
        for sig in expired:
            del self._seen[sig]
        while len(self._seen) > self._max_entries:
            oldest = min(self._seen, key=lambda sig: self._seen[sig][1])
            del self._seen[oldest]

    def check_and_record(self, turn: Turn) -> bool:
        """Return True when the turn is a duplicate; otherwise record it and return False."""
        if self.window_sec <= 0:
            return False
        signature = build_turn_signature(turn.session_key, turn.text)
        with self._lock:
            now = self._clock()
            self._prune(now)
            entry = self._seen.get(signature)
            if entry is not None and now - entry[1] < self.window_sec:
                return True
            self._seen[signature] = (turn.session_key, now)
            return False

    def forget_session(self, session_key: str) -> int:
        with self._lock:
            stale = [sig for sig, (owner, _) in self._seen.items() if owner == session_key]
            for sig in stale:
                del self._seen[sig]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class DeliveryLedger:
    """TTL claims ensuring one generated output is posted into a conversation once."""

    def __init__(self, *, ttl_sec: float = 86400.0, clock: Clock = monotonic) -> None:
        self.ttl_sec = max(1.0, float(ttl_sec))
        self._clock = clock
        self._claims: dict[str, float] = {}
        self._lock = threading.Lock()

    def claim_delivery(self, key: DeliveryKey | str, conversation_id: str) -> bool:
        raw_key = key.as_string() if isinstance(key, DeliveryKey) else str(key)
        claim_key = f"{conversation_id}|{raw_key}"
        with self._lock:
            now = self._clock()
            expired = [item for item, expires_at in self._claims.items() if expires_at <= now]
            for item in expired:
                del self._claims[item]
            if claim_key in self._claims:
                return False
            self._claims[claim_key] = now + self.ttl_sec
            return True
