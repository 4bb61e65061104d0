"""Transcript and usage persistence as append-only JSONL files."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from .config_loader import get_persistence_config

Role = Literal["user", "assistant"]

DEFAULT_SESSIONS_DIR = "memory/sessions"
DEFAULT_USAGE_FILE = "memory/usage.jsonl"


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TranscriptStore:
    """Per-session transcript logs plus one usage ledger.

    Writes are synchronous and serialized by a lock; the pipeline runs them off
    the event loop.
    """

    def __init__(
        self,
        *,
        sessions_dir: str | Path = DEFAULT_SESSIONS_DIR,
        usage_path: str | Path = DEFAULT_USAGE_FILE,
        root: Path | None = None,
    ) -> None:
        base = root or _repo_root()
        self.sessions_dir = Path(sessions_dir) if Path(sessions_dir).is_absolute() else base / sessions_dir
        self.usage_path = Path(usage_path) if Path(usage_path).is_absolute() else base / usage_path
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None, *, root: Path | None = None) -> "TranscriptStore":
        raw = get_persistence_config(config)
        sessions_dir = raw.get("sessions_dir")
        usage_path = raw.get("usage_path")
        return cls(
            sessions_dir=sessions_dir if isinstance(sessions_dir, str) and sessions_dir.strip() else DEFAULT_SESSIONS_DIR,
            usage_path=usage_path if isinstance(usage_path, str) and usage_path.strip() else DEFAULT_USAGE_FILE,
            root=root,
        )

    def session_log_path(self, session_id: str) -> Path:
        safe = (session_id or "default").replace("/", "_").replace("\\", "_")
        return self.sessions_dir / f"{safe}.jsonl"

    def _append(self, path: Path, payload: dict[str, Any]) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")

    def append_transcript_turn(self, session_id: str, role: Role, text: str, meta: dict[str, Any] | None = None) -> None:
        if role not in {"user", "assistant"}:
            raise ValueError("role must be user or assistant.")
        self._append(
            self.session_log_path(session_id),
            {"role": role, "text": text, "meta": dict(meta or {}), "timestamp": _utc_now_iso()},
        )

    def persist_usage(self, model: str, prompt_tokens: int, completion_tokens: int) -> None:
        prompt = max(0, int(prompt_tokens))
        completion = max(0, int(completion_tokens))
        self._append(
            self.usage_path,
            {
                "model": model or "unknown",
                "prompt_tokens": prompt,
                "completion_tokens": completion,
                "total_tokens": prompt + completion,
                "timestamp": _utc_now_iso(),
            },
        )

    def load_transcript(self, session_id: str) -> list[dict[str, Any]]:
        path = self.session_log_path(session_id)
        if not path.exists():
            return []
        rows: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            parsed = json.loads(line)
            if isinstance(parsed, dict):
                rows.append(parsed)
        return rows

    def load_history(self, session_id: str, *, limit: int = 40) -> list[dict[str, Any]]:
        """Most recent transcript rows as chat messages, oldest first."""
        if limit <= 0:
            return []
        history = [
            {"role": row["role"], "content": row["text"]}
            for row in self.load_transcript(session_id)
            if row.get("role") in {"user", "assistant"} and isinstance(row.get("text"), str) and row["text"].strip()
        ]
        return history[-limit:]

    def usage_totals(self) -> dict[str, Any]:
        totals: dict[str, dict[str, int]] = {}
        if self.usage_path.exists():
            for line in self.usage_path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                row = json.loads(line)
                bucket = totals.setdefault(str(row.get("model") or "unknown"), {"prompt_tokens": 0, "completion_tokens": 0})
                bucket["prompt_tokens"] += int(row.get("prompt_tokens") or 0)
                bucket["completion_tokens"] += int(row.get("completion_tokens") or 0)
        return {"ok": True, "models": totals}

    def reset(self, session_id: str) -> bool:
        path = self.session_log_path(session_id)
        with self._lock:
            existed = path.exists()
            path.unlink(missing_ok=True)
        return existed
