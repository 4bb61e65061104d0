"""TTL-leased idempotency claims for side-effecting work."""

from __future__ import annotations

import asyncio
import hashlib
from time import time
from typing import Any, Awaitable, Callable, Literal

from src.turnkit.observability import get_logger

from .turn_types import ClaimResult, IdempotencyRecord

logger = get_logger(__name__)

Clock = Callable[[], float]
DEFAULT_PENDING_TTL_SEC = 120.0
DEFAULT_RESULT_TTL_SEC = 300.0
MIN_RETRY_AFTER_SEC = 0.25
MAX_RETRY_AFTER_SEC = 4.0


def build_idempotency_key(scope: str, seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]
    return f"{scope}:{digest}"


class IdempotencyLedger:
    """In-memory claim ledger.

    A claim is a lease: a pending record expires after `pending_ttl_sec`, so a
    claimant that dies never blocks the key for longer than that.
    """

    def __init__(
        self,
        *,
        pending_ttl_sec: float = DEFAULT_PENDING_TTL_SEC,
        result_ttl_sec: float = DEFAULT_RESULT_TTL_SEC,
        clock: Clock = time,
    ) -> None:
        self.pending_ttl_sec = float(pending_ttl_sec)
        self.result_ttl_sec = float(result_ttl_sec)
        self._clock = clock
        self._records: dict[str, IdempotencyRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _prune(self, now: float) -> None:
        expired = [key for key, record in self._records.items() if record.expires_at <= now]
        for key in expired:
            del self._records[key]
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

    def get(self, key: str) -> IdempotencyRecord | None:
        record = self._records.get(key)
        if record is None or record.expires_at <= self._clock():
            return None
        return record

    async def claim(
        self,
        key: str,
        scope: str,
        *,
        user_context_id: str = "",
        ttl_sec: float | None = None,
    ) -> ClaimResult:
        async with self._lock_for(key):
            now = self._clock()
            self._prune(now)
            existing = self._records.get(key)
            if existing is not None:
                retry_after = None
                if existing.status == "pending":
                    retry_after = max(MIN_RETRY_AFTER_SEC, min(MAX_RETRY_AFTER_SEC, existing.expires_at - now))
                return ClaimResult(accepted=False, record=existing, retry_after_sec=retry_after)

            record = IdempotencyRecord(
                key=key,
                scope=scope,
                user_context_id=user_context_id,
                status="pending",
                first_seen_at=now,
                expires_at=now + (ttl_sec if ttl_sec is not None else self.pending_ttl_sec),
            )
            self._records[key] = record
            return ClaimResult(accepted=True, record=record)

    async def complete(
        self,
        key: str,
        scope: str,
        status: Literal["completed", "failed"],
        result_ref: Any = None,
    ) -> IdempotencyRecord | None:
        if status not in {"completed", "failed"}:
            raise ValueError("status must be completed or failed.")
        async with self._lock_for(key):
            now = self._clock()
            record = self._records.get(key)
            if record is None or record.scope != scope:
                logger.warning("idempotency_complete_unknown_key", key=key, scope=scope)
                return None
            record.status = status
            record.result_ref = result_ref
            record.updated_at = now
            record.expires_at = now + self.result_ttl_sec
            return record

    async def run_once(
        self,
        key: str,
        scope: str,
        action: Callable[[], Awaitable[Any]],
        *,
        user_context_id: str = "",
    ) -> tuple[ClaimResult, Any]:
        """Run `action` only for the accepted claimant; others get the stored result (None while pending)."""
        claim = await self.claim(key, scope, user_context_id=user_context_id)
        if not claim.accepted:
            return claim, claim.result_ref
        try:
            value = await action()
        except Exception as exc:
            await self.complete(key, scope, "failed", {"error": str(exc)})
            raise
        await self.complete(key, scope, "completed", value)
        return claim, value

    def __len__(self) -> int:
        return len(self._records)
