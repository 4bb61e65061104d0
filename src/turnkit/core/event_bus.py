"""Typed lifecycle events and in-memory fan-out."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from itertools import count
from time import time
from typing import Any, Awaitable, Callable, Literal, Union

from src.turnkit.observability import get_logger

logger = get_logger(__name__)

EventType = Literal[
    "assistant_stream_start",
    "assistant_stream_delta",
    "assistant_stream_done",
    "turn_summary",
    "delivery",
]
StreamState = Literal["idle", "open", "closed"]
Subscriber = Callable[["LifecycleEvent"], Union[None, Awaitable[None]]]

_STREAM_IDS = count(1)


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    type: EventType
    stream_id: str
    conversation_id: str = ""
    user_context_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    ts: float = field(default_factory=time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "stream_id": self.stream_id,
            "conversation_id": self.conversation_id,
            "user_context_id": self.user_context_id,
            "payload": dict(self.payload),
            "seq": self.seq,
            "ts": self.ts,
        }


class EventBus:
    """Publishes lifecycle events to callables and queues.

    A failing subscriber is logged and skipped; it never affects the publisher.
    """

    def __init__(self, *, queue_maxsize: int = 1000) -> None:
        self._handlers: list[Subscriber] = []
        self._queues: list[asyncio.Queue[LifecycleEvent]] = []
        self._queue_maxsize = queue_maxsize

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def subscribe_queue(self) -> asyncio.Queue[LifecycleEvent]:
        queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=self._queue_maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue[LifecycleEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers) + len(self._queues)

    async def publish(self, event: LifecycleEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("event_subscriber_failed", event_type=event.type, stream_id=event.stream_id)
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("event_queue_full", event_type=event.type, stream_id=event.stream_id)

    def stream(self, *, conversation_id: str = "", user_context_id: str = "") -> "AssistantStream":
        return AssistantStream(self, conversation_id=conversation_id, user_context_id=user_context_id)


class StreamOrderError(RuntimeError):
    pass


class AssistantStream:
    """One assistant reply stream, ordered start -> delta* -> done."""

    def __init__(self, bus: EventBus, *, conversation_id: str = "", user_context_id: str = "") -> None:
        self._bus = bus
        self.stream_id = f"stream_{next(_STREAM_IDS)}"
        self.conversation_id = conversation_id
        self.user_context_id = user_context_id
        self.state: StreamState = "idle"
        self.delta_count = 0
        self._seq = 0
        self._chunks: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    async def _emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        self._seq += 1
        await self._bus.publish(
            LifecycleEvent(
                type=event_type,
                stream_id=self.stream_id,
                conversation_id=self.conversation_id,
                user_context_id=self.user_context_id,
                payload=payload,
                seq=self._seq,
            )
        )

    async def start(self) -> None:
        if self.state != "idle":
            raise StreamOrderError(f"Stream {self.stream_id} already started.")
        self.state = "open"
        await self._emit("assistant_stream_start", {})

    async def delta(self, text: str) -> None:
        if self.state != "open":
            raise StreamOrderError(f"Delta on stream {self.stream_id} in state '{self.state}'.")
        if not text:
            return
        self.delta_count += 1
        self._chunks.append(text)
        await self._emit("assistant_stream_delta", {"delta": text})

    async def done(self, *, reply: str = "", meta: dict[str, Any] | None = None) -> None:
        """Close the stream. Starts it first if needed; repeated calls are no-ops."""
        if self.state == "closed":
            return
        if self.state == "idle":
            await self.start()
        self.state = "closed"
        payload: dict[str, Any] = {"reply": reply or self.text}
        if meta:
            payload.update(meta)
        await self._emit("assistant_stream_done", payload)
