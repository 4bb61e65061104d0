"""HTTP surface for the turn pipeline."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from src.turnkit.runtime.service import get_runtime_service

app = FastAPI(title="turnkit")


class ChatRequest(BaseModel):
    message: str
    session_id: str = "default"
    user_context_id: str = ""
    conversation_id: str = ""
    source: str = "chat"
    hints: dict[str, object] = Field(default_factory=dict)


class ResetRequest(BaseModel):
    session_id: str = "default"


class DeliveryRequest(BaseModel):
    conversation_id: str
    text: str
    node_id: str
    output_index: int = Field(default=0, ge=0)
    mission_run_id: str = ""
    run_key: str = ""
    schedule_id: str = ""
    channel: str = ""
    user_context_id: str = ""


@app.on_event("startup")
def _init_runtime() -> None:
    get_runtime_service().start(source="app")


@app.on_event("shutdown")
async def _stop_runtime() -> None:
    await get_runtime_service().stop(source="app")


@app.get("/health")
def health() -> dict:
    return get_runtime_service().health()


@app.post("/api/chat")
async def chat(req: ChatRequest) -> dict:
    return await get_runtime_service().chat(
        message=req.message,
        session_id=req.session_id,
        user_context_id=req.user_context_id,
        conversation_id=req.conversation_id,
        source=req.source,
        hints=dict(req.hints),
    )


@app.post("/api/session/reset")
async def reset_session(req: ResetRequest) -> dict:
    return await get_runtime_service().reset_session(session_id=req.session_id)


@app.post("/api/deliveries")
async def deliver(req: DeliveryRequest) -> dict:
    return await get_runtime_service().deliver(
        conversation_id=req.conversation_id,
        text=req.text,
        node_id=req.node_id,
        output_index=req.output_index,
        mission_run_id=req.mission_run_id,
        run_key=req.run_key,
        schedule_id=req.schedule_id,
        channel=req.channel,
        user_context_id=req.user_context_id,
    )


@app.get("/api/runs")
def recent_runs(limit: int = 20) -> dict:
    return get_runtime_service().recent_runs(limit=max(0, min(limit, 200)))


@app.get("/api/events")
async def events(conversation_id: str = "", user_context_id: str = "") -> EventSourceResponse:
    bus = get_runtime_service().bus
    queue = bus.subscribe_queue()

    async def event_generator() -> AsyncGenerator[dict[str, str], None]:
        try:
            while True:
                event = await queue.get()
                if conversation_id and event.conversation_id != conversation_id:
                    continue
                if user_context_id and event.user_context_id != user_context_id:
                    continue
                yield {"event": event.type, "data": json.dumps(event.to_dict(), default=str)}
        finally:
            bus.unsubscribe_queue(queue)

    return EventSourceResponse(event_generator())
