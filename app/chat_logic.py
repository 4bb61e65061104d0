"""Chat request handling between the HTTP surface and the turn pipeline."""

from __future__ import annotations

import asyncio
from typing import Any

from src.turnkit.core.pipeline import TurnPipeline
from src.turnkit.core.turn_types import Turn
from src.turnkit.observability import get_logger

logger = get_logger(__name__)

MAX_MESSAGE_CHARS = 8000


async def handle_chat_message(
    message: str,
    *,
    pipeline: TurnPipeline,
    session_id: str = "default",
    user_context_id: str = "",
    conversation_id: str = "",
    source: str = "chat",
    hints: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Run one user message through the pipeline.

    The turn is shielded so a client disconnect does not cancel provider or
    tool calls already in flight; the pipeline holds the turn task until it
    finishes and commits its transcript.
    """
    text = (message or "").strip()
    if not text:
        return {
            "ok": False,
            "reply": "Please enter a message.",
            "route": "validation",
            "data": None,
            "error": "empty_message",
        }
    if len(text) > MAX_MESSAGE_CHARS:
        return {
            "ok": False,
            "reply": f"Please keep messages under {MAX_MESSAGE_CHARS} characters.",
            "route": "validation",
            "data": None,
            "error": "message_too_long",
        }

    turn = Turn(
        text=text,
        session_key=session_id,
        user_context_id=user_context_id,
        conversation_id=conversation_id,
        source=source,
        hints=dict(hints or {}),
        bucket_sec=pipeline.settings.turn_id_bucket_sec,
    )
    task = pipeline.start_turn(turn)
    try:
        result = await asyncio.shield(task)
    except asyncio.CancelledError:
        logger.info("chat_request_cancelled", turn_id=turn.turn_id, session_key=turn.session_key)
        raise

    if result.duplicate:
        return {
            "ok": False,
            "reply": "",
            "route": result.route,
            "data": {"turn_id": result.turn_id, "duplicate": True},
            "error": "duplicate_turn",
        }
    return {
        "ok": result.ok,
        "reply": result.reply,
        "route": result.route,
        "data": {"turn_id": result.turn_id, "summary": result.summary},
        "error": result.summary.get("error"),
    }
