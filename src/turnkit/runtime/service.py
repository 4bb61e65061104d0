"""Shared runtime ownership facade for app entrypoints."""

from __future__ import annotations

from importlib import import_module
from threading import RLock
from typing import Any

import httpx

from src.turnkit.core.config_loader import load_config_or_empty
from src.turnkit.core.event_bus import EventBus
from src.turnkit.core.llm_client import LLMClient
from src.turnkit.core.pipeline import TurnPipeline
from src.turnkit.core.session_store import TranscriptStore
from src.turnkit.core.settings import PipelineSettings
from src.turnkit.core.tool_registry import create_default_registry
from src.turnkit.core.turn_types import DeliveryKey
from src.turnkit.observability import get_logger, setup_logging_from_config

logger = get_logger(__name__)


class RuntimeService:
    """Single authority for runtime lifecycle and app-facing operations.

    Components are built lazily on first use so importing the app never touches
    config or the network.
    """

    def __init__(self, config: dict[str, Any] | None = None, *, pipeline: TurnPipeline | None = None) -> None:
        self._lock = RLock()
        self._config = config
        self._started = False
        self._last_start_source: str | None = None
        self._last_stop_source: str | None = None
        self._http: httpx.AsyncClient | None = None
        self._llm: LLMClient | None = None
        self._pipeline: TurnPipeline | None = pipeline

    @staticmethod
    def _chat_logic_module() -> Any:
        return import_module("app.chat_logic")

    @property
    def pipeline(self) -> TurnPipeline:
        with self._lock:
            if self._pipeline is None:
                self._pipeline = self._build_pipeline()
            return self._pipeline

    @property
    def bus(self) -> EventBus:
        return self.pipeline.bus

    def _build_pipeline(self) -> TurnPipeline:
        config = self._config if self._config is not None else load_config_or_empty()
        settings = PipelineSettings.from_config(config)
        self._http = httpx.AsyncClient()
        self._llm = LLMClient(config)
        registry = create_default_registry(client=self._http)
        assistant = config.get("assistant") if isinstance(config.get("assistant"), dict) else {}
        pipeline = TurnPipeline(
            self._llm,
            registry,
            settings=settings,
            store=TranscriptStore.from_config(config),
            fallback_model=self._llm.fallback_model(),
            assistant_name=str(assistant.get("name") or ""),
        )
        logger.info("pipeline_built", tools=registry.names(), fallback_model=pipeline.fallback_model)
        return pipeline

    def start(self, *, source: str = "runtime") -> dict[str, Any]:
        with self._lock:
            already_started = self._started
            self._started = True
            self._last_start_source = source
            config = self._config if self._config is not None else load_config_or_empty()
        setup_logging_from_config(config)
        _ = self.pipeline
        return {
            "ok": True,
            "source": "runtime_service",
            "already_started": already_started,
            "started": True,
            "start_source": source,
        }

    async def stop(self, *, source: str = "runtime") -> dict[str, Any]:
        with self._lock:
            pipeline, llm, http = self._pipeline, self._llm, self._http
            self._pipeline = self._llm = self._http = None
            self._started = False
            self._last_stop_source = source
        if pipeline is not None:
            await pipeline.drain()
        if llm is not None:
            await llm.aclose()
        if http is not None:
            await http.aclose()
        return {"ok": True, "source": "runtime_service", "stopped": True, "stop_source": source}

    def health(self) -> dict[str, Any]:
        with self._lock:
            pipeline = self._pipeline
        return {
            "ok": True,
            "source": "runtime_service",
            "runtime": {
                "started": self._started,
                "last_start_source": self._last_start_source,
                "last_stop_source": self._last_stop_source,
            },
            "pipeline": pipeline.stats() if pipeline is not None else None,
        }

    async def chat(
        self,
        *,
        message: str,
        session_id: str = "default",
        user_context_id: str = "",
        conversation_id: str = "",
        source: str = "chat",
        hints: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        mod = self._chat_logic_module()
        return await mod.handle_chat_message(
            message,
            pipeline=self.pipeline,
            session_id=session_id,
            user_context_id=user_context_id,
            conversation_id=conversation_id,
            source=source,
            hints=hints,
        )

    async def reset_session(self, *, session_id: str = "default") -> dict[str, Any]:
        return await self.pipeline.reset_session(session_id)

    async def deliver(
        self,
        *,
        conversation_id: str,
        text: str,
        node_id: str,
        output_index: int = 0,
        mission_run_id: str = "",
        run_key: str = "",
        schedule_id: str = "",
        channel: str = "",
        user_context_id: str = "",
    ) -> dict[str, Any]:
        try:
            key = DeliveryKey(
                node_id=node_id,
                output_index=output_index,
                mission_run_id=mission_run_id,
                run_key=run_key,
                schedule_id=schedule_id,
                channel=channel,
            )
        except ValueError as exc:
            return {"ok": False, "error": str(exc)}
        return await self.pipeline.deliver_output(key, conversation_id, text, user_context_id=user_context_id)

    def recent_runs(self, *, limit: int = 20) -> dict[str, Any]:
        runs = self.pipeline.recent_runs(limit)
        return {"ok": True, "count": len(runs), "runs": runs}


_RUNTIME_SERVICE: RuntimeService | None = None


def get_runtime_service() -> RuntimeService:
    global _RUNTIME_SERVICE
    if _RUNTIME_SERVICE is None:
        _RUNTIME_SERVICE = RuntimeService()
    return _RUNTIME_SERVICE


def set_runtime_service(service: RuntimeService | None) -> None:
    """Swap the process-wide service; tests use this to inject a configured instance."""
    global _RUNTIME_SERVICE
    _RUNTIME_SERVICE = service
