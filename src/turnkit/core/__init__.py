"""Core turn execution pipeline for turnkit."""

from .completion_adapters import DirectCompletionAdapter, StreamingCompletionAdapter, ToolCallingAdapter
from .config_loader import (
    clear_config_cache,
    get_default_model,
    get_fallback_model,
    get_logging_config,
    get_model_by_alias,
    get_model_config,
    get_pipeline_config,
    get_provider_config,
    get_weather_config,
    load_config,
    load_config_or_empty,
    resolve_config_path,
)
from .crypto_fast_path import CryptoFastPath
from .dedupe import DeliveryLedger, InboundDedupe
from .event_bus import AssistantStream, EventBus, LifecycleEvent, StreamOrderError
from .fast_path import FastPathRouter, PendingConfirmStore
from .fallbacks import GENERIC_FALLBACK_REPLY, build_constraint_safe_fallback, resolve_adaptive_max_completion_tokens
from .idempotency import IdempotencyLedger, build_idempotency_key
from .latency_policy import build_execution_policy
from .llm_client import CompletionProvider, CompletionRequest, CompletionResult, LLMClient, is_likely_timeout_error
from .output_constraints import OutputConstraints, parse_output_constraints, validate_output_constraints
from .pipeline import TurnPipeline
from .prompt_builder import BuiltPrompt, PromptBuilder, PromptSection
from .providers import OpenAICompatibleProvider, ProviderError
from .refinement import (
    ConstraintCorrection,
    ConstraintSafeFallback,
    EmptyReplyRecovery,
    GenericFallback,
    RefinementContext,
    RefinementOutcome,
    RefinementRunner,
)
from .session_store import TranscriptStore
from .settings import PipelineSettings
from .token_estimator import CharRatioTokenEstimator, TokenEstimator, estimate_messages_tokens, estimate_text_tokens
from .tool_loop import ToolLoopOutcome, ToolLoopRunner
from .tool_registry import ToolRegistry, ToolResult, ToolSpec, create_default_registry
from .turn_types import (
    ClaimResult,
    DeliveryKey,
    ExecutionPolicy,
    FastPathResult,
    IdempotencyRecord,
    RunSummary,
    ToolLoopBudget,
    Turn,
    TurnResult,
)
from .weather_fast_path import WeatherFastPath, WeatherReplyCache

__all__ = [
    "AssistantStream",
    "BuiltPrompt",
    "CharRatioTokenEstimator",
    "ClaimResult",
    "CompletionProvider",
    "CompletionRequest",
    "CompletionResult",
    "ConstraintCorrection",
    "ConstraintSafeFallback",
    "CryptoFastPath",
    "DeliveryKey",
    "DeliveryLedger",
    "DirectCompletionAdapter",
    "EmptyReplyRecovery",
    "EventBus",
    "ExecutionPolicy",
    "FastPathResult",
    "FastPathRouter",
    "GENERIC_FALLBACK_REPLY",
    "GenericFallback",
    "IdempotencyLedger",
    "IdempotencyRecord",
    "InboundDedupe",
    "LLMClient",
    "LifecycleEvent",
    "OpenAICompatibleProvider",
    "OutputConstraints",
    "PendingConfirmStore",
    "PipelineSettings",
    "PromptBuilder",
    "PromptSection",
    "ProviderError",
    "RefinementContext",
    "RefinementOutcome",
    "RefinementRunner",
    "RunSummary",
    "StreamOrderError",
    "StreamingCompletionAdapter",
    "TokenEstimator",
    "ToolCallingAdapter",
    "ToolLoopBudget",
    "ToolLoopOutcome",
    "ToolLoopRunner",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "TranscriptStore",
    "Turn",
    "TurnPipeline",
    "TurnResult",
    "WeatherFastPath",
    "WeatherReplyCache",
    "build_constraint_safe_fallback",
    "build_execution_policy",
    "build_idempotency_key",
    "clear_config_cache",
    "estimate_messages_tokens",
    "estimate_text_tokens",
    "get_default_model",
    "get_fallback_model",
    "get_logging_config",
    "get_model_by_alias",
    "get_model_config",
    "get_pipeline_config",
    "get_provider_config",
    "get_weather_config",
    "is_likely_timeout_error",
    "load_config",
    "load_config_or_empty",
    "parse_output_constraints",
    "resolve_adaptive_max_completion_tokens",
    "resolve_config_path",
    "validate_output_constraints",
]
