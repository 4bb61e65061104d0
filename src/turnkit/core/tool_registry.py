"""Central registry for callable tool contracts."""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Union

import httpx

from src.turnkit.observability import get_logger

logger = get_logger(__name__)

ToolHandler = Callable[..., Union[dict[str, Any], Awaitable[dict[str, Any]]]]


@dataclass(frozen=True)
class ToolSpec:
    """Declarative metadata + callable for one tool."""

    name: str
    handler: ToolHandler
    category: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    side_effecting: bool = False
    required_capabilities: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class ToolResult:
    content: str
    is_error: bool = False
    payload: dict[str, Any] = field(default_factory=dict)


def _error_payload(name: str, error: str) -> dict[str, Any]:
    return {"ok": False, "tool_name": name, "error": error, "source": "tool_registry"}


class ToolRegistry:
    """In-memory registry with deterministic lookup, capability checks and invocation."""

    def __init__(self, *, granted_capabilities: Iterable[str] = ()) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._granted: set[str] = set(granted_capabilities)

    def register(self, spec: ToolSpec) -> None:
        if not spec.name or not isinstance(spec.name, str):
            raise ValueError("Tool name must be a non-empty string.")
        if spec.name in self._tools:
            raise ValueError(f"Tool `{spec.name}` is already registered.")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        try:
            return self._tools[name]
        except KeyError as exc:
            raise KeyError(f"Unknown tool `{name}`.") from exc

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return sorted(self._tools)

    def list_specs(self) -> list[ToolSpec]:
        return [self._tools[name] for name in sorted(self._tools)]

    def grant(self, *capabilities: str) -> None:
        self._granted.update(capabilities)

    def allowed(self, name: str, required_capabilities: Iterable[str] | None = None) -> bool:
        """True when the tool exists and every required capability has been granted."""
        if name not in self._tools:
            return False
        required = set(self._tools[name].required_capabilities)
        if required_capabilities is not None:
            required.update(required_capabilities)
        return required.issubset(self._granted)

    def is_side_effecting(self, name: str) -> bool:
        spec = self._tools.get(name)
        return bool(spec and spec.side_effecting)

    def openai_tool_schemas(self) -> list[dict[str, Any]]:
        schemas: list[dict[str, Any]] = []
        for spec in self.list_specs():
            properties: dict[str, Any] = {}
            required: list[str] = []
            for param, meta in spec.parameters.items():
                meta = meta if isinstance(meta, dict) else {}
                prop = {"type": meta.get("type", "string")}
                if isinstance(meta.get("description"), str):
                    prop["description"] = meta["description"]
                properties[param] = prop
                if meta.get("required"):
                    required.append(param)
            schemas.append(
                {
                    "type": "function",
                    "function": {
                        "name": spec.name,
                        "description": spec.description,
                        "parameters": {"type": "object", "properties": properties, "required": required},
                    },
                }
            )
        return schemas

    async def invoke(self, name: str, **kwargs: Any) -> dict[str, Any]:
        try:
            spec = self.get(name)
        except KeyError as exc:
            return _error_payload(name, str(exc))

        try:
            result = spec.handler(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except TypeError as exc:
            return _error_payload(name, f"Invalid arguments for `{name}`: {exc}")
        except Exception as exc:
            logger.warning("tool_invoke_failed", tool=name, error=str(exc))
            return _error_payload(name, f"Tool `{name}` failed: {exc}")

        if isinstance(result, dict):
            return result
        return _error_payload(name, f"Tool `{name}` returned non-dict output.")

    async def execute(self, name: str, tool_input: dict[str, Any] | None = None) -> ToolResult:
        payload = await self.invoke(name, **(tool_input or {}))
        return ToolResult(
            content=json.dumps(payload, ensure_ascii=False, default=str),
            is_error=payload.get("ok") is False,
            payload=payload,
        )

    def describe(self, *, category: str | None = None) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for spec in self.list_specs():
            if category and spec.category != category:
                continue
            out.append(
                {
                    "name": spec.name,
                    "category": spec.category,
                    "description": spec.description,
                    "parameters": spec.parameters,
                    "side_effecting": spec.side_effecting,
                    "allowed": self.allowed(spec.name),
                }
            )
        return out


def create_default_registry(
    *,
    client: httpx.AsyncClient | None = None,
    granted_capabilities: Iterable[str] = ("clock", "weather", "market_data"),
) -> ToolRegistry:
    """Registry with the built-in kernel tools, sharing one HTTP client when given."""
    from src.turnkit.tools.kernel import get_capabilities, get_current_time, get_spot_price, get_weather_forecast

    registry = ToolRegistry(granted_capabilities=granted_capabilities)

    registry.register(
        ToolSpec(
            name="get_current_time",
            handler=get_current_time,
            category="kernel",
            description="Get the current UTC and local time, optionally for an IANA timezone name.",
            parameters={"timezone_name": {"type": "string", "required": False}},
            required_capabilities=frozenset({"clock"}),
        )
    )
    registry.register(
        ToolSpec(
            name="get_weather_forecast",
            handler=partial(get_weather_forecast, client=client),
            category="weather",
            description="Resolve a place name and return current conditions plus a daily forecast.",
            parameters={"location": {"type": "string", "required": True, "description": "City, optionally with state/country."}},
            required_capabilities=frozenset({"weather"}),
        )
    )
    registry.register(
        ToolSpec(
            name="coinbase_spot_price",
            handler=partial(get_spot_price, client=client),
            category="crypto",
            description="Get the live Coinbase spot price for a pair such as BTC-USD.",
            parameters={"symbol_pair": {"type": "string", "required": True}},
            required_capabilities=frozenset({"market_data"}),
        )
    )
    registry.register(
        ToolSpec(
            name="coinbase_capabilities",
            handler=get_capabilities,
            category="crypto",
            description="Report which Coinbase data (prices, portfolio, transactions) is available.",
            required_capabilities=frozenset({"market_data"}),
        )
    )
    return registry
