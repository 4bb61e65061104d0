"""Read-only crypto market tools using Coinbase public endpoints."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import httpx

from src.turnkit.core.config_loader import load_config_or_empty

DEFAULT_COINBASE_API_URL = "https://api.coinbase.com/v2"
_PAIR_RE = re.compile(r"^[A-Z0-9]{2,10}-[A-Z]{3,5}$")


def _crypto_settings() -> dict[str, Any]:
    section = load_config_or_empty().get("crypto")
    crypto_config = section if isinstance(section, dict) else {}
    return {
        "base_url": str(crypto_config.get("base_url", DEFAULT_COINBASE_API_URL)).rstrip("/"),
        "timeout_sec": float(crypto_config.get("timeout_sec", 6)),
    }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_spot_price(symbol_pair: str, *, client: httpx.AsyncClient | None = None) -> dict[str, Any]:
    """Return the Coinbase spot price for a pair like `BTC-USD`."""
    pair = (symbol_pair or "").strip().upper()
    if not _PAIR_RE.match(pair):
        return {"ok": False, "source": "validation", "error": f"Invalid symbol pair: {symbol_pair!r}"}

    settings = _crypto_settings()
    owns_client = client is None
    http = client or httpx.AsyncClient()
    try:
        response = await http.get(f"{settings['base_url']}/prices/{pair}/spot", timeout=settings["timeout_sec"])
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        return {"ok": False, "source": "coinbase_public_error", "error": str(exc)}
    finally:
        if owns_client:
            await http.aclose()

    data = payload.get("data") if isinstance(payload, dict) else None
    amount = data.get("amount") if isinstance(data, dict) else None
    try:
        price = float(amount)
    except (TypeError, ValueError):
        return {"ok": False, "source": "coinbase_public_error", "error": "Spot price missing from response."}

    return {
        "ok": True,
        "source": "coinbase_public",
        "data": {"symbol_pair": pair, "price": price, "fetched_at": _now_iso()},
        "error": None,
    }


def get_capabilities() -> dict[str, Any]:
    """Describe which crypto data this runtime can serve."""
    return {
        "ok": True,
        "source": "coinbase_public",
        "capabilities": {
            "status": "public_only",
            "market_data": "available",
            "portfolio": "unavailable",
            "transactions": "unavailable",
        },
        "checked_at": _now_iso(),
        "error": None,
    }
