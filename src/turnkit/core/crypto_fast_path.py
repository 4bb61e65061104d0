"""Crypto intent classification and read-only market replies."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from .turn_types import FastPathResult

ToolCaller = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any] | None]]
CryptoIntent = Literal["status", "report", "transactions", "portfolio", "price"]
SymbolStatus = Literal["resolved", "ambiguous", "unresolved"]

CRYPTO_ROUTE = "crypto_fast_path"

CRYPTO_MARKER_RE = re.compile(
    r"\b(coinbase|crypto|bitcoin|ethereum|solana|cardano|dogecoin|ripple|litecoin|btc|eth|sol|xrp|ada|doge|ltc|"
    r"usdt|usdc|eurc)\b",
    re.IGNORECASE,
)
PRICE_INTENT_RE = re.compile(r"\b(price|quote|worth|rate|market\s+price|how much)\b", re.IGNORECASE)
PORTFOLIO_INTENT_RE = re.compile(r"\b(portfolio|holdings?|balances?|account|net\s*worth|assets?)\b", re.IGNORECASE)
TRANSACTION_INTENT_RE = re.compile(r"\b(transactions?|trades?|fills?|activity|history)\b", re.IGNORECASE)
REPORT_INTENT_RE = re.compile(r"\b(report|summary|pnl|profit|loss|weekly|daily)\b", re.IGNORECASE)
STATUS_INTENT_RE = re.compile(r"\b(status|connected|connection|capabilities?|scopes?)\b", re.IGNORECASE)
CODING_INTENT_RE = re.compile(
    r"\b(refactor|debug|fix|function|class|module|typescript|javascript|python|sql|unit\s*test|runtime)\b",
    re.IGNORECASE,
)
TRADE_ACTION_RE = re.compile(r"\b(buy|sell|trade|swap|transfer|withdraw|deposit)\b", re.IGNORECASE)
_PAIR_RE = re.compile(r"\b([a-z0-9]{2,10})\s*[/-]\s*([a-z0-9]{2,10})\b", re.IGNORECASE)

SYMBOL_ALIASES = {
    "bitcoin": "BTC",
    "xbt": "BTC",
    "ethereum": "ETH",
    "ether": "ETH",
    "solana": "SOL",
    "ripple": "XRP",
    "cardano": "ADA",
    "dogecoin": "DOGE",
    "litecoin": "LTC",
    "tether": "USDT",
    "usdt": "USDT",
    "usdc": "USDC",
    "eurc": "EURC",
}
KNOWN_SYMBOLS = (
    "BTC", "ETH", "SOL", "XRP", "ADA", "DOGE", "LTC", "USDT", "USDC", "EURC", "AVAX", "DOT", "MATIC",
    "LINK", "ATOM", "XLM", "ALGO", "TRX", "NEAR", "APT", "ARB", "OP", "FIL", "AAVE", "SUI", "SHIB",
)
PRICE_STOP_WORDS = frozenset(
    {
        "coinbase", "crypto", "price", "quote", "worth", "how", "much", "is", "my", "portfolio", "report",
        "transactions", "transaction", "status", "the", "a", "an", "for", "of", "to", "in", "on", "and",
        "what", "whats", "current", "today", "now", "please", "show", "me", "usd", "rate",
    }
)

INTENT_TOOLS: dict[str, str] = {
    "status": "coinbase_capabilities",
    "price": "coinbase_spot_price",
    "portfolio": "coinbase_portfolio_snapshot",
    "transactions": "coinbase_recent_transactions",
    "report": "coinbase_portfolio_report",
}
ACCOUNT_INTENTS = frozenset({"portfolio", "transactions", "report"})

TRADE_POLICY_REPLY = (
    "Trade and transfer execution is out of scope here. I can help with read-only prices, portfolio, "
    "transactions, and reports."
)
MISSING_USER_CONTEXT_REPLY = "I couldn't verify crypto account data because user context is missing. Retry from a signed-in session."
MISSING_PRICE_TARGET_REPLY = "\n".join(
    [
        "I can pull that, but I need the target.",
        "If you want a coin price, send a ticker or pair like `SUI` or `SUI-USD`.",
        "If you want account-level value, say `show my portfolio total balance` or `show my daily crypto report`.",
    ]
)
USD_TARGET_REPLY = "USD is the quote currency, not the crypto asset target. Share the crypto ticker (for example BTC or ETH)."


@dataclass(frozen=True, slots=True)
class SymbolResolution:
    status: SymbolStatus
    symbol_pair: str = ""
    suggestion: str = ""
    confidence: float = 0.0


@dataclass(frozen=True, slots=True)
class CryptoQuery:
    intent: CryptoIntent
    text: str


def _edit_distance(left: str, right: str) -> int:
    if not left:
        return len(right)
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, lch in enumerate(left, start=1):
        current = [i]
        for j, rch in enumerate(right, start=1):
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (lch != rch)))
        previous = current
    return previous[-1]


def _normalize_token(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").lower())


def has_direct_symbol_mention(text: str) -> bool:
    for token in re.split(r"[^a-z0-9]+", text or "", flags=re.IGNORECASE):
        if token and (token.upper() in KNOWN_SYMBOLS or token.lower() in SYMBOL_ALIASES):
            return True
    return False


def resolve_symbol_token(raw: str) -> tuple[SymbolStatus, str, float]:
    """Return `(status, symbol_or_suggestion, confidence)` for one candidate token."""
    token = _normalize_token(raw)
    if not token:
        return "unresolved", "", 0.0
    if token.upper() in KNOWN_SYMBOLS:
        return "resolved", token.upper(), 1.0
    if token in SYMBOL_ALIASES:
        return "resolved", SYMBOL_ALIASES[token], 0.98

    scores: dict[str, float] = {}
    for symbol in KNOWN_SYMBOLS:
        score = 1 - _edit_distance(token, symbol.lower()) / max(len(token), len(symbol))
        scores[symbol] = max(score, scores.get(symbol, 0.0))
    for alias, symbol in SYMBOL_ALIASES.items():
        score = 1 - _edit_distance(token, alias) / max(len(token), len(alias))
        scores[symbol] = max(score, scores.get(symbol, 0.0))

    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    best_symbol, best_score = ranked[0]
    margin = best_score - (ranked[1][1] if len(ranked) > 1 else 0.0)
    if best_score >= 0.93:
        return "resolved", best_symbol, best_score
    if len(token) <= 4 and _edit_distance(token, best_symbol.lower()) <= 1:
        return "ambiguous", best_symbol, 0.72
    if best_score >= 0.78 and margin >= 0.04:
        return "ambiguous", best_symbol, best_score
    return "unresolved", best_symbol, best_score


def extract_price_symbol(text: str) -> SymbolResolution:
    normalized = (text or "").lower()
    pair = _PAIR_RE.search(normalized)
    if pair:
        status, symbol, confidence = resolve_symbol_token(pair.group(1))
        quote = _normalize_token(pair.group(2)).upper() or "USD"
        if status == "resolved":
            return SymbolResolution("resolved", symbol_pair=f"{symbol}-{quote}", confidence=confidence)
        if status == "ambiguous":
            return SymbolResolution("ambiguous", suggestion=f"{symbol}-{quote}", confidence=confidence)
        return SymbolResolution("unresolved")

    tokens = [token for token in re.split(r"[^a-z0-9]+", normalized) if 2 <= len(token) <= 14]
    candidates = [
        token
        for token in tokens
        if token not in PRICE_STOP_WORDS
        and (token.upper() in KNOWN_SYMBOLS or token in SYMBOL_ALIASES or len(token) <= 5)
    ]
    best_resolved: tuple[str, float] | None = None
    best_ambiguous: tuple[str, float] | None = None
    for candidate in candidates:
        status, symbol, confidence = resolve_symbol_token(candidate)
        if status == "resolved" and (best_resolved is None or confidence > best_resolved[1]):
            best_resolved = (symbol, confidence)
        elif status == "ambiguous" and (best_ambiguous is None or confidence > best_ambiguous[1]):
            best_ambiguous = (symbol, confidence)
    if best_resolved:
        return SymbolResolution("resolved", symbol_pair=f"{best_resolved[0]}-USD", confidence=best_resolved[1])
    if best_ambiguous:
        return SymbolResolution("ambiguous", suggestion=f"{best_ambiguous[0]}-USD", confidence=best_ambiguous[1])
    return SymbolResolution("unresolved")


def is_crypto_request(text: str) -> bool:
    normalized = (text or "").strip()
    if not normalized:
        return False
    has_marker = bool(CRYPTO_MARKER_RE.search(normalized))
    if CODING_INTENT_RE.search(normalized) and not has_marker:
        return False
    if has_marker:
        return True
    return bool(PRICE_INTENT_RE.search(normalized)) and has_direct_symbol_mention(normalized)


def infer_crypto_intent(text: str) -> CryptoIntent:
    lower = (text or "").lower()
    valuation = re.search(r"\b(pnl|profit|loss|total|net\s+worth|value|worth)\b", lower) and re.search(
        r"\b(portfolio|account|holdings?|balances?)\b", lower
    )
    if valuation:
        return "report"
    if STATUS_INTENT_RE.search(lower) and "coinbase" in lower:
        return "status"
    if REPORT_INTENT_RE.search(lower) and (CRYPTO_MARKER_RE.search(lower) or PORTFOLIO_INTENT_RE.search(lower)):
        return "report"
    if TRANSACTION_INTENT_RE.search(lower):
        return "transactions"
    if PORTFOLIO_INTENT_RE.search(lower):
        return "portfolio"
    return "price"


def _format_usd(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "n/a"
    places = 2 if abs(value) >= 1 else 6
    return f"${value:,.{places}f}"


def _format_checked(value: Any) -> str:
    try:
        return datetime.fromisoformat(str(value)).strftime("%Y-%m-%d %H:%M UTC")
    except ValueError:
        return "just now"


def build_price_reply(payload: dict[str, Any]) -> str:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    pair = str(data.get("symbol_pair") or "unknown pair")
    return "\n".join(
        [
            f"{pair} now: {_format_usd(data.get('price'))}.",
            f"Freshness: fetched {_format_checked(data.get('fetched_at'))}.",
            f"Source: {payload.get('source') or 'coinbase'}.",
        ]
    )


def build_status_reply(payload: dict[str, Any]) -> str:
    caps = payload.get("capabilities") if isinstance(payload.get("capabilities"), dict) else {}
    return "\n".join(
        [
            f"Coinbase status: {caps.get('status', 'unknown')}.",
            (
                f"Capabilities: market={caps.get('market_data', 'unknown')}, "
                f"portfolio={caps.get('portfolio', 'unknown')}, transactions={caps.get('transactions', 'unknown')}."
            ),
            f"Checked: {_format_checked(payload.get('checked_at'))}.",
            "Commands: price <ticker>, portfolio, recent transactions, my crypto report.",
        ]
    )


def build_account_reply(payload: dict[str, Any]) -> str:
    summary = payload.get("summary") or payload.get("reply")
    return summary.strip() if isinstance(summary, str) else ""


class CryptoFastPath:
    def classify(self, text: str) -> CryptoQuery | None:
        if not is_crypto_request(text):
            return None
        return CryptoQuery(intent=infer_crypto_intent(text), text=text)

    async def run(self, text: str, call_tool: ToolCaller, *, user_context_id: str = "") -> FastPathResult | None:
        query = self.classify(text)
        if query is None:
            return None
        lower = text.lower()
        if TRADE_ACTION_RE.search(lower):
            return FastPathResult(reply=TRADE_POLICY_REPLY, route=CRYPTO_ROUTE, source="policy")

        tool_name = INTENT_TOOLS[query.intent]
        if query.intent in ACCOUNT_INTENTS and not user_context_id:
            return FastPathResult(reply=MISSING_USER_CONTEXT_REPLY, route=CRYPTO_ROUTE, source="validation")

        if query.intent == "price":
            if re.search(r"\b(price\s+usd|usd\s+price)\b", lower):
                return FastPathResult(reply=USD_TARGET_REPLY, route=CRYPTO_ROUTE, source="validation")
            resolution = extract_price_symbol(text)
            if resolution.status == "ambiguous":
                return FastPathResult(
                    reply=(
                        f"I am not fully confident on the ticker. Did you mean {resolution.suggestion}? "
                        "Send that symbol/pair exactly and I will fetch it."
                    ),
                    route=CRYPTO_ROUTE,
                    source="clarify",
                )
            if resolution.status != "resolved":
                return FastPathResult(reply=MISSING_PRICE_TARGET_REPLY, route=CRYPTO_ROUTE, source="validation")
            payload = await call_tool(tool_name, {"symbol_pair": resolution.symbol_pair})
            if payload is None:
                return None
            return FastPathResult(reply=build_price_reply(payload), route=CRYPTO_ROUTE, source="coinbase", tool_call=tool_name)

        arguments: dict[str, Any] = {}
        if query.intent in ACCOUNT_INTENTS:
            arguments["user_context_id"] = user_context_id
        payload = await call_tool(tool_name, arguments)
        if payload is None:
            return None
        reply = build_status_reply(payload) if query.intent == "status" else build_account_reply(payload)
        if not reply:
            return None
        return FastPathResult(reply=reply, route=CRYPTO_ROUTE, source="coinbase", tool_call=tool_name)
