"""Clock tool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.turnkit.core.config_loader import load_config_or_empty


def get_current_time(timezone_name: str | None = None) -> dict[str, Any]:
    """Return current UTC and local time for `timezone_name` (or the configured default)."""
    requested_tz = timezone_name or load_config_or_empty().get("timezone")

    utc_now = datetime.now(timezone.utc)
    local_tz_name = "UTC"
    local_source = "utc_fallback"
    local_now = utc_now

    if isinstance(requested_tz, str) and requested_tz:
        try:
            local_now = utc_now.astimezone(ZoneInfo(requested_tz))
            local_tz_name = requested_tz
            local_source = "requested_timezone" if timezone_name else "config_timezone"
        except (ZoneInfoNotFoundError, ValueError):
            local_source = "invalid_timezone_fallback"

    return {
        "ok": True,
        "iso_utc": utc_now.isoformat(),
        "iso_local": local_now.isoformat(),
        "human_utc": utc_now.strftime("%Y-%m-%d %I:%M:%S %p UTC"),
        "human_local": local_now.strftime("%Y-%m-%d %I:%M:%S %p %Z"),
        "timezone": local_tz_name,
        "timezone_source": local_source,
        "source": "system_clock_utc",
    }
