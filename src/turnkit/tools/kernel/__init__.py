"""Kernel-level built-in tools."""

from .crypto import get_capabilities, get_spot_price
from .time import get_current_time
from .weather import get_weather_forecast

__all__ = [
    "get_capabilities",
    "get_current_time",
    "get_spot_price",
    "get_weather_forecast",
]
