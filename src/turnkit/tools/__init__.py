"""Tool surface for turnkit."""

from .kernel import get_capabilities, get_current_time, get_spot_price, get_weather_forecast

__all__ = [
    "get_capabilities",
    "get_current_time",
    "get_spot_price",
    "get_weather_forecast",
]
