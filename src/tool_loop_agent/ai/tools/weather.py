"""Current weather tool backed by the Open-Meteo forecast API."""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import Field

from tool_loop_agent.ai.tools.base import Tool, ToolInput
from tool_loop_agent.log import get_logger

logger = get_logger(__name__)

# WMO weather interpretation codes
WEATHER_DESCRIPTIONS: dict[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Foggy",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    71: "Slight snow",
    73: "Moderate snow",
    75: "Heavy snow",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}


def describe_weather_code(code: int) -> str:
    return WEATHER_DESCRIPTIONS.get(code, "Unknown")


class WeatherInput(ToolInput):
    latitude: float = Field(ge=-90, le=90, description="Latitude of the location")
    longitude: float = Field(ge=-180, le=180, description="Longitude of the location")
    city: str = Field(description="City name for display purposes")


class WeatherTool(Tool):
    name = "get_weather"
    description = "Get the current weather at a location"
    input_model = WeatherInput

    def __init__(
        self,
        base_url: str = "https://api.open-meteo.com/v1/forecast",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        city = kwargs["city"]
        params = {
            "latitude": kwargs["latitude"],
            "longitude": kwargs["longitude"],
            "current": "temperature_2m,weathercode,relativehumidity_2m",
            "timezone": "auto",
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(self._base_url, params=params)
            response.raise_for_status()
            current = response.json()["current"]

        code = int(current["weathercode"])
        logger.debug("weather_fetched", city=city, code=code)
        return {
            "city": city,
            "temperature": current["temperature_2m"],
            "unit": "°C",
            "weather_code": code,
            "humidity": current["relativehumidity_2m"],
            "description": describe_weather_code(code),
        }
