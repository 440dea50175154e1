"""Tests for the built-in tools."""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from tool_loop_agent.ai.tools.calculator import CalculatorTool, evaluate
from tool_loop_agent.ai.tools.datetime_tool import DateTimeTool
from tool_loop_agent.ai.tools.executor import ToolExecutor
from tool_loop_agent.ai.tools.weather import WeatherTool, describe_weather_code
from tool_loop_agent.ai.tools.web_search import WebSearchTool

# -- calculate ---------------------------------------------------------------


async def test_calculate_two_plus_two() -> None:
    result = await CalculatorTool().execute(expression="2+2")
    assert result == {"expression": "2+2", "result": 4}


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("10 * 5", 50),
        ("7 / 2", 3.5),
        ("(1 + 2) * 3", 9),
        ("-4 + 10", 6),
        ("2 ** 10", 1024),
        ("17 % 5", 2),
        ("6 / 3", 2),
    ],
)
def test_evaluate(expression: str, expected: float) -> None:
    assert evaluate(expression) == expected


@pytest.mark.parametrize("expression", ["__import__('os')", "abs(-1)", "x + 1"])
def test_evaluate_rejects_non_arithmetic(expression: str) -> None:
    with pytest.raises(ValueError, match="Invalid characters"):
        evaluate(expression)


def test_evaluate_rejects_huge_exponent() -> None:
    with pytest.raises(ValueError, match="Exponent too large"):
        evaluate("2 ** 100000")


@pytest.mark.parametrize(
    "expression",
    ["((9**999)**999)**60", "10**999*10**999*10**999*10**999*10**999", "(2**999)**9"],
)
def test_evaluate_rejects_oversized_results(expression: str) -> None:
    with pytest.raises(ValueError, match="Result too large"):
        evaluate(expression)


async def test_calculate_oversized_result_fails_fast(executor: ToolExecutor) -> None:
    loop = asyncio.get_running_loop()
    started = loop.time()

    result = await executor.execute("calculate", {"expression": "((9**999)**999)**60"})

    assert result.error_kind == "execution_error"
    assert "Result too large" in result.error
    assert loop.time() - started < 1.0


async def test_calculate_division_by_zero_is_execution_error(executor: ToolExecutor) -> None:
    result = await executor.execute("calculate", {"expression": "1/0"})
    assert result.error_kind == "execution_error"


async def test_calculate_empty_expression_is_invalid(executor: ToolExecutor) -> None:
    result = await executor.execute("calculate", {"expression": ""})
    assert result.error_kind == "invalid_arguments"


# -- get_date_time -----------------------------------------------------------


async def test_date_time_uses_clock() -> None:
    fixed = datetime(2024, 3, 1, 12, 30, 0, tzinfo=timezone.utc)
    tool = DateTimeTool(clock=lambda: fixed)

    result = await tool.execute()

    assert result["iso"] == "2024-03-01T12:30:00+00:00"
    assert result["timestamp"] == int(fixed.timestamp() * 1000)
    assert result["formatted"].startswith("March 01, 2024")


async def test_date_time_with_timezone() -> None:
    fixed = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    tool = DateTimeTool(clock=lambda: fixed)

    result = await tool.execute(timezone="Asia/Tokyo")

    assert "09:00:00 PM" in result["formatted"]
    assert result["iso"] == "2024-03-01T12:00:00+00:00"


async def test_date_time_unknown_timezone() -> None:
    with pytest.raises(ValueError, match="Unknown timezone"):
        await DateTimeTool().execute(timezone="Mars/Olympus_Mons")


# -- get_weather -------------------------------------------------------------


async def test_weather_parses_open_meteo_response() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            "current": {"temperature_2m": 21.4, "weathercode": 2, "relativehumidity_2m": 55},
        })

    tool = WeatherTool(base_url="https://weather.test/v1/forecast", transport=httpx.MockTransport(handler))
    result = await tool.execute(latitude=52.52, longitude=13.41, city="Berlin")

    assert result == {
        "city": "Berlin",
        "temperature": 21.4,
        "unit": "°C",
        "weather_code": 2,
        "humidity": 55,
        "description": "Partly cloudy",
    }
    assert seen[0].url.params["latitude"] == "52.52"
    assert seen[0].url.params["timezone"] == "auto"


async def test_weather_http_error_propagates() -> None:
    tool = WeatherTool(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    with pytest.raises(httpx.HTTPStatusError):
        await tool.execute(latitude=0, longitude=0, city="Nowhere")


async def test_weather_out_of_range_latitude_is_invalid(executor: ToolExecutor) -> None:
    result = await executor.execute("get_weather", {"latitude": 120, "longitude": 0, "city": "X"})
    assert result.error_kind == "invalid_arguments"


def test_describe_weather_code_unknown() -> None:
    assert describe_weather_code(95) == "Thunderstorm"
    assert describe_weather_code(42) == "Unknown"


# -- search_web --------------------------------------------------------------


async def test_search_web_not_configured() -> None:
    result = await WebSearchTool(default_results=3).execute(query="python asyncio")

    assert result["query"] == "python asyncio"
    assert result["num_results"] == 3
    assert result["results"] == []
    assert "not configured" in result["message"]
