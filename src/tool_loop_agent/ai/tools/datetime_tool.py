"""Current date/time tool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field

from tool_loop_agent.ai.tools.base import Tool, ToolInput


class DateTimeInput(ToolInput):
    timezone: Optional[str] = Field(
        default=None,
        description="Optional timezone (e.g., 'America/New_York', 'Asia/Kolkata')",
    )


class DateTimeTool(Tool):
    name = "get_date_time"
    description = "Get the current date and time in ISO format"
    input_model = DateTimeInput

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        now = self._clock()
        tz_name = kwargs.get("timezone")
        if tz_name:
            try:
                local = now.astimezone(ZoneInfo(tz_name))
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"Unknown timezone: {tz_name}") from e
        else:
            local = now

        return {
            "iso": now.astimezone(timezone.utc).isoformat(),
            "formatted": local.strftime("%B %d, %Y, %I:%M:%S %p %Z"),
            "timestamp": int(now.timestamp() * 1000),
        }
