"""Web search tool.

No search provider is wired in yet; the tool answers with an explicit
"not configured" message so the model can tell the user instead of
inventing results.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import Field

from tool_loop_agent.ai.tools.base import Tool, ToolInput


class WebSearchInput(ToolInput):
    query: str = Field(min_length=1, description="The search query")
    num_results: Optional[int] = Field(default=None, ge=1, le=20, description="Maximum results")


class WebSearchTool(Tool):
    name = "search_web"
    description = (
        "Search the web for information. Use this when you need to find current information."
    )
    input_model = WebSearchInput

    def __init__(self, default_results: int = 5):
        self._default_results = default_results

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        return {
            "message": "Web search is not configured. Please set up a search API integration.",
            "query": kwargs["query"],
            "num_results": kwargs.get("num_results") or self._default_results,
            "results": [],
        }
