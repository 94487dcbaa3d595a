"""Web search tool."""

from typing import Any

import httpx
from pydantic import BaseModel, Field

from deepsearch.clients.tavily import SearchConfig, TavilyClient, get_tavily_client
from deepsearch.tools.base import ToolDefinition, ToolName
from deepsearch.utils.logging import get_logger

logger = get_logger(__name__)


class WebSearchInput(BaseModel):
    """Input schema for the web search tool."""

    query: str = Field(
        ...,
        min_length=1,
        max_length=400,
        description="The search query",
        examples=["CRM pricing for small teams 2025", "HubSpot vs Pipedrive features"],
    )


def create_web_search_tool(
    client: TavilyClient | None = None,
    config: SearchConfig | None = None,
    needs_approval: bool = False,
) -> ToolDefinition:
    """Create the web search tool.

    Args:
        client: Search client (defaults to the global Tavily client, created on first use)
        config: Result limits, defaults to the client's configuration
        needs_approval: Require an approval round trip before each search
    """

    async def web_search_handler(params: WebSearchInput) -> dict[str, Any]:
        query = params.query

        try:
            search_client = client or get_tavily_client()
            results = await search_client.search(query)
        except (httpx.HTTPError, ValueError) as e:
            # An empty result keeps the research loop going
            logger.warning(f"Web search failed for '{query}': {e}")
            return {"query": query, "results": []}

        limits = config or search_client.config
        logger.info(f"Web search for '{query}' returned {len(results)} results")
        return {
            "query": query,
            "results": [
                {
                    "title": result.title,
                    "url": result.url,
                    "content": result.content[: limits.max_content_chars],
                }
                for result in results[: limits.max_results]
            ],
        }

    return ToolDefinition(
        name=ToolName.WEB_SEARCH,
        description=(
            "Search the web for information on a topic. "
            "Use this multiple times to research different aspects of the question."
        ),
        input_schema_class=WebSearchInput,
        handler=web_search_handler,
        needs_approval=needs_approval,
    )
