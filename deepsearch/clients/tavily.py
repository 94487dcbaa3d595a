"""Tavily search API client."""

import os
from dataclasses import dataclass

import httpx
from pydantic import BaseModel, field_validator

from deepsearch.utils.logging import get_logger

logger = get_logger(__name__)


class TavilyResult(BaseModel):
    """A single search hit as returned by Tavily."""

    title: str = ""
    url: str = ""
    content: str = ""

    class Config:
        extra = "ignore"

    @field_validator("title", "url", "content", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        return "" if value is None else value


class TavilyResponse(BaseModel):
    """Search response body."""

    results: list[TavilyResult] = []

    class Config:
        extra = "ignore"


@dataclass
class SearchConfig:
    """Configuration for the search provider."""

    api_url: str = "https://api.tavily.com/search"
    max_results: int = 5
    search_depth: str = "basic"
    max_content_chars: int = 500
    timeout: float = 15.0


class TavilyClient:
    """Thin async client for the Tavily search endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        config: SearchConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Tavily client.

        Args:
            api_key: Tavily API key (defaults to TAVILY_API_KEY env var)
            config: Search configuration
            transport: Optional httpx transport, used by tests
        """
        tavily_api_key = api_key or os.getenv("TAVILY_API_KEY")
        if not tavily_api_key:
            raise ValueError("TAVILY_API_KEY environment variable is required")

        self.api_key = tavily_api_key
        self.config = config or SearchConfig()
        self._transport = transport

    async def search(self, query: str) -> list[TavilyResult]:
        """Run a search and return the parsed results.

        Raises:
            httpx.HTTPError: On transport failures and non-success responses
            ValueError: If the body is not JSON or does not have the expected shape
        """
        payload = {
            "query": query,
            "max_results": self.config.max_results,
            "search_depth": self.config.search_depth,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        logger.debug(f"Searching Tavily for: {query}")
        async with httpx.AsyncClient(transport=self._transport, timeout=self.config.timeout) as client:
            response = await client.post(self.config.api_url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()

        parsed = TavilyResponse.model_validate(data)
        logger.debug(f"Tavily returned {len(parsed.results)} results for: {query}")
        return parsed.results


_tavily_client: TavilyClient | None = None


def get_tavily_client() -> TavilyClient:
    """Get or create Tavily client instance."""
    global _tavily_client
    if _tavily_client is None:
        _tavily_client = TavilyClient()
    return _tavily_client
