"""Shared fixtures: a scripted generation client and a search stub."""

import asyncio
import json
from typing import Any

import httpx
import pytest

from deepsearch.clients.tavily import TavilyClient
from deepsearch.models.llm import GenerationFinish, LLMUsage, TextDelta, ToolCallRequest
from deepsearch.models.messages import Message, TextPart
from deepsearch.models.session import Session
from deepsearch.services.orchestrator import OrchestratorConfig, StepOrchestrator
from deepsearch.tools.registry import ToolsRegistry
from deepsearch.tools.user_timezone import create_user_timezone_tool
from deepsearch.tools.web_search import create_web_search_tool


class Hang:
    """Script item that blocks the stream until the turn is cancelled."""


class ScriptedGenerationClient:
    """Generation client that replays one scripted list of fragments per step.

    Items may be fragments, exceptions (raised mid-stream) or ``Hang``. Once
    the script runs out, the last step is replayed.
    """

    def __init__(self, steps: list[list[Any]]):
        self.steps = steps
        self.requests: list[list[Message]] = []
        self.system_prompts: list[str] = []
        self.tools: list[Any] = []

    async def stream_message(self, messages, system_prompt, tools=None):
        self.requests.append(list(messages))
        self.system_prompts.append(system_prompt)
        self.tools = tools or []
        script = self.steps[min(len(self.requests), len(self.steps)) - 1]
        for item in script:
            if isinstance(item, Exception):
                raise item
            if isinstance(item, Hang):
                await asyncio.Event().wait()
            yield item

    @property
    def step_count(self) -> int:
        return len(self.requests)


def finish(stop_reason: str = "end_turn") -> GenerationFinish:
    return GenerationFinish(stop_reason=stop_reason, usage=LLMUsage(input_tokens=10, output_tokens=5))


def text_step(text: str) -> list[Any]:
    return [TextDelta(text), finish()]


def search_call(call_id: str, query: str) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name="webSearch", input={"query": query})


def timezone_call(call_id: str) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name="getUserTimezone", input={})


def user_message(text: str) -> Message:
    return Message(role="user", parts=(TextPart(text=text),))


def tavily_payload(query: str, count: int = 3, content_length: int = 100) -> dict[str, Any]:
    return {
        "query": query,
        "results": [
            {
                "title": f"{query} result {i}",
                "url": f"https://example.com/{i}",
                "content": "x" * content_length,
                "score": 0.9,
            }
            for i in range(count)
        ],
    }


def make_tavily(handler) -> TavilyClient:
    return TavilyClient(api_key="test-key", transport=httpx.MockTransport(handler))


async def collect(events) -> list[Any]:
    return [event async for event in events]


@pytest.fixture
def search_requests() -> list[dict[str, Any]]:
    return []


@pytest.fixture
def tavily_client(search_requests) -> TavilyClient:
    """Tavily client answering every search with three results."""

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        search_requests.append(payload)
        return httpx.Response(200, json=tavily_payload(payload["query"]))

    return make_tavily(handler)


@pytest.fixture
def registry(tavily_client) -> ToolsRegistry:
    return ToolsRegistry([create_web_search_tool(client=tavily_client), create_user_timezone_tool()])


@pytest.fixture
def session() -> Session:
    return Session(session_id="test-session")


@pytest.fixture
def make_orchestrator(session, registry):
    """Build an orchestrator around a scripted client."""

    def _make(steps, tools: ToolsRegistry | None = None, **config) -> tuple[StepOrchestrator, ScriptedGenerationClient]:
        client = ScriptedGenerationClient(steps)
        orchestrator = StepOrchestrator(
            session,
            client,
            tools or registry,
            config=OrchestratorConfig(**config),
        )
        return orchestrator, client

    return _make
