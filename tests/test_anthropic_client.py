"""Tests for the Anthropic generation client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import anthropic
import httpx
import pytest

from deepsearch.clients.anthropic import AnthropicClient, AnthropicConfig, convert_messages
from deepsearch.errors import GenerationTransportError
from deepsearch.models.events import ErrorEvent
from deepsearch.models.llm import (
    GenerationFinish,
    ReasoningDelta,
    ReasoningEnd,
    TextBlock,
    TextDelta,
    ThinkingBlock,
    ToolCallRequest,
    ToolResultBlock,
    ToolUseBlock,
)
from deepsearch.models.messages import Message, ReasoningPart, TextPart, ToolCallPart, ToolResultPart
from deepsearch.services.orchestrator import OrchestratorState, StepOrchestrator

API_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def status_error(status_code: int, headers: dict | None = None) -> anthropic.APIStatusError:
    response = httpx.Response(status_code, headers=headers or {}, request=API_REQUEST)
    return anthropic.APIStatusError("error", response=response, body=None)


class FakeStream:
    """Async iterable standing in for the SDK's event stream."""

    def __init__(self, events, error: Exception | None = None):
        self.events = events
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event
        if self.error:
            raise self.error

    async def close(self):
        self.closed = True


def sdk_events():
    """A step with thinking, text and one tool call."""
    return [
        SimpleNamespace(type="message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=42))),
        SimpleNamespace(type="content_block_start", index=0, content_block=SimpleNamespace(type="thinking")),
        SimpleNamespace(
            type="content_block_delta", index=0, delta=SimpleNamespace(type="thinking_delta", thinking="Plan.")
        ),
        SimpleNamespace(type="content_block_stop", index=0),
        SimpleNamespace(type="content_block_start", index=1, content_block=SimpleNamespace(type="text")),
        SimpleNamespace(type="content_block_delta", index=1, delta=SimpleNamespace(type="text_delta", text="Hi ")),
        SimpleNamespace(type="content_block_stop", index=1),
        SimpleNamespace(
            type="content_block_start",
            index=2,
            content_block=SimpleNamespace(type="tool_use", id="toolu_1", name="webSearch"),
        ),
        SimpleNamespace(
            type="content_block_delta",
            index=2,
            delta=SimpleNamespace(type="input_json_delta", partial_json='{"query": "CR'),
        ),
        SimpleNamespace(
            type="content_block_delta", index=2, delta=SimpleNamespace(type="input_json_delta", partial_json='M"}')
        ),
        SimpleNamespace(type="content_block_stop", index=2),
        SimpleNamespace(
            type="message_delta",
            delta=SimpleNamespace(stop_reason="tool_use"),
            usage=SimpleNamespace(output_tokens=17),
        ),
        SimpleNamespace(type="message_stop"),
    ]


@pytest.fixture
def anthropic_client():
    """Create AnthropicClient for testing."""
    config = AnthropicConfig(max_retries=3, retry_delay=0.01)
    with patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
        client = AnthropicClient(config=config)
    client.tokenizer = None
    client.rate_limiter = Mock(check_rate_limit=AsyncMock())
    return client


class TestConvertMessages:
    """Tests for converting stored messages to the wire format."""

    def test_plain_exchange(self):
        """Test that text messages map to user and assistant turns."""
        messages = [
            Message(role="user", parts=(TextPart(text="Hello"),)),
            Message(role="assistant", parts=(TextPart(text="Hi there"),)),
        ]

        wire = convert_messages(messages)

        assert [message.role for message in wire] == ["user", "assistant"]
        assert wire[0].content == [TextBlock(text="Hello")]
        assert wire[1].content == [TextBlock(text="Hi there")]

    def test_multi_step_assistant_message_is_split(self):
        """Test that each tool round becomes an assistant turn followed by a tool_result turn."""
        messages = [
            Message(role="user", parts=(TextPart(text="Research CRMs"),)),
            Message(
                role="assistant",
                parts=(
                    TextPart(text="Searching."),
                    ToolCallPart(tool_name="webSearch", call_id="c1", input={"query": "a"}, state="resolved"),
                    ToolResultPart(call_id="c1", tool_name="webSearch", output={"results": []}),
                    TextPart(text="Done."),
                ),
            ),
        ]

        wire = convert_messages(messages)

        assert [message.role for message in wire] == ["user", "assistant", "user", "assistant"]
        assert wire[1].content == [
            TextBlock(text="Searching."),
            ToolUseBlock(id="c1", name="webSearch", input={"query": "a"}),
        ]
        assert wire[2].content == [ToolResultBlock(tool_use_id="c1", content='{"results": []}')]
        assert wire[3].content == [TextBlock(text="Done.")]

    def test_error_results_are_flagged(self):
        """Test that failed tool results carry is_error."""
        messages = [
            Message(role="user", parts=(TextPart(text="Q"),)),
            Message(
                role="assistant",
                parts=(
                    ToolCallPart(tool_name="webSearch", call_id="c1", input={}, state="resolved"),
                    ToolResultPart(call_id="c1", tool_name="webSearch", error="Invalid input"),
                ),
            ),
        ]

        wire = convert_messages(messages)

        assert wire[-1].content == [ToolResultBlock(tool_use_id="c1", content="Error: Invalid input", is_error=True)]

    def test_unresolved_calls_and_unsigned_reasoning_are_skipped(self):
        """Test that pending calls and reasoning without a signature never reach the model."""
        messages = [
            Message(role="user", parts=(TextPart(text="Q"),)),
            Message(
                role="assistant",
                parts=(
                    ReasoningPart(text="thinking"),
                    TextPart(text="Let me check."),
                    ToolCallPart(tool_name="getUserTimezone", call_id="tz", state="awaiting-client"),
                ),
            ),
        ]

        wire = convert_messages(messages)

        assert wire[-1].role == "assistant"
        assert wire[-1].content == [TextBlock(text="Let me check.")]

    def test_signed_reasoning_precedes_tool_use(self):
        """Test that signed reasoning is replayed as a thinking block ahead of each step's tool call."""
        messages = [
            Message(role="user", parts=(TextPart(text="Research CRMs"),)),
            Message(
                role="assistant",
                parts=(
                    ReasoningPart(text="Search pricing first.", signature="sig-1"),
                    ToolCallPart(tool_name="webSearch", call_id="c1", input={"query": "a"}, state="resolved"),
                    ToolResultPart(call_id="c1", tool_name="webSearch", output={"results": []}),
                    ReasoningPart(text="Now compare.", signature="sig-2"),
                    ToolCallPart(tool_name="webSearch", call_id="c2", input={"query": "b"}, state="resolved"),
                    ToolResultPart(call_id="c2", tool_name="webSearch", output={"results": []}),
                ),
            ),
        ]

        wire = convert_messages(messages)

        assert [message.role for message in wire] == ["user", "assistant", "user", "assistant", "user"]
        assert wire[1].content == [
            ThinkingBlock(thinking="Search pricing first.", signature="sig-1"),
            ToolUseBlock(id="c1", name="webSearch", input={"query": "a"}),
        ]
        assert wire[3].content[0] == ThinkingBlock(thinking="Now compare.", signature="sig-2")
        assert wire[1].model_dump()["content"][0] == {
            "type": "thinking",
            "thinking": "Search pricing first.",
            "signature": "sig-1",
        }

    def test_consecutive_user_messages_merge(self):
        """Test that adjacent same-role turns are merged."""
        messages = [
            Message(role="user", parts=(TextPart(text="One"),)),
            Message(role="user", parts=(TextPart(text="Two"),)),
        ]

        wire = convert_messages(messages)

        assert len(wire) == 1
        assert wire[0].content == [TextBlock(text="One"), TextBlock(text="Two")]


class TestStreamMessage:
    """Tests for streaming a generation step."""

    @pytest.mark.asyncio
    async def test_events_map_to_fragments(self, anthropic_client):
        """Test that SDK stream events become fragments in order."""
        stream = FakeStream(sdk_events())
        anthropic_client.client.messages.create = AsyncMock(return_value=stream)

        fragments = [
            fragment
            async for fragment in anthropic_client.stream_message(
                [Message(role="user", parts=(TextPart(text="Hi"),))], "System"
            )
        ]

        assert fragments[:4] == [
            ReasoningDelta("Plan."),
            ReasoningEnd(),
            TextDelta("Hi "),
            ToolCallRequest(id="toolu_1", name="webSearch", input={"query": "CRM"}),
        ]
        finish = fragments[-1]
        assert isinstance(finish, GenerationFinish)
        assert finish.stop_reason == "tool_use"
        assert finish.usage.input_tokens == 42
        assert finish.usage.output_tokens == 17
        assert stream.closed

    @pytest.mark.asyncio
    async def test_request_parameters(self, anthropic_client):
        """Test that the request streams with the system prompt and converted history."""
        anthropic_client.client.messages.create = AsyncMock(return_value=FakeStream([]))

        [_ async for _ in anthropic_client.stream_message([Message(role="user", parts=(TextPart(text="Hi"),))], "Sys")]

        kwargs = anthropic_client.client.messages.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["system"] == "Sys"
        assert kwargs["messages"] == [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]
        assert kwargs["temperature"] == anthropic_client.config.temperature
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_malformed_tool_json_becomes_empty_input(self, anthropic_client):
        """Test that unparseable tool input is passed on as an empty object."""
        events = [
            SimpleNamespace(
                type="content_block_start",
                index=0,
                content_block=SimpleNamespace(type="tool_use", id="t1", name="webSearch"),
            ),
            SimpleNamespace(
                type="content_block_delta", index=0, delta=SimpleNamespace(type="input_json_delta", partial_json="{bad")
            ),
            SimpleNamespace(type="content_block_stop", index=0),
        ]
        anthropic_client.client.messages.create = AsyncMock(return_value=FakeStream(events))

        fragments = [fragment async for fragment in anthropic_client.stream_message([], "Sys")]

        assert fragments[0] == ToolCallRequest(id="t1", name="webSearch", input={})

    @pytest.mark.asyncio
    async def test_error_mid_stream_raises_transport_error(self, anthropic_client):
        """Test that a stream failure surfaces as a transport error after partial output."""
        events = sdk_events()[:6]
        stream = FakeStream(events, error=anthropic.APIConnectionError(request=API_REQUEST))
        anthropic_client.client.messages.create = AsyncMock(return_value=stream)

        received = []
        with pytest.raises(GenerationTransportError):
            async for fragment in anthropic_client.stream_message([], "Sys"):
                received.append(fragment)

        assert TextDelta("Hi ") in received
        assert stream.closed


    @pytest.mark.asyncio
    async def test_thinking_signature_is_captured(self, anthropic_client):
        """Test that the signature of a thinking block travels with its end fragment."""
        events = [
            SimpleNamespace(type="content_block_start", index=0, content_block=SimpleNamespace(type="thinking")),
            SimpleNamespace(
                type="content_block_delta", index=0, delta=SimpleNamespace(type="thinking_delta", thinking="Plan.")
            ),
            SimpleNamespace(
                type="content_block_delta", index=0, delta=SimpleNamespace(type="signature_delta", signature="EqQB")
            ),
            SimpleNamespace(type="content_block_stop", index=0),
        ]
        anthropic_client.client.messages.create = AsyncMock(return_value=FakeStream(events))

        fragments = [fragment async for fragment in anthropic_client.stream_message([], "Sys")]

        assert fragments[:2] == [ReasoningDelta("Plan."), ReasoningEnd(signature="EqQB")]

    @pytest.mark.asyncio
    async def test_network_drop_mid_stream_raises_transport_error(self, anthropic_client):
        """Test that an httpx failure while reading the stream becomes a transport error."""
        stream = FakeStream(sdk_events()[:6], error=httpx.RemoteProtocolError("peer closed connection"))
        anthropic_client.client.messages.create = AsyncMock(return_value=stream)

        with pytest.raises(GenerationTransportError, match="interrupted"):
            [_ async for _ in anthropic_client.stream_message([], "Sys")]

        assert stream.closed

    @pytest.mark.asyncio
    async def test_network_drop_fails_the_turn(self, anthropic_client, session, registry):
        """Test that a dropped stream ends the turn with an error event and a failed state."""
        anthropic_client.client.messages.create = AsyncMock(
            return_value=FakeStream(sdk_events()[:6], error=httpx.ReadTimeout("read timed out"))
        )
        orchestrator = StepOrchestrator(session, anthropic_client, registry)

        events = [
            event
            async for event in orchestrator.run(Message(role="user", parts=(TextPart(text="Research CRMs"),)))
        ]

        assert isinstance(events[-1], ErrorEvent)
        assert orchestrator.state == OrchestratorState.FAILED
        assert session.messages[-1].text == "Hi "

class TestRetries:
    """Tests for retrying the stream request."""

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, anthropic_client):
        """Test that a 5xx response is retried before streaming."""
        anthropic_client.client.messages.create = AsyncMock(side_effect=[status_error(500), FakeStream([])])

        with patch("deepsearch.clients.anthropic.asyncio.sleep", new=AsyncMock()) as sleep:
            fragments = [fragment async for fragment in anthropic_client.stream_message([], "Sys")]

        assert isinstance(fragments[-1], GenerationFinish)
        assert anthropic_client.client.messages.create.call_count == 2
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, anthropic_client):
        """Test that a 429 waits for the retry-after header."""
        anthropic_client.client.messages.create = AsyncMock(
            side_effect=[status_error(429, {"retry-after": "3"}), FakeStream([])]
        )

        with patch("deepsearch.clients.anthropic.asyncio.sleep", new=AsyncMock()) as sleep:
            [_ async for _ in anthropic_client.stream_message([], "Sys")]

        sleep.assert_awaited_once_with(3)

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, anthropic_client):
        """Test that a 4xx other than 429 fails immediately."""
        anthropic_client.client.messages.create = AsyncMock(side_effect=status_error(400))

        with pytest.raises(GenerationTransportError) as exc_info:
            [_ async for _ in anthropic_client.stream_message([], "Sys")]

        assert exc_info.value.status_code == 400
        assert anthropic_client.client.messages.create.call_count == 1

    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_retries(self, anthropic_client):
        """Test that repeated connection failures end in a transport error."""
        anthropic_client.client.messages.create = AsyncMock(
            side_effect=anthropic.APIConnectionError(request=API_REQUEST)
        )

        with patch("deepsearch.clients.anthropic.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(GenerationTransportError, match="Could not reach"):
                [_ async for _ in anthropic_client.stream_message([], "Sys")]

        assert anthropic_client.client.messages.create.call_count == 3


class TestClientConfiguration:
    """Tests for client construction."""

    def test_missing_api_key(self):
        """Test that the client refuses to start without a key."""
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
                AnthropicClient()

    @pytest.mark.asyncio
    async def test_thinking_budget_from_environment(self):
        """Test that DEEPSEARCH_THINKING_BUDGET enables extended thinking with room for the answer."""
        with patch.dict("os.environ", {"DEEPSEARCH_THINKING_BUDGET": "8000"}):
            config = AnthropicConfig()

        assert config.thinking_budget_tokens == 8000

        client = AnthropicClient(api_key="test-key", config=config)
        client.rate_limiter = Mock(check_rate_limit=AsyncMock())
        client.client.messages.create = AsyncMock(return_value=FakeStream([]))

        [_ async for _ in client.stream_message([], "Sys")]

        kwargs = client.client.messages.create.call_args.kwargs
        assert kwargs["thinking"] == {"type": "enabled", "budget_tokens": 8000}
        assert kwargs["max_tokens"] > 8000
        assert "temperature" not in kwargs

    def test_thinking_disabled_by_default(self):
        """Test that extended thinking stays off without a budget."""
        with patch.dict("os.environ", {}, clear=True):
            assert AnthropicConfig().thinking_budget_tokens is None

    def test_token_estimate_fallback(self, anthropic_client):
        """Test the character-based estimate when no tokenizer is available."""
        assert anthropic_client.estimate_message_tokens("a" * 400) == 100
