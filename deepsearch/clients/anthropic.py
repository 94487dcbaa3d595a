"""Anthropic API client with streaming, rate limiting and error handling."""

import asyncio
import json
import os
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
import tiktoken
from anthropic import APIConnectionError, APIError, APIStatusError, AsyncAnthropic
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from deepsearch.errors import GenerationTransportError
from deepsearch.models.llm import (
    ContentBlock,
    Fragment,
    GenerationFinish,
    LLMMessage,
    LLMToolDefinition,
    LLMUsage,
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
from deepsearch.utils.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = os.getenv("DEEPSEARCH_MODEL", "claude-sonnet-4-5")
    max_tokens: int = 4096
    temperature: float = 0.2
    max_retries: int = 3
    retry_delay: float = 1.0

    # Extended thinking is streamed as reasoning parts when a budget is set
    thinking_budget_tokens: int | None = field(
        default_factory=lambda: int(os.getenv("DEEPSEARCH_THINKING_BUDGET", "0")) or None
    )


class AnthropicRateLimiter:
    """Client-side rate limiter using the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within the rate limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


def convert_messages(messages: list[Message]) -> list[LLMMessage]:
    """Convert conversation messages to the Anthropic wire representation.

    An assistant message may span several steps: every run of tool results
    closes a step and becomes a user turn of tool_result blocks. Part order is
    preserved. Signed reasoning is replayed as thinking blocks, which the API
    requires ahead of tool_use when extended thinking is on; unsigned reasoning
    is dropped. Tool calls without a terminal result are skipped so the request
    never carries an unanswered tool_use.
    """
    wire: list[LLMMessage] = []

    def emit(role: str, blocks: list[ContentBlock]) -> None:
        if not blocks:
            return
        if wire and wire[-1].role == role:
            previous = wire[-1].content
            if isinstance(previous, str):
                previous = [TextBlock(text=previous)]
            wire[-1] = LLMMessage(role=role, content=[*previous, *blocks])
        else:
            wire.append(LLMMessage(role=role, content=list(blocks)))

    for message in messages:
        if message.role == "user":
            emit("user", [TextBlock(text=part.text) for part in message.parts if isinstance(part, TextPart) and part.text])
            continue

        called = {part.call_id for part in message.tool_calls()}
        resolved = {part.call_id for part in message.tool_results() if part.is_terminal}

        assistant_blocks: list[ContentBlock] = []
        result_blocks: list[ContentBlock] = []
        for part in message.parts:
            if isinstance(part, ToolResultPart):
                if part.is_terminal and part.call_id in called:
                    result_blocks.append(_result_block(part))
                elif message.role == "tool" and part.is_terminal:
                    result_blocks.append(_result_block(part))
                continue

            if result_blocks:
                emit("assistant", assistant_blocks)
                emit("user", result_blocks)
                assistant_blocks, result_blocks = [], []

            if isinstance(part, ReasoningPart) and part.signature:
                assistant_blocks.append(ThinkingBlock(thinking=part.text, signature=part.signature))
            elif isinstance(part, TextPart) and part.text:
                assistant_blocks.append(TextBlock(text=part.text))
            elif isinstance(part, ToolCallPart):
                if part.call_id in resolved:
                    assistant_blocks.append(ToolUseBlock(id=part.call_id, name=part.tool_name, input=part.input))
                else:
                    logger.warning(f"Skipping unresolved tool call {part.call_id} ({part.tool_name})")

        emit("assistant", assistant_blocks)
        emit("user", result_blocks)

    return wire


def _result_block(part: ToolResultPart) -> ToolResultBlock:
    if part.is_error:
        return ToolResultBlock(tool_use_id=part.call_id, content=f"Error: {part.error}", is_error=True)
    return ToolResultBlock(tool_use_id=part.call_id, content=json.dumps(part.output, default=str))


class AnthropicClient:
    """Low-level Anthropic API client with rate limiting and error handling."""

    tokenizer: tiktoken.Encoding | None = None

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        rate_limiter: AnthropicRateLimiter | None = None,
    ):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
            rate_limiter: Optional shared rate limiter
        """
        anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        self.api_key = anthropic_api_key
        self.client = AsyncAnthropic(api_key=self.api_key)
        self.config = config or AnthropicConfig()
        self.rate_limiter = rate_limiter or AnthropicRateLimiter()

        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    async def stream_message(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[LLMToolDefinition] | None = None,
        **kwargs,
    ) -> AsyncIterator[Fragment]:
        """Stream one generation step.

        Args:
            messages: Conversation history (already pruned)
            system_prompt: System prompt for Claude
            tools: Available tools for Claude
            **kwargs: Additional parameters for Claude API

        Yields:
            Text and reasoning deltas, completed tool calls, then a single
            GenerationFinish

        Raises:
            GenerationTransportError: If the API is unreachable or errors
        """
        wire_messages = convert_messages(messages)

        estimated_tokens = self._estimate_tokens(wire_messages, system_prompt)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        request_params: dict[str, Any] = {
            "model": kwargs.get("model", self.config.model),
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "system": system_prompt,
            "messages": [msg.model_dump() for msg in wire_messages],
            "stream": True,
        }
        if tools:
            request_params["tools"] = [tool.model_dump() for tool in tools]
        budget = self.config.thinking_budget_tokens
        if budget:
            request_params["thinking"] = {"type": "enabled", "budget_tokens": budget}
            # max_tokens must leave room for the answer on top of the thinking budget
            if request_params["max_tokens"] <= budget:
                request_params["max_tokens"] = budget + self.config.max_tokens
        else:
            request_params["temperature"] = kwargs.get("temperature", self.config.temperature)

        logger.debug(f"Streaming {len(wire_messages)} messages, {len(tools) if tools else 0} tools")
        stream = await self._request_with_retries(lambda: self.client.messages.create(**request_params))

        usage = LLMUsage()
        stop_reason: str | None = None
        tool_blocks: dict[int, dict[str, str]] = {}
        thinking_signatures: dict[int, str] = {}

        try:
            async for event in stream:
                if event.type == "message_start":
                    usage.input_tokens = event.message.usage.input_tokens

                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        tool_blocks[event.index] = {"id": block.id, "name": block.name, "json": ""}
                    elif block.type == "thinking":
                        thinking_signatures[event.index] = ""

                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield TextDelta(delta.text)
                    elif delta.type == "thinking_delta":
                        yield ReasoningDelta(delta.thinking)
                    elif delta.type == "signature_delta" and event.index in thinking_signatures:
                        thinking_signatures[event.index] += delta.signature
                    elif delta.type == "input_json_delta" and event.index in tool_blocks:
                        tool_blocks[event.index]["json"] += delta.partial_json

                elif event.type == "content_block_stop":
                    if event.index in tool_blocks:
                        block_data = tool_blocks.pop(event.index)
                        yield ToolCallRequest(
                            id=block_data["id"],
                            name=block_data["name"],
                            input=self._parse_tool_input(block_data["json"]),
                        )
                    elif event.index in thinking_signatures:
                        yield ReasoningEnd(signature=thinking_signatures.pop(event.index) or None)

                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason
                    usage.output_tokens = event.usage.output_tokens

        except APIError as e:
            logger.error(f"Anthropic stream failed: {e}")
            raise GenerationTransportError(f"Generation stream failed: {e}", getattr(e, "status_code", None)) from e
        except httpx.HTTPError as e:
            # Connection drops while reading the stream surface from httpx directly
            logger.error(f"Anthropic stream interrupted: {e!r}")
            raise GenerationTransportError(f"Generation stream interrupted: {e!r}") from e
        finally:
            await stream.close()

        logger.debug(f"Step finished - Stop reason: {stop_reason}, output tokens: {usage.output_tokens}")
        yield GenerationFinish(stop_reason=stop_reason, usage=usage)

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Open an API request, retrying rate limits, server errors and connection failures."""
        for attempt in range(self.config.max_retries):
            last_attempt = attempt == self.config.max_retries - 1
            try:
                return await call()

            except APIStatusError as e:
                if e.status_code == 429 and not last_attempt:
                    retry_after = 60
                    if e.response is not None:
                        retry_after = int(e.response.headers.get("retry-after", 60))
                    if retry_after < 120:
                        logger.warning(f"Rate limited by Anthropic, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif e.status_code >= 500 and not last_attempt:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                raise GenerationTransportError(f"Anthropic API error: {e}", e.status_code) from e

            except APIConnectionError as e:
                if not last_attempt:
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue
                raise GenerationTransportError(f"Could not reach Anthropic API: {e}") from e

            except APIError as e:
                raise GenerationTransportError(f"Anthropic API error: {e}") from e

        raise GenerationTransportError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _parse_tool_input(self, raw: str) -> dict[str, Any]:
        """Parse streamed tool input JSON; malformed input becomes an empty object."""
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Malformed tool input from model: {raw[:100]}")
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _estimate_tokens(self, messages: list[LLMMessage], system_prompt: str) -> int:
        """Estimate token count for rate limiting."""
        text_content = system_prompt

        for message in messages:
            if isinstance(message.content, str):
                text_content += message.content
                continue
            for block in message.content:
                if isinstance(block, TextBlock):
                    text_content += block.text
                elif isinstance(block, ToolResultBlock):
                    text_content += block.content
                elif isinstance(block, ToolUseBlock):
                    text_content += json.dumps(block.input)
                elif isinstance(block, ThinkingBlock):
                    text_content += block.thinking

        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single string."""
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4


_anthropic_client: AnthropicClient | None = None


def get_anthropic_client() -> AnthropicClient:
    """Get or create Anthropic client instance."""
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AnthropicClient()
    return _anthropic_client
