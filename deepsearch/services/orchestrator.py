"""Step orchestrator: the generation / tool-call loop for one session."""

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from deepsearch.errors import GenerationTransportError, SessionBusyError, ToolError
from deepsearch.models.events import (
    ErrorEvent,
    FinishEvent,
    FinishReason,
    FinishStepEvent,
    ReasoningDeltaEvent,
    ReasoningEndEvent,
    StartEvent,
    StartStepEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolApprovalRequestEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from deepsearch.models.llm import (
    Fragment,
    GenerationFinish,
    LLMToolDefinition,
    LLMUsage,
    ReasoningDelta,
    ReasoningEnd,
    TextDelta,
    ToolCallRequest,
)
from deepsearch.models.messages import (
    ApprovalState,
    Message,
    Part,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    cuid,
    drop_unresolved,
)
from deepsearch.models.session import Session
from deepsearch.services.context import ContextPruner, PrunePolicy
from deepsearch.tools.registry import ToolsRegistry
from deepsearch.utils.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are DeepSearch AI, an expert multi-step research agent.

When a user asks a research question, you must:
1. DECOMPOSE the question into 2-3 specific sub-topics to research
2. SEARCH each sub-topic using the webSearch tool, with a distinct query per sub-topic
3. ANALYZE the results and extract key findings
4. SYNTHESIZE everything into a clear, structured research brief

Think step by step and show your reasoning. Use multiple searches to build a complete picture.
Format your final answer with clear sections: Summary, Key Findings, and Conclusion.
Cite your sources with their URLs.
If a search returns no results, say so and work with what you have.
Use the getUserTimezone tool when the answer depends on the user's local time or region."""

OnFinish = Callable[[Message], Awaitable[None]]


class GenerationClient(Protocol):
    """Anything that can stream one generation step."""

    def stream_message(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[LLMToolDefinition] | None = None,
    ) -> AsyncIterator[Fragment]: ...


class OrchestratorState(StrEnum):
    IDLE = "idle"
    GENERATING = "generating"
    TOOLS_PENDING = "tools-pending"
    EXECUTING = "executing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class OrchestratorConfig:
    """Configuration for the step loop."""

    max_steps: int = 10
    # Seconds to wait for a client-supplied tool result or an approval
    external_result_timeout: float = float(os.getenv("EXTERNAL_RESULT_TIMEOUT", "120"))
    max_message_chars: int = 4000
    prune_policy: PrunePolicy = field(
        default_factory=lambda: PrunePolicy(tool_calls=os.getenv("PRUNE_TOOL_CALLS", "before-last-2-messages"))
    )


class _Cancelled(Exception):
    """Raised inside the loop when the cancel signal wins a race."""


async def _next_fragment(stream: AsyncIterator[Fragment]) -> Fragment | None:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return None


class StepOrchestrator:
    """Runs research turns for a single session.

    A turn is started with ``run`` and consumed as an async stream of events.
    Only one turn may be in flight at a time. Client tool outputs and approval
    decisions arrive through ``supply_tool_output`` and ``respond_to_approval``
    while the turn is suspended waiting for them.
    """

    def __init__(
        self,
        session: Session,
        generation_client: GenerationClient,
        tools_registry: ToolsRegistry,
        config: OrchestratorConfig | None = None,
        pruner: ContextPruner | None = None,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.session = session
        self.generation_client = generation_client
        self.tools_registry = tools_registry
        self.config = config or OrchestratorConfig()
        self.pruner = pruner or ContextPruner(self.config.prune_policy)
        self.system_prompt = system_prompt

        self.state = OrchestratorState.IDLE
        self.steps_taken = 0
        self.usage = LLMUsage()

        self._turn_active = False
        self._parts: list[Part] = []
        self._pending_outputs: dict[str, asyncio.Future[Any]] = {}
        self._pending_approvals: dict[str, asyncio.Future[bool]] = {}

    @property
    def busy(self) -> bool:
        return self._turn_active

    # External inputs

    def supply_tool_output(self, call_id: str, output: Any) -> bool:
        """Deliver the client's result for a client-executed tool call."""
        future = self._pending_outputs.get(call_id)
        if future is None or future.done():
            logger.warning(f"No pending client tool call {call_id} in session {self.session.session_id}")
            return False
        future.set_result(output)
        return True

    def respond_to_approval(self, approval_id: str, approved: bool) -> bool:
        """Deliver an approval decision for a pending tool call."""
        future = self._pending_approvals.get(approval_id)
        if future is None or future.done():
            logger.warning(f"No pending approval {approval_id} in session {self.session.session_id}")
            return False
        future.set_result(approved)
        return True

    def pending_requests(self) -> list[StreamEvent]:
        """Events for calls still waiting on the client, to replay after a reconnect."""
        events: list[StreamEvent] = []
        results = {part.call_id: part for part in self._parts if isinstance(part, ToolResultPart)}
        for part in self._parts:
            if not isinstance(part, ToolCallPart):
                continue
            if part.state == "awaiting-client":
                events.append(
                    ToolCallEvent(tool_call_id=part.call_id, tool_name=part.tool_name, input=part.input, client_side=True)
                )
            elif part.state == "awaiting-approval" and part.call_id in results:
                approval_id = results[part.call_id].approval_id
                if approval_id:
                    events.append(
                        ToolApprovalRequestEvent(
                            approval_id=approval_id, tool_call_id=part.call_id, tool_name=part.tool_name, input=part.input
                        )
                    )
        return events

    # The loop

    async def run(
        self,
        user_message: Message,
        cancel: asyncio.Event | None = None,
        on_finish: OnFinish | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run one turn for a user message.

        Args:
            user_message: The new user message
            cancel: Signal that abandons the turn when set
            on_finish: Called with the assistant message on normal completion

        Yields:
            Stream events in generation order, ending with a finish or error event

        Raises:
            SessionBusyError: If a turn is already in progress
            ValueError: If the message is empty or too long
        """
        if self._turn_active:
            raise SessionBusyError(self.session.session_id)
        self.validate_user_message(user_message)

        cancel = cancel or asyncio.Event()
        self._turn_active = True
        self._parts = []
        self.steps_taken = 0
        self.usage = LLMUsage()
        assistant_id = cuid()
        committed = False

        self.session.append_message(user_message)
        logger.info(f"Starting turn for session {self.session.session_id}: {user_message.text[:50]}...")

        try:
            yield StartEvent(message_id=assistant_id)
            finish_reason: FinishReason = "step-limit"

            for step in range(1, self.config.max_steps + 1):
                self._check_cancelled(cancel)
                self.steps_taken = step
                self.state = OrchestratorState.GENERATING
                logger.debug(f"Session {self.session.session_id} step {step}/{self.config.max_steps}")
                yield StartStepEvent(step=step)

                calls: list[ToolCallPart] = []
                async for fragment in self._generate(assistant_id, cancel):
                    event = self._apply_fragment(fragment, calls)
                    if event is not None:
                        yield event

                if not calls:
                    yield FinishStepEvent(step=step)
                    finish_reason = "stop"
                    break

                logger.info(f"Step {step} requested {len(calls)} tool calls")
                self.state = OrchestratorState.TOOLS_PENDING
                # Results are appended in the order the calls were emitted
                for call in calls:
                    async for event in self._resolve_call(call, cancel):
                        yield event
                yield FinishStepEvent(step=step)
            else:
                logger.warning(f"Session {self.session.session_id} reached max steps ({self.config.max_steps})")

            message = self._commit(assistant_id)
            committed = True
            self.state = OrchestratorState.DONE
            logger.info(
                f"Turn completed in {self.steps_taken} steps ({finish_reason}), "
                f"tokens: {self.usage.total_tokens} (in: {self.usage.input_tokens}, out: {self.usage.output_tokens})"
            )
            if on_finish and message:
                await on_finish(message)
            yield FinishEvent(finish_reason=finish_reason, message=message)

        except _Cancelled:
            message = self._commit(assistant_id)
            committed = True
            self.state = OrchestratorState.CANCELLED
            logger.info(f"Turn cancelled for session {self.session.session_id} at step {self.steps_taken}")
            yield FinishEvent(finish_reason="cancelled", message=message)

        except GenerationTransportError as e:
            self._commit(assistant_id)
            committed = True
            self.state = OrchestratorState.FAILED
            logger.error(f"Generation failed for session {self.session.session_id}: {e}")
            yield ErrorEvent(error_text=f"The language model is unavailable: {e}")

        except Exception:
            self._commit(assistant_id)
            committed = True
            self.state = OrchestratorState.FAILED
            raise

        finally:
            if not committed:
                # The consumer went away mid-turn; keep whatever is complete
                self._commit(assistant_id)
                self.state = OrchestratorState.CANCELLED
            self._abandon_pending()
            self._parts = []
            self._turn_active = False

    async def _generate(self, assistant_id: str, cancel: asyncio.Event) -> AsyncIterator[Fragment]:
        """Stream one generation step over the pruned history."""
        in_progress = Message(id=assistant_id, role="assistant", parts=tuple(self._parts))
        history = self.pruner.prune([*self.session.messages, in_progress])

        stream = self.generation_client.stream_message(
            history,
            self.system_prompt,
            self.tools_registry.get_llm_tools(),
        )
        try:
            while True:
                fragment = await self._until_cancelled(_next_fragment(stream), cancel)
                if fragment is None:
                    return
                yield fragment
        finally:
            await stream.aclose()

    def _apply_fragment(self, fragment: Fragment, calls: list[ToolCallPart]) -> StreamEvent | None:
        """Fold a fragment into the in-progress parts and return its stream event."""
        if isinstance(fragment, TextDelta):
            last = self._parts[-1] if self._parts else None
            if isinstance(last, TextPart):
                self._parts[-1] = TextPart(text=last.text + fragment.text)
            else:
                self._parts.append(TextPart(text=fragment.text))
            return TextDeltaEvent(delta=fragment.text)

        if isinstance(fragment, ReasoningDelta):
            last = self._parts[-1] if self._parts else None
            if isinstance(last, ReasoningPart) and last.state == "streaming":
                self._parts[-1] = ReasoningPart(text=last.text + fragment.text, state="streaming")
            else:
                self._parts.append(ReasoningPart(text=fragment.text, state="streaming"))
            return ReasoningDeltaEvent(delta=fragment.text)

        if isinstance(fragment, ReasoningEnd):
            self._close_reasoning(fragment.signature)
            return ReasoningEndEvent()

        if isinstance(fragment, ToolCallRequest):
            client_side = self.tools_registry.has_tool(fragment.name) and self.tools_registry.is_client_tool(
                fragment.name
            )
            part = ToolCallPart(
                tool_name=fragment.name,
                call_id=fragment.id,
                input=fragment.input,
                state="awaiting-client" if client_side else "input-available",
            )
            if client_side:
                # Registered now: the client may answer before the step finishes
                self._pending_outputs[fragment.id] = asyncio.get_running_loop().create_future()
            self._parts.append(part)
            calls.append(part)
            return ToolCallEvent(
                tool_call_id=part.call_id, tool_name=part.tool_name, input=part.input, client_side=client_side
            )

        if isinstance(fragment, GenerationFinish):
            self.usage.add(fragment.usage)
            logger.debug(f"Generation step finished: {fragment.stop_reason}")
        return None

    async def _resolve_call(self, call: ToolCallPart, cancel: asyncio.Event) -> AsyncIterator[StreamEvent]:
        """Produce the result for one tool call, yielding any events on the way."""
        self._check_cancelled(cancel)
        name = call.tool_name

        if not self.tools_registry.has_tool(name):
            logger.error(f"Unknown tool requested: {name}")
            yield self._record_result(call, error=f"Unknown tool {name}")
            return

        try:
            self.tools_registry.validate_input(name, call.input)
        except ToolError as e:
            logger.warning(f"Rejected input for {name}: {e}")
            yield self._record_result(call, error=str(e))
            return

        approval_id: str | None = None
        if self.tools_registry.needs_approval(name):
            approval_id = cuid()
            self._pending_approvals[approval_id] = asyncio.get_running_loop().create_future()
            self._replace_call(call.call_id, state="awaiting-approval")
            self._put_result(
                ToolResultPart(call_id=call.call_id, tool_name=name, state="requested", approval_id=approval_id)
            )
            yield ToolApprovalRequestEvent(
                approval_id=approval_id, tool_call_id=call.call_id, tool_name=name, input=call.input
            )

            try:
                approved = await self._await_external(self._pending_approvals, approval_id, cancel)
            except TimeoutError:
                logger.warning(f"Approval {approval_id} for {name} timed out; treating as rejected")
                approved = False

            if not approved:
                yield self._record_result(
                    call, error="The user rejected this tool call", state="rejected", approval_id=approval_id
                )
                return
            self._put_result(
                ToolResultPart(call_id=call.call_id, tool_name=name, state="approved", approval_id=approval_id)
            )

        self.state = OrchestratorState.EXECUTING

        if self.tools_registry.is_client_tool(name):
            self._replace_call(call.call_id, state="awaiting-client")
            if call.call_id not in self._pending_outputs:
                self._pending_outputs[call.call_id] = asyncio.get_running_loop().create_future()
            try:
                output = await self._await_external(self._pending_outputs, call.call_id, cancel)
            except TimeoutError:
                logger.warning(f"Client did not answer {name} ({call.call_id}) in time")
                yield self._record_result(
                    call, error="Timed out waiting for the client to supply a result", approval_id=approval_id
                )
                return
            yield self._record_result(call, output=output, approval_id=approval_id)
            return

        try:
            result = await self._until_cancelled(
                self.tools_registry.execute(name, call.input, call_id=call.call_id), cancel
            )
        except ToolError as e:
            yield self._record_result(call, error=str(e), approval_id=approval_id)
            return
        yield self._record_result(call, output=result.output, approval_id=approval_id)

    # Waiting

    async def _until_cancelled(self, awaitable: Awaitable[Any], cancel: asyncio.Event) -> Any:
        """Await work, abandoning it if the cancel signal fires first."""
        if cancel.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _Cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()

        if work.done() and not work.cancelled():
            return work.result()

        # Let the abandoned work unwind before reporting the cancellation
        await asyncio.gather(work, return_exceptions=True)
        raise _Cancelled()

    async def _await_external(self, pending: dict[str, asyncio.Future], key: str, cancel: asyncio.Event) -> Any:
        """Wait for an externally supplied value, bounded by the configured timeout."""
        future = pending[key]
        try:
            return await asyncio.wait_for(
                self._until_cancelled(future, cancel),
                timeout=self.config.external_result_timeout,
            )
        finally:
            pending.pop(key, None)

    def _check_cancelled(self, cancel: asyncio.Event) -> None:
        if cancel.is_set():
            raise _Cancelled()

    def _abandon_pending(self) -> None:
        for future in [*self._pending_outputs.values(), *self._pending_approvals.values()]:
            if not future.done():
                future.cancel()
        self._pending_outputs.clear()
        self._pending_approvals.clear()

    # Part bookkeeping

    def _record_result(
        self,
        call: ToolCallPart,
        output: Any = None,
        error: str | None = None,
        state: ApprovalState = "completed",
        approval_id: str | None = None,
    ) -> ToolResultEvent:
        """Store the terminal result for a call and mark the call resolved."""
        part = ToolResultPart(
            call_id=call.call_id,
            tool_name=call.tool_name,
            output=output,
            error=error,
            state=state,
            approval_id=approval_id,
        )
        self._put_result(part)
        self._replace_call(call.call_id, state="resolved")
        if error:
            logger.info(f"Tool {call.tool_name} ({call.call_id}) finished with error: {error[:100]}")
        return ToolResultEvent(
            tool_call_id=call.call_id, tool_name=call.tool_name, output=output, error=error, state=state
        )

    def _put_result(self, result: ToolResultPart) -> None:
        """Replace the call's existing result part in place, or append a new one."""
        for index, part in enumerate(self._parts):
            if isinstance(part, ToolResultPart) and part.call_id == result.call_id:
                self._parts[index] = result
                return
        self._parts.append(result)

    def _replace_call(self, call_id: str, state: str) -> None:
        for index, part in enumerate(self._parts):
            if isinstance(part, ToolCallPart) and part.call_id == call_id:
                self._parts[index] = part.model_copy(update={"state": state})
                return

    def _close_reasoning(self, signature: str | None = None) -> None:
        for index, part in enumerate(self._parts):
            if isinstance(part, ReasoningPart) and part.state == "streaming":
                self._parts[index] = part.model_copy(update={"state": "done", "signature": signature or part.signature})

    def _commit(self, assistant_id: str) -> Message | None:
        """Append the assembled assistant message, dropping calls that never got a result."""
        self._close_reasoning()
        parts = drop_unresolved(self._parts)
        if not parts:
            return None
        message = Message(id=assistant_id, role="assistant", parts=tuple(parts))
        self.session.append_message(message)
        return message

    def validate_user_message(self, message: Message) -> None:
        """Validate a user message before starting a turn.

        Raises:
            ValueError: If the message is not a user message, is empty, or is too long
        """
        if message.role != "user":
            raise ValueError("Only user messages can start a turn")
        text = message.text
        if not text.strip():
            raise ValueError("Message must contain text")
        if len(text) > self.config.max_message_chars:
            raise ValueError(
                f"Your message is too long. Please keep messages under {self.config.max_message_chars} characters."
            )
