"""Context pruning: bound the history sent to each generation step."""

import re
from dataclasses import dataclass
from typing import Literal

from deepsearch.models.messages import Message, ReasoningPart, ToolCallPart, ToolResultPart
from deepsearch.utils.logging import get_logger

logger = get_logger(__name__)

_BEFORE_LAST_N = re.compile(r"^before-last-(\d+)-messages$")


def _protected_tail(rule: str) -> int | None:
    """Number of trailing messages a rule leaves untouched; None keeps everything."""
    if rule == "none":
        return None
    if rule == "all":
        return 0
    if rule == "before-last-message":
        return 1
    match = _BEFORE_LAST_N.match(rule)
    if match:
        return int(match.group(1))
    raise ValueError(f"Unknown pruning rule: {rule}")


@dataclass(frozen=True)
class PrunePolicy:
    """Which parts to strip from which messages.

    Rules are ``none``, ``all``, ``before-last-message`` or
    ``before-last-N-messages``. Tool calls and their results are always
    removed together.
    """

    tool_calls: str = "before-last-2-messages"
    reasoning: str = "none"
    empty_messages: Literal["remove", "keep"] = "remove"

    def __post_init__(self) -> None:
        _protected_tail(self.tool_calls)
        _protected_tail(self.reasoning)


DEFAULT_POLICY = PrunePolicy()


def prune_messages(messages: list[Message], policy: PrunePolicy = DEFAULT_POLICY) -> list[Message]:
    """Return a bounded view of the history.

    The input list and its messages are never modified. Messages left with no
    parts are dropped (unless the policy keeps them); messages inside a
    protected tail are never dropped. Pruning an already pruned list with the
    same policy returns it unchanged.
    """
    tool_tail = _protected_tail(policy.tool_calls)
    reasoning_tail = _protected_tail(policy.reasoning)
    total = len(messages)

    pruned: list[Message] = []
    for index, message in enumerate(messages):
        from_end = total - index
        parts = message.parts

        if tool_tail is not None and from_end > tool_tail:
            parts = tuple(part for part in parts if not isinstance(part, ToolCallPart | ToolResultPart))
        if reasoning_tail is not None and from_end > reasoning_tail:
            parts = tuple(part for part in parts if not isinstance(part, ReasoningPart))

        if len(parts) == len(message.parts):
            pruned.append(message)
            continue

        if not parts and policy.empty_messages == "remove":
            logger.debug(f"Dropping message {message.id} emptied by pruning")
            continue

        logger.debug(f"Pruned {len(message.parts) - len(parts)} parts from message {message.id}")
        pruned.append(message.with_parts(parts))

    return pruned


class ContextPruner:
    """Applies a pruning policy to conversation history."""

    def __init__(self, policy: PrunePolicy | None = None):
        self.policy = policy or DEFAULT_POLICY

    def prune(self, messages: list[Message], policy: PrunePolicy | None = None) -> list[Message]:
        return prune_messages(messages, policy or self.policy)
