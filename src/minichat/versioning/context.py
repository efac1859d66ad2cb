"""History selection for the model context window."""

import logging
from typing import List, Protocol, Sequence, TypeVar

logger = logging.getLogger(__name__)


class Costed(Protocol):
    token_count: int


M = TypeVar("M", bound=Costed)


def message_cost(message: Costed, framing_overhead: int = 0) -> int:
    """Tokens a message takes once framed by the prompt formatter."""
    return message.token_count + framing_overhead


def select_context(
    messages: Sequence[M], token_budget: int, framing_overhead: int = 0
) -> List[M]:
    """
    Pick the history to show the model: the first message plus the most
    recent tail that fits the budget.

    The first message grounds the conversation and is always kept, even when
    it alone exceeds the budget; its cost is charged first. The remaining
    messages are taken newest first while the running total stays within
    ``token_budget``, stopping at the first one that would overflow.

    Args:
        messages: One branch's messages in chronological order
        token_budget: Maximum tokens of history
        framing_overhead: Per-message template tokens added by the formatter

    Returns:
        Selected messages in chronological order
    """
    if not messages:
        return []

    first, rest = messages[0], messages[1:]
    total = message_cost(first, framing_overhead)

    tail: List[M] = []
    for message in reversed(rest):
        cost = message_cost(message, framing_overhead)
        if total + cost > token_budget:
            break
        total += cost
        tail.append(message)

    tail.reverse()
    selected = [first] + tail
    logger.debug(
        f"Selected {len(selected)}/{len(messages)} messages "
        f"({total} tokens, budget {token_budget})"
    )
    return selected


def context_cost(messages: Sequence[Costed], framing_overhead: int = 0) -> int:
    """Total tokens of a selected history."""
    return sum(message_cost(m, framing_overhead) for m in messages)
