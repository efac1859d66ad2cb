"""Prompt formatting for Llama 3 style chat templates."""

from typing import Iterable, Protocol

from minichat.tokens import Tokenizer

START_HEADER = "<|start_header_id|>"
END_HEADER = "<|end_header_id|>"
END_OF_TURN = "<|eot_id|>"

STOP_SEQUENCES = [END_OF_TURN, START_HEADER]


class PromptMessage(Protocol):
    role: str
    content: str


def format_message(role: str, content: str) -> str:
    """Frame one message with the template's header and end-of-turn tokens."""
    return f"{START_HEADER}{role}{END_HEADER}{content}{END_OF_TURN}"


def format_history(messages: Iterable[PromptMessage]) -> str:
    """Frame a chronological history, one message per line."""
    return "\n".join(
        format_message(_role_name(m.role), m.content) for m in messages
    )


def build_prompt(system_prompt: str, conversation_context: str, user_message: str) -> str:
    """
    Assemble the full completion prompt.

    Args:
        system_prompt: Assistant instructions
        conversation_context: Facts fragment followed by framed history
        user_message: The message being answered

    Returns:
        Prompt ending with an open assistant header
    """
    return (
        f"{START_HEADER}system{END_HEADER}\n{system_prompt}\n{END_OF_TURN}\n\n"
        f"{conversation_context}\n\n"
        f"{format_message('user', user_message)}\n"
        f"{START_HEADER}assistant{END_HEADER}"
    )


def framing_overhead(tokenizer: Tokenizer) -> int:
    """
    Template tokens added around each message.

    Measured on the longest role name plus the joining newline so the
    budget never under-counts.
    """
    return tokenizer.count(format_message("assistant", "") + "\n")


def _role_name(role) -> str:
    return role.value if hasattr(role, "value") else str(role)
