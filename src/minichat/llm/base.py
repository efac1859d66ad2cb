"""Base types for inference collaborators."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class CompletionResult:
    """Reply from an inference server.

    Attributes:
        content: Generated text with template tokens removed
        duration_ms: Time taken for the call in milliseconds
        raw_response: Server payload for debugging
    """

    content: str
    duration_ms: float
    raw_response: Any = None


class InferenceClient(ABC):
    """Abstract base class for inference servers.

    The versioning core never calls this; only the conversation service does,
    between its read and write transactions.
    """

    @abstractmethod
    def complete(self, prompt: str) -> CompletionResult:
        """Generate a reply for a fully formatted prompt.

        Raises:
            CollaboratorFailure: If the server is unreachable or answers badly
        """
        ...

    def close(self) -> None:
        """Release client resources."""
