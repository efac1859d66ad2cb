"""Custom exceptions for MiniChat."""

from typing import Any


class MiniChatError(Exception):
    """Base class for all MiniChat errors."""


class NotFoundError(MiniChatError):
    """Raised when a referenced conversation, message or version does not exist."""

    def __init__(self, kind: str, identifier: Any, detail: str | None = None):
        self.kind = kind
        self.identifier = identifier
        message = f"{kind} {identifier} not found"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class InvariantViolation(MiniChatError):
    """Raised when stored version data breaks positional contiguity.

    Also raised when a divergence query targets a position no version group
    reaches. Always an internal defect, never something to retry.
    """


class StorageFailure(MiniChatError):
    """Raised when a transactional write fails and has been rolled back."""


class CollaboratorFailure(MiniChatError):
    """Raised when an external collaborator (tokenizer, inference server) fails."""

    def __init__(self, collaborator: str, reason: str):
        self.collaborator = collaborator
        self.reason = reason
        super().__init__(f"{collaborator} unavailable: {reason}")
