"""
Version view data models.

Plain dataclasses produced by the divergence resolver and the conversation
service. They carry no session state and are safe to hand to callers after
the transaction that produced them has closed.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from minichat.models.db import ensure_utc


@dataclass(frozen=True)
class MessageSnapshot:
    """Detached copy of a message row."""

    id: uuid.UUID
    conversation_id: uuid.UUID
    role: str
    content: str
    position: int
    token_count: int
    created_at: datetime
    generation_ms: Optional[int] = None

    @classmethod
    def from_row(cls, message) -> "MessageSnapshot":
        """Copy an ORM ``Message`` into a snapshot."""
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            role=message.role.value if hasattr(message.role, "value") else message.role,
            content=message.content,
            position=message.position,
            token_count=message.token_count,
            created_at=ensure_utc(message.created_at),
            generation_ms=message.generation_ms,
        )


@dataclass(frozen=True)
class BranchSnapshot:
    """One version group resolved to its ordered messages."""

    version_id: uuid.UUID
    ordinal: int
    created_at: datetime
    messages: tuple[MessageSnapshot, ...]

    @property
    def length(self) -> int:
        return len(self.messages)

    def reaches(self, position: int) -> bool:
        """Whether this branch has a message at ``position``."""
        return 0 <= position < len(self.messages)


@dataclass(frozen=True)
class VariantRef:
    """A version group realizing a variant."""

    version_id: uuid.UUID
    timestamp: datetime

    def to_dict(self) -> dict:
        return {"version_id": str(self.version_id), "timestamp": self.timestamp.isoformat()}


@dataclass
class DivergenceVariant:
    """One distinct content at a position and the versions that carry it."""

    content: str
    versions: list[VariantRef] = field(default_factory=list)

    @property
    def version_ids(self) -> list[uuid.UUID]:
        return [ref.version_id for ref in self.versions]

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "versions": [ref.to_dict() for ref in self.versions],
        }


@dataclass
class AnnotatedMessage:
    """A message of a version view with its branch-point annotation."""

    message: MessageSnapshot
    is_divergence_point: bool = False
    variants: list[DivergenceVariant] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": str(self.message.id),
            "conversation_id": str(self.message.conversation_id),
            "role": self.message.role,
            "content": self.message.content,
            "position": self.message.position,
            "token_count": self.message.token_count,
            "created_at": self.message.created_at.isoformat(),
            "is_divergence_point": self.is_divergence_point,
            "variants": [v.to_dict() for v in self.variants],
        }


@dataclass
class TurnResult:
    """Outcome of one user turn (new message or edit) and its reply."""

    conversation_id: uuid.UUID
    version_id: uuid.UUID
    user_message_id: uuid.UUID
    assistant_message_id: Optional[uuid.UUID]
    reply: Optional[str]
    context_tokens: int = 0
