"""
SQLAlchemy database models for MiniChat.

Messages are append-only snapshots. Which message currently occupies a
position is decided per branch by a version group and its ordered
memberships, never by mutating a message row.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_utc(value: datetime) -> datetime:
    """Convert a timestamp to UTC before storing it; naive values are taken as UTC."""
    return ensure_utc(value).astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class MessageRole(str, enum.Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"


class Conversation(Base):
    """A chat conversation and its last activity."""

    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(
        String(255), nullable=False, default="", server_default=""
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False, index=True
    )  # Last activity, bumped on every turn

    # Relationships
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.position",
    )
    version_groups: Mapped[list["VersionGroup"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="VersionGroup.ordinal",
    )
    user_facts: Mapped[Optional["UserFacts"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, title={self.title!r})>"


class Message(Base):
    """Immutable message snapshot occupying a position in a conversation."""

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(
        Enum(
            MessageRole,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    generation_ms: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )  # Inference time for assistant messages
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("position >= 0", name="ck_messages_position_non_negative"),
        Index("idx_messages_conversation_position", "conversation_id", "position"),
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, role={self.role!r}, "
            f"position={self.position})>"
        )


class VersionGroup(Base):
    """One complete linear path through a conversation's edit history."""

    __tablename__ = "version_groups"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ordinal: Mapped[int] = mapped_column(
        Integer, nullable=False
    )  # Creation order within the conversation
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "ordinal", name="uq_version_groups_conversation_ordinal"
        ),
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(
        back_populates="version_groups"
    )
    memberships: Mapped[list["MessageVersion"]] = relationship(
        back_populates="version_group",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MessageVersion.position",
    )

    @property
    def message_ids(self) -> list[uuid.UUID]:
        """Ordered message ids, one per position."""
        return [m.message_id for m in self.memberships]

    @property
    def length(self) -> int:
        """Number of positions this branch has reached."""
        return len(self.memberships)

    def __repr__(self) -> str:
        return (
            f"<VersionGroup(id={self.id}, ordinal={self.ordinal}, "
            f"length={self.length})>"
        )


class MessageVersion(Base):
    """Ordered membership of a message in a version group.

    Every group starts at position 0, so ``position`` is both the slot in the
    group's sequence and the member message's own position.
    """

    __tablename__ = "message_versions"

    version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("version_groups.id", ondelete="CASCADE"),
        primary_key=True,
    )
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "version_id", "message_id", name="uq_message_versions_version_message"
        ),
        CheckConstraint(
            "position >= 0", name="ck_message_versions_position_non_negative"
        ),
    )

    # Relationships
    version_group: Mapped["VersionGroup"] = relationship(back_populates="memberships")
    message: Mapped["Message"] = relationship()

    def __repr__(self) -> str:
        return (
            f"<MessageVersion(version_id={self.version_id}, "
            f"position={self.position}, message_id={self.message_id})>"
        )


class UserFacts(Base):
    """Best-known facts about the user of one conversation."""

    __tablename__ = "user_facts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    age: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="user_facts")

    def as_dict(self) -> dict[str, str]:
        """Known facts only, keyed by field name."""
        return {
            key: value
            for key, value in (
                ("name", self.name),
                ("age", self.age),
                ("location", self.location),
                ("email", self.email),
            )
            if value
        }

    def __repr__(self) -> str:
        return f"<UserFacts(conversation_id={self.conversation_id})>"
