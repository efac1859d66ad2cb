"""
Conversation repository.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from minichat.db.repositories.base import BaseRepository
from minichat.exceptions import NotFoundError
from minichat.models.db import (
    Conversation,
    Message,
    MessageVersion,
    UserFacts,
    VersionGroup,
    utc_now,
)

logger = logging.getLogger(__name__)


def make_title(first_message: str, max_length: int = 40) -> str:
    """
    Derive a conversation title from its first user message.

    Args:
        first_message: Content of the first user message
        max_length: Characters kept before the ellipsis

    Returns:
        Title, truncated with "..." when longer than max_length
    """
    text = " ".join(first_message.split())
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation model."""

    def __init__(self, session: Session):
        super().__init__(Conversation, session)

    def lock(self, conversation_id: uuid.UUID) -> Conversation:
        """
        Load a conversation and hold its row lock until the transaction ends.

        Every write that reads ``max(position)`` or mutates a version group
        goes through here first, which serializes writers per conversation.
        SQLite has no row locks; its single-writer database lock plays the
        same role.

        Args:
            conversation_id: Conversation UUID

        Returns:
            Locked conversation

        Raises:
            NotFoundError: If the conversation does not exist
        """
        conversation = self.session.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .with_for_update()
        ).scalar_one_or_none()
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    def touch(self, conversation: Conversation, when: Optional[datetime] = None) -> None:
        """Record activity on a conversation."""
        conversation.updated_at = when or utc_now()
        self.session.flush()

    def set_title_if_empty(
        self, conversation: Conversation, first_message: str, max_length: int = 40
    ) -> bool:
        """
        Title a conversation from its first user message, once.

        Returns:
            True if a title was set
        """
        if conversation.title:
            return False
        conversation.title = make_title(first_message, max_length)
        self.session.flush()
        return True

    def rename(self, conversation_id: uuid.UUID, title: str) -> Conversation:
        """
        Rename a conversation.

        Args:
            conversation_id: Conversation UUID
            title: New title (stripped)

        Returns:
            Updated conversation

        Raises:
            ValueError: If the title is empty
            NotFoundError: If the conversation does not exist
        """
        title = title.strip()
        if not title:
            raise ValueError("Title must not be empty")
        conversation = self.get_or_raise(conversation_id)
        conversation.title = title
        self.session.flush()
        return conversation

    def list_recent(
        self, limit: Optional[int] = 50, offset: int = 0
    ) -> List[Tuple[Conversation, Optional[str]]]:
        """
        List conversations by last activity with their latest message.

        Args:
            limit: Maximum number of conversations
            offset: Number of conversations to skip

        Returns:
            (conversation, latest message content or None) pairs
        """
        stmt = (
            select(Conversation)
            .order_by(Conversation.updated_at.desc())
            .offset(offset)
        )
        if limit:
            stmt = stmt.limit(limit)
        conversations = list(self.session.execute(stmt).scalars().all())
        if not conversations:
            return []

        ids = [c.id for c in conversations]
        latest = (
            select(
                Message.conversation_id,
                func.max(Message.created_at).label("latest_at"),
            )
            .where(Message.conversation_id.in_(ids))
            .group_by(Message.conversation_id)
            .subquery()
        )
        rows = self.session.execute(
            select(Message.conversation_id, Message.content).join(
                latest,
                (Message.conversation_id == latest.c.conversation_id)
                & (Message.created_at == latest.c.latest_at),
            )
        ).all()
        previews = {row.conversation_id: row.content for row in rows}
        return [(c, previews.get(c.id)) for c in conversations]

    def delete_cascade(self, conversation_id: uuid.UUID) -> None:
        """
        Delete a conversation and everything hanging off it.

        Deletes memberships, version groups, messages, user facts and finally
        the conversation, in that order, within the caller's transaction.

        Args:
            conversation_id: Conversation UUID

        Raises:
            NotFoundError: If the conversation does not exist
        """
        self.lock(conversation_id)

        version_ids = select(VersionGroup.id).where(
            VersionGroup.conversation_id == conversation_id
        )
        memberships = self.session.execute(
            delete(MessageVersion).where(MessageVersion.version_id.in_(version_ids))
        ).rowcount
        groups = self.session.execute(
            delete(VersionGroup).where(VersionGroup.conversation_id == conversation_id)
        ).rowcount
        messages = self.session.execute(
            delete(Message).where(Message.conversation_id == conversation_id)
        ).rowcount
        self.session.execute(
            delete(UserFacts).where(UserFacts.conversation_id == conversation_id)
        )
        self.session.execute(
            delete(Conversation).where(Conversation.id == conversation_id)
        )
        self.session.flush()

        logger.info(
            f"Deleted conversation {conversation_id} "
            f"({messages} messages, {groups} versions, {memberships} memberships)"
        )
