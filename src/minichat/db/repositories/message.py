"""
Message repository.

Messages are append-only: edits insert a new row at the same position and
never touch the row they replace.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from minichat.db.repositories.base import BaseRepository
from minichat.exceptions import NotFoundError
from minichat.models.db import Conversation, Message, MessageRole, to_utc, utc_now
from minichat.tokens import Tokenizer

logger = logging.getLogger(__name__)


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model."""

    def __init__(self, session: Session, tokenizer: Tokenizer):
        super().__init__(Message, session)
        self.tokenizer = tokenizer

    def max_position(self, conversation_id: uuid.UUID) -> Optional[int]:
        """
        Highest position used in a conversation.

        Returns:
            Highest position or None when the conversation has no messages
        """
        return self.session.execute(
            select(func.max(Message.position)).where(
                Message.conversation_id == conversation_id
            )
        ).scalar_one_or_none()

    def append_message(
        self,
        conversation_id: uuid.UUID,
        role: MessageRole | str,
        content: str,
        timestamp: Optional[datetime] = None,
        position: Optional[int] = None,
        generation_ms: Optional[int] = None,
    ) -> Message:
        """
        Append a message to a conversation.

        Args:
            conversation_id: Conversation UUID
            role: Message author
            content: Message text
            timestamp: Creation time (defaults to now)
            position: Slot to occupy; defaults to ``max(position) + 1``
                (0 for the first message). Callers continuing a branch pass
                the branch length.
            generation_ms: Inference time for assistant messages

        Returns:
            Created message with its token count

        Raises:
            NotFoundError: If the conversation does not exist
            CollaboratorFailure: If the tokenizer is unavailable
        """
        if self.session.get(Conversation, conversation_id) is None:
            raise NotFoundError("Conversation", conversation_id)

        if position is None:
            current_max = self.max_position(conversation_id)
            position = 0 if current_max is None else current_max + 1
        elif position < 0:
            raise ValueError(f"Position must be non-negative, got {position}")

        message = self.create(
            conversation_id=conversation_id,
            role=MessageRole(role),
            content=content,
            position=position,
            token_count=self.tokenizer.count(content),
            generation_ms=generation_ms,
            created_at=to_utc(timestamp) if timestamp else utc_now(),
        )
        logger.debug(
            f"Appended {message.role.value} message {message.id} "
            f"at position {position} ({message.token_count} tokens)"
        )
        return message

    def edit_message(
        self,
        original_message_id: uuid.UUID,
        new_content: str,
        timestamp: Optional[datetime] = None,
    ) -> Message:
        """
        Create the edited variant of a message.

        The new row shares the original's conversation, position and role.

        Args:
            original_message_id: Message being replaced in the new branch
            new_content: Edited text
            timestamp: Creation time (defaults to now)

        Returns:
            Newly created message

        Raises:
            NotFoundError: If the original message does not exist
        """
        original = self.get(original_message_id)
        if original is None:
            raise NotFoundError("Message", original_message_id)

        message = self.create(
            conversation_id=original.conversation_id,
            role=original.role,
            content=new_content,
            position=original.position,
            token_count=self.tokenizer.count(new_content),
            created_at=to_utc(timestamp) if timestamp else utc_now(),
        )
        logger.debug(
            f"Edited message {original.id} -> {message.id} "
            f"at position {message.position}"
        )
        return message

    def get_by_conversation(self, conversation_id: uuid.UUID) -> List[Message]:
        """
        Get every message ever written in a conversation, all branches.

        Returns:
            Messages ordered by position, then creation time
        """
        return list(
            self.session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.position, Message.created_at)
            )
            .scalars()
            .all()
        )

    def get_at_position(
        self, conversation_id: uuid.UUID, position: int
    ) -> List[Message]:
        """
        Get every variant ever written at one position.

        Returns:
            Messages at ``position`` in creation order
        """
        return list(
            self.session.execute(
                select(Message)
                .where(
                    Message.conversation_id == conversation_id,
                    Message.position == position,
                )
                .order_by(Message.created_at)
            )
            .scalars()
            .all()
        )
