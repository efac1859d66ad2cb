"""
Version group repository.

A version group is one linear path through a conversation: an ordered
sequence of message ids, one per position starting at 0. Groups are created
when a branch is opened and only ever grow afterwards.
"""

import logging
import uuid
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from minichat.db.repositories.base import BaseRepository
from minichat.exceptions import InvariantViolation, NotFoundError
from minichat.models.db import (
    Conversation,
    Message,
    MessageVersion,
    VersionGroup,
    ensure_utc,
    utc_now,
)
from minichat.models.versioning import BranchSnapshot, MessageSnapshot

logger = logging.getLogger(__name__)


class VersionGroupRepository(BaseRepository[VersionGroup]):
    """Repository for VersionGroup model and its ordered memberships."""

    def __init__(self, session: Session):
        super().__init__(VersionGroup, session)

    def _next_ordinal(self, conversation_id: uuid.UUID) -> int:
        current = self.session.execute(
            select(func.max(VersionGroup.ordinal)).where(
                VersionGroup.conversation_id == conversation_id
            )
        ).scalar_one_or_none()
        return 0 if current is None else current + 1

    def _validated_members(
        self,
        conversation_id: uuid.UUID,
        message_ids: Sequence[uuid.UUID],
        start: int,
        existing: Iterable[uuid.UUID] = (),
    ) -> List[Message]:
        """
        Load and check messages about to occupy positions ``start``, ``start+1``...

        Raises:
            NotFoundError: If a message id does not exist
            InvariantViolation: If a message belongs to another conversation,
                repeats, or sits at a position other than its slot
        """
        ids = list(message_ids)
        seen = set(existing)
        rows = {
            m.id: m
            for m in self.session.execute(
                select(Message).where(Message.id.in_(ids))
            ).scalars()
        } if ids else {}

        members = []
        for index, message_id in enumerate(ids, start=start):
            message = rows.get(message_id)
            if message is None:
                raise NotFoundError("Message", message_id)
            if message.conversation_id != conversation_id:
                raise self._violation(
                    f"message {message_id} belongs to conversation "
                    f"{message.conversation_id}, not {conversation_id}"
                )
            if message_id in seen:
                raise self._violation(
                    f"message {message_id} appears twice in one version group"
                )
            if message.position != index:
                raise self._violation(
                    f"message {message_id} has position {message.position} "
                    f"but would occupy slot {index}"
                )
            seen.add(message_id)
            members.append(message)
        return members

    @staticmethod
    def _violation(detail: str) -> InvariantViolation:
        logger.error(f"Version group invariant violated: {detail}")
        return InvariantViolation(detail)

    def create_version_group(
        self, conversation_id: uuid.UUID, message_ids: Sequence[uuid.UUID]
    ) -> VersionGroup:
        """
        Persist a new version group.

        Args:
            conversation_id: Owning conversation
            message_ids: Ordered ids; the i-th id must sit at position i

        Returns:
            Created version group

        Raises:
            NotFoundError: If the conversation or a message does not exist
            InvariantViolation: If the sequence is not contiguous from 0
        """
        if self.session.get(Conversation, conversation_id) is None:
            raise NotFoundError("Conversation", conversation_id)

        members = self._validated_members(conversation_id, message_ids, start=0)
        now = utc_now()
        group = self.create(
            conversation_id=conversation_id,
            ordinal=self._next_ordinal(conversation_id),
            created_at=now,
            updated_at=now,
        )
        for message in members:
            group.memberships.append(
                MessageVersion(position=message.position, message_id=message.id)
            )
        self.session.flush()

        logger.debug(
            f"Created version group {group.id} (#{group.ordinal}) "
            f"with {len(members)} messages"
        )
        return group

    def extend_version_group(
        self, version_id: uuid.UUID, additional_message_ids: Sequence[uuid.UUID]
    ) -> VersionGroup:
        """
        Append messages to an existing version group.

        Prior memberships are never removed; the group only grows.

        Args:
            version_id: Group to extend
            additional_message_ids: Ids continuing the sequence

        Returns:
            Extended version group

        Raises:
            NotFoundError: If the group or a message does not exist
            InvariantViolation: If the ids do not continue the sequence
        """
        group = self.get_or_raise(version_id)
        existing = group.message_ids
        members = self._validated_members(
            group.conversation_id,
            additional_message_ids,
            start=len(existing),
            existing=existing,
        )
        for message in members:
            group.memberships.append(
                MessageVersion(position=message.position, message_id=message.id)
            )
        group.updated_at = utc_now()
        self.session.flush()

        logger.debug(
            f"Extended version group {group.id} by {len(members)} messages "
            f"to length {group.length}"
        )
        return group

    def get_by_conversation(self, conversation_id: uuid.UUID) -> List[VersionGroup]:
        """
        Get all version groups of a conversation.

        Returns:
            Groups ordered by creation time, ties by creation order
        """
        return list(
            self.session.execute(
                select(VersionGroup)
                .where(VersionGroup.conversation_id == conversation_id)
                .options(selectinload(VersionGroup.memberships))
                .order_by(VersionGroup.created_at, VersionGroup.ordinal)
            )
            .scalars()
            .all()
        )

    def get_latest_version_group(
        self, conversation_id: uuid.UUID
    ) -> Optional[VersionGroup]:
        """
        Get the most recently created version group of a conversation.

        Returns:
            Latest group, or None if no turn has completed yet
        """
        return self.session.execute(
            select(VersionGroup)
            .where(VersionGroup.conversation_id == conversation_id)
            .options(selectinload(VersionGroup.memberships))
            .order_by(VersionGroup.created_at.desc(), VersionGroup.ordinal.desc())
            .limit(1)
        ).scalar_one_or_none()

    def get_messages_in_version(self, version_id: uuid.UUID) -> List[Message]:
        """
        Resolve a version group to its messages.

        Returns:
            Messages ordered by position

        Raises:
            NotFoundError: If the group does not exist
            InvariantViolation: If stored positions are not contiguous from 0
        """
        self.get_or_raise(version_id)
        rows = self.session.execute(
            select(MessageVersion.position, Message)
            .join(Message, Message.id == MessageVersion.message_id)
            .where(MessageVersion.version_id == version_id)
            .order_by(MessageVersion.position)
        ).all()

        messages = []
        for index, (slot, message) in enumerate(rows):
            if slot != index or message.position != index:
                raise self._violation(
                    f"version group {version_id} has message {message.id} "
                    f"at slot {slot} (position {message.position}), expected {index}"
                )
            messages.append(message)
        return messages

    def get_branch_snapshots(self, conversation_id: uuid.UUID) -> List[BranchSnapshot]:
        """
        Load every branch of a conversation as detached snapshots.

        Messages are fetched once per conversation and shared between the
        branches that contain them.

        Returns:
            Snapshots ordered by creation time, ties by creation order

        Raises:
            InvariantViolation: If a stored group is not contiguous from 0
        """
        groups = self.get_by_conversation(conversation_id)
        messages = {
            m.id: MessageSnapshot.from_row(m)
            for m in self.session.execute(
                select(Message).where(Message.conversation_id == conversation_id)
            ).scalars()
        }

        snapshots = []
        for group in groups:
            resolved = []
            for index, membership in enumerate(group.memberships):
                message = messages.get(membership.message_id)
                if (
                    message is None
                    or membership.position != index
                    or message.position != index
                ):
                    raise self._violation(
                        f"version group {group.id} is not contiguous at slot {index}"
                    )
                resolved.append(message)
            snapshots.append(
                BranchSnapshot(
                    version_id=group.id,
                    ordinal=group.ordinal,
                    created_at=ensure_utc(group.created_at),
                    messages=tuple(resolved),
                )
            )
        return snapshots
