"""
Conversation service for MiniChat.

Wires the message store, the version registry, the divergence resolver and
the context assembler together for each request. Every write runs in one
transaction that locks the conversation first; inference happens between a
read transaction and the write transaction, never inside one.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, List, Mapping, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from minichat.config import Settings, settings as default_settings
from minichat.db.connection import SessionFactory, transaction
from minichat.db.repositories import (
    ConversationRepository,
    MessageRepository,
    UserFactsRepository,
    VersionGroupRepository,
)
from minichat.db.repositories.user_facts import normalize_facts, render_facts
from minichat.exceptions import NotFoundError
from minichat.llm.prompt import build_prompt, format_history, framing_overhead
from minichat.models.db import (
    Conversation,
    Message,
    MessageRole,
    VersionGroup,
    utc_now,
)
from minichat.models.versioning import (
    AnnotatedMessage,
    DivergenceVariant,
    MessageSnapshot,
    TurnResult,
)
from minichat.tokens import Tokenizer, get_default_tokenizer
from minichat.versioning import DivergenceIndex, context_cost, select_context

if TYPE_CHECKING:
    from minichat.llm.base import InferenceClient

logger = logging.getLogger(__name__)


class FactExtractor(Protocol):
    """Pulls user facts (name, age, location...) out of a message."""

    def extract(self, text: str) -> Mapping[str, str]: ...


@dataclass
class ConversationSummary:
    """A conversation with its latest message, for listings."""

    id: uuid.UUID
    title: str
    updated_at: datetime
    last_message: Optional[str]


@dataclass
class _PreparedTurn:
    """Everything read before inference, carried into the write transaction."""

    conversation_id: Optional[uuid.UUID]
    version_id: Optional[uuid.UUID]
    position: int
    prompt: str
    context_tokens: int


class ConversationService:
    """Entry point for every conversation operation."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        tokenizer: Optional[Tokenizer] = None,
        inference: Optional["InferenceClient"] = None,
        fact_extractor: Optional[FactExtractor] = None,
        config: Optional[Settings] = None,
    ):
        """
        Initialize the service.

        Args:
            session_factory: Session factory (defaults to ``SessionLocal``)
            tokenizer: Token counter (defaults to tiktoken per settings)
            inference: Inference client, created from settings on first use
            fact_extractor: Optional user fact extractor
            config: Settings (defaults to the global settings)
        """
        self.session_factory = session_factory
        self.tokenizer = tokenizer or get_default_tokenizer()
        self._inference = inference
        self._owns_inference = inference is None
        self.fact_extractor = fact_extractor
        self.config = config or default_settings
        self._framing_overhead: Optional[int] = None

    @property
    def inference(self) -> "InferenceClient":
        if self._inference is None:
            from minichat.llm import create_inference_client

            self._inference = create_inference_client()
        return self._inference

    def close(self) -> None:
        """Close the inference client if this service created it."""
        if self._owns_inference and self._inference is not None:
            self._inference.close()
            self._inference = None

    def __enter__(self) -> "ConversationService":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def framing_overhead(self) -> int:
        """Per-message template tokens, measured once."""
        if self._framing_overhead is None:
            self._framing_overhead = framing_overhead(self.tokenizer)
        return self._framing_overhead

    def _transaction(self):
        return transaction(self.session_factory)

    def _messages(self, session: Session) -> MessageRepository:
        return MessageRepository(session, self.tokenizer)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, title: str = "") -> Conversation:
        """Create an empty conversation."""
        with self._transaction() as session:
            conversation = ConversationRepository(session).create(title=title.strip())
        logger.info(f"Created conversation {conversation.id}")
        return conversation

    def get_conversation(self, conversation_id: uuid.UUID) -> Conversation:
        """
        Get a conversation.

        Raises:
            NotFoundError: If it does not exist
        """
        with self._transaction() as session:
            return ConversationRepository(session).get_or_raise(conversation_id)

    def list_conversations(
        self, limit: Optional[int] = 50, offset: int = 0
    ) -> List[ConversationSummary]:
        """List conversations by last activity with a preview of the latest message."""
        with self._transaction() as session:
            rows = ConversationRepository(session).list_recent(limit=limit, offset=offset)
            return [
                ConversationSummary(
                    id=conversation.id,
                    title=conversation.title,
                    updated_at=conversation.updated_at,
                    last_message=last_message,
                )
                for conversation, last_message in rows
            ]

    def rename_conversation(self, conversation_id: uuid.UUID, title: str) -> Conversation:
        """
        Rename a conversation.

        Raises:
            ValueError: If the title is empty
            NotFoundError: If the conversation does not exist
        """
        with self._transaction() as session:
            return ConversationRepository(session).rename(conversation_id, title)

    def delete_conversation(self, conversation_id: uuid.UUID) -> None:
        """
        Delete a conversation with all its messages, versions and facts.

        Raises:
            NotFoundError: If the conversation does not exist
        """
        with self._transaction() as session:
            ConversationRepository(session).delete_cascade(conversation_id)

    # ------------------------------------------------------------------
    # Messages and versions
    # ------------------------------------------------------------------

    def append_message(
        self,
        conversation_id: uuid.UUID,
        role: MessageRole | str,
        content: str,
        timestamp: Optional[datetime] = None,
        position: Optional[int] = None,
    ) -> Message:
        """Append a message; see ``MessageRepository.append_message``."""
        with self._transaction() as session:
            ConversationRepository(session).lock(conversation_id)
            return self._messages(session).append_message(
                conversation_id, role, content, timestamp=timestamp, position=position
            )

    def edit_message(
        self,
        message_id: uuid.UUID,
        new_content: str,
        timestamp: Optional[datetime] = None,
    ) -> Message:
        """Create an edited variant of a message; see ``MessageRepository.edit_message``."""
        with self._transaction() as session:
            messages = self._messages(session)
            original = messages.get_or_raise(message_id)
            ConversationRepository(session).lock(original.conversation_id)
            return messages.edit_message(message_id, new_content, timestamp=timestamp)

    def create_version_group(
        self, conversation_id: uuid.UUID, message_ids: Sequence[uuid.UUID]
    ) -> VersionGroup:
        """Open a new branch; see ``VersionGroupRepository.create_version_group``."""
        with self._transaction() as session:
            ConversationRepository(session).lock(conversation_id)
            return VersionGroupRepository(session).create_version_group(
                conversation_id, message_ids
            )

    def extend_version_group(
        self, version_id: uuid.UUID, message_ids: Sequence[uuid.UUID]
    ) -> VersionGroup:
        """Continue a branch; see ``VersionGroupRepository.extend_version_group``."""
        with self._transaction() as session:
            versions = VersionGroupRepository(session)
            group = versions.get_or_raise(version_id)
            ConversationRepository(session).lock(group.conversation_id)
            return versions.extend_version_group(version_id, message_ids)

    def get_latest_version(self, conversation_id: uuid.UUID) -> Optional[VersionGroup]:
        """
        Most recently created branch of a conversation, or None before the first turn.

        Raises:
            NotFoundError: If the conversation does not exist
        """
        with self._transaction() as session:
            ConversationRepository(session).get_or_raise(conversation_id)
            return VersionGroupRepository(session).get_latest_version_group(
                conversation_id
            )

    def get_messages_in_version(self, version_id: uuid.UUID) -> List[MessageSnapshot]:
        """Messages of one branch, ordered by position, without annotations."""
        with self._transaction() as session:
            return [
                MessageSnapshot.from_row(m)
                for m in VersionGroupRepository(session).get_messages_in_version(
                    version_id
                )
            ]

    def get_version_messages(self, version_id: uuid.UUID) -> List[AnnotatedMessage]:
        """
        Messages of one branch, each flagged with its divergence status.

        Raises:
            NotFoundError: If the version does not exist
            InvariantViolation: If stored data breaks contiguity
        """
        with self._transaction() as session:
            versions = VersionGroupRepository(session)
            group = versions.get_or_raise(version_id)
            branches = versions.get_branch_snapshots(group.conversation_id)
        return DivergenceIndex(branches).annotate(version_id)

    def divergence_variants(
        self, conversation_id: uuid.UUID, position: int
    ) -> List[DivergenceVariant]:
        """
        Sibling alternatives available at a position.

        Raises:
            NotFoundError: If the conversation does not exist
            InvariantViolation: If no branch reaches ``position``
        """
        with self._transaction() as session:
            ConversationRepository(session).get_or_raise(conversation_id)
            branches = VersionGroupRepository(session).get_branch_snapshots(
                conversation_id
            )
        return DivergenceIndex(branches).variants_at(position)

    def select_context(
        self, version_id: uuid.UUID, token_budget: int
    ) -> List[MessageSnapshot]:
        """
        History of one branch trimmed to a token budget.

        Raises:
            NotFoundError: If the version does not exist
        """
        history = self.get_messages_in_version(version_id)
        return select_context(history, token_budget, self.framing_overhead)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _facts_fragment(
        self, session: Session, conversation_id: Optional[uuid.UUID], extracted: Mapping[str, str]
    ) -> str:
        stored = (
            UserFactsRepository(session).get_by_conversation(conversation_id)
            if conversation_id
            else None
        )
        merged = stored.as_dict() if stored else {}
        merged.update(normalize_facts(extracted))
        return render_facts(merged)

    def _build_prompt(
        self, history: Sequence[MessageSnapshot], facts_fragment: str, user_message: str
    ) -> tuple[str, int]:
        budget = max(
            0, self.config.history_budget - self.tokenizer.count(facts_fragment)
        )
        selected = select_context(history, budget, self.framing_overhead)
        context = facts_fragment + format_history(selected)
        prompt = build_prompt(self.config.system_prompt, context, user_message)
        return prompt, context_cost(selected, self.framing_overhead)

    def _extract_facts(self, content: str) -> Mapping[str, str]:
        if self.fact_extractor is None:
            return {}
        facts = self.fact_extractor.extract(content)
        if facts:
            logger.debug(f"Extracted user facts: {sorted(facts)}")
        return facts

    def send_message(
        self,
        content: str,
        conversation_id: Optional[uuid.UUID] = None,
        version_id: Optional[uuid.UUID] = None,
    ) -> TurnResult:
        """
        Send a user message on a branch and store the assistant's reply.

        Without a conversation id a new conversation is created. Without a
        version id the latest branch is continued, or a first one opened.

        Args:
            content: User message
            conversation_id: Existing conversation
            version_id: Branch to continue

        Returns:
            Ids of the stored messages and of the extended or created branch

        Raises:
            NotFoundError: If the conversation or version does not exist
            CollaboratorFailure: If the tokenizer or inference server fails;
                nothing is stored in that case
        """
        extracted = self._extract_facts(content)

        with self._transaction() as session:
            prepared = self._prepare_turn(session, conversation_id, version_id)
            history = (
                [
                    MessageSnapshot.from_row(m)
                    for m in VersionGroupRepository(session).get_messages_in_version(
                        prepared.version_id
                    )
                ]
                if prepared.version_id
                else []
            )
            facts_fragment = self._facts_fragment(session, conversation_id, extracted)
        prepared.prompt, prepared.context_tokens = self._build_prompt(
            history, facts_fragment, content
        )

        completion = self.inference.complete(prepared.prompt)

        with self._transaction() as session:
            conversations = ConversationRepository(session)
            if prepared.conversation_id is None:
                conversation = conversations.create(title="")
            else:
                conversation = conversations.lock(prepared.conversation_id)
            conversations.set_title_if_empty(
                conversation, content, self.config.title_max_length
            )
            if extracted:
                UserFactsRepository(session).upsert(conversation.id, extracted)

            messages = self._messages(session)
            now = utc_now()
            user_message = messages.append_message(
                conversation.id,
                MessageRole.USER,
                content,
                timestamp=now,
                position=prepared.position,
            )
            assistant_message = messages.append_message(
                conversation.id,
                MessageRole.ASSISTANT,
                completion.content,
                timestamp=utc_now(),
                position=prepared.position + 1,
                generation_ms=int(completion.duration_ms),
            )

            versions = VersionGroupRepository(session)
            new_ids = [user_message.id, assistant_message.id]
            if prepared.version_id is None:
                group = versions.create_version_group(conversation.id, new_ids)
            else:
                group = versions.extend_version_group(prepared.version_id, new_ids)
            conversations.touch(conversation, now)

            result = TurnResult(
                conversation_id=conversation.id,
                version_id=group.id,
                user_message_id=user_message.id,
                assistant_message_id=assistant_message.id,
                reply=completion.content,
                context_tokens=prepared.context_tokens,
            )

        logger.info(
            f"Stored turn in conversation {result.conversation_id} "
            f"on version {result.version_id} at position {prepared.position}"
        )
        return result

    def _prepare_turn(
        self,
        session: Session,
        conversation_id: Optional[uuid.UUID],
        version_id: Optional[uuid.UUID],
    ) -> _PreparedTurn:
        if conversation_id is None:
            if version_id is not None:
                raise ValueError("A version id requires its conversation id")
            return _PreparedTurn(None, None, 0, "", 0)

        ConversationRepository(session).get_or_raise(conversation_id)
        versions = VersionGroupRepository(session)
        if version_id is not None:
            group = versions.get_or_raise(version_id)
            if group.conversation_id != conversation_id:
                raise NotFoundError(
                    "VersionGroup",
                    version_id,
                    f"not part of conversation {conversation_id}",
                )
        else:
            group = versions.get_latest_version_group(conversation_id)

        if group is None:
            return _PreparedTurn(conversation_id, None, 0, "", 0)
        return _PreparedTurn(conversation_id, group.id, group.length, "", 0)

    def edit_and_continue(
        self,
        message_id: uuid.UUID,
        new_content: str,
        version_id: Optional[uuid.UUID] = None,
    ) -> TurnResult:
        """
        Edit a message of a branch and fork a new branch from it.

        The new branch keeps the positions before the edited one, then the
        edited message. Editing a user message also generates and appends the
        assistant's reply; editing an assistant message only forks.

        Args:
            message_id: Message to edit
            new_content: Edited text
            version_id: Branch the message is edited from (defaults to latest)

        Returns:
            Ids of the edited message, the reply (if any) and the new branch

        Raises:
            NotFoundError: If the message or version does not exist, or the
                message is not part of the version
            CollaboratorFailure: If the inference server fails; nothing is
                stored in that case
        """
        with self._transaction() as session:
            original = self._messages(session).get_or_raise(message_id)
            conversation_id = original.conversation_id
            position = original.position
            role = MessageRole(original.role)

            versions = VersionGroupRepository(session)
            group = (
                versions.get_or_raise(version_id)
                if version_id is not None
                else versions.get_latest_version_group(conversation_id)
            )
            if group is None:
                raise NotFoundError(
                    "VersionGroup", None, f"conversation {conversation_id} has no versions"
                )
            history = [
                MessageSnapshot.from_row(m)
                for m in versions.get_messages_in_version(group.id)
            ]
            if position >= len(history) or history[position].id != message_id:
                raise NotFoundError(
                    "Message", message_id, f"not part of version {group.id}"
                )
            source_version_id = group.id
            prefix = history[:position]
            facts_fragment = (
                self._facts_fragment(session, conversation_id, {})
                if role is MessageRole.USER
                else ""
            )

        completion = None
        context_tokens = 0
        if role is MessageRole.USER:
            prompt, context_tokens = self._build_prompt(prefix, facts_fragment, new_content)
            completion = self.inference.complete(prompt)

        with self._transaction() as session:
            conversations = ConversationRepository(session)
            conversation = conversations.lock(conversation_id)
            messages = self._messages(session)
            now = utc_now()
            edited = messages.edit_message(message_id, new_content, timestamp=now)

            versions = VersionGroupRepository(session)
            group = versions.create_version_group(
                conversation_id, [m.id for m in prefix] + [edited.id]
            )

            assistant_id = None
            if completion is not None:
                reply = messages.append_message(
                    conversation_id,
                    MessageRole.ASSISTANT,
                    completion.content,
                    timestamp=utc_now(),
                    position=position + 1,
                    generation_ms=int(completion.duration_ms),
                )
                versions.extend_version_group(group.id, [reply.id])
                assistant_id = reply.id
            conversations.touch(conversation, now)

            result = TurnResult(
                conversation_id=conversation_id,
                version_id=group.id,
                user_message_id=edited.id,
                assistant_message_id=assistant_id,
                reply=completion.content if completion else None,
                context_tokens=context_tokens,
            )

        logger.info(
            f"Forked version {result.version_id} from {source_version_id} "
            f"at position {position} in conversation {conversation_id}"
        )
        return result
