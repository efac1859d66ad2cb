"""
Tests for MessageRepository.
"""

import uuid
from datetime import UTC, datetime, timedelta, timezone

import pytest

from minichat.exceptions import CollaboratorFailure, NotFoundError
from minichat.db.repositories import MessageRepository
from minichat.models.db import MessageRole
from minichat.models.versioning import MessageSnapshot

PLUS_TWO = timezone(timedelta(hours=2))


class TestAppendMessage:
    """Tests for append_message."""

    def test_first_message_at_position_zero(self, message_repo, sample_conversation):
        message = message_repo.append_message(sample_conversation.id, "user", "hi")

        assert message.position == 0
        assert message.role == MessageRole.USER

    def test_positions_increase(self, message_repo, sample_conversation):
        first = message_repo.append_message(sample_conversation.id, "user", "hi")
        second = message_repo.append_message(
            sample_conversation.id, MessageRole.ASSISTANT, "hello back"
        )

        assert (first.position, second.position) == (0, 1)

    def test_token_count_from_tokenizer(self, message_repo, sample_conversation):
        message = message_repo.append_message(
            sample_conversation.id, "user", "three word message"
        )

        assert message.token_count == 3

    def test_explicit_position(self, message_repo, sample_conversation):
        message_repo.append_message(sample_conversation.id, "user", "a")
        message_repo.append_message(sample_conversation.id, "assistant", "b")

        branch_reply = message_repo.append_message(
            sample_conversation.id, "assistant", "c", position=1
        )

        assert branch_reply.position == 1

    def test_negative_position_rejected(self, message_repo, sample_conversation):
        with pytest.raises(ValueError):
            message_repo.append_message(sample_conversation.id, "user", "a", position=-1)

    def test_unknown_role_rejected(self, message_repo, sample_conversation):
        with pytest.raises(ValueError):
            message_repo.append_message(sample_conversation.id, "system", "a")

    def test_timestamp_and_generation_time(self, message_repo, sample_conversation, at):
        message = message_repo.append_message(
            sample_conversation.id,
            "assistant",
            "done",
            timestamp=at(5),
            generation_ms=840,
        )

        assert message.created_at == at(5)
        assert message.generation_ms == 840

    def test_offset_timestamp_stored_as_same_instant(
        self, db_session, message_repo, version_repo, sample_conversation
    ):
        message = message_repo.append_message(
            sample_conversation.id,
            "user",
            "hi",
            timestamp=datetime(2025, 1, 1, 12, 0, tzinfo=PLUS_TWO),
        )
        group = version_repo.create_version_group(sample_conversation.id, [message.id])
        db_session.flush()
        db_session.expire_all()

        [stored] = version_repo.get_messages_in_version(group.id)
        snapshot = MessageSnapshot.from_row(stored)

        assert snapshot.created_at == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)
        assert snapshot.created_at.utcoffset() == timedelta(0)

    def test_naive_timestamp_taken_as_utc(self, message_repo, sample_conversation):
        message = message_repo.append_message(
            sample_conversation.id, "user", "hi", timestamp=datetime(2025, 1, 1, 12, 0)
        )

        assert message.created_at == datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def test_missing_conversation(self, message_repo):
        with pytest.raises(NotFoundError):
            message_repo.append_message(uuid.uuid4(), "user", "hi")

    def test_tokenizer_failure_propagates(self, db_session, sample_conversation):
        class BrokenTokenizer:
            def count(self, text):
                raise CollaboratorFailure("tokenizer", "offline")

        repo = MessageRepository(db_session, BrokenTokenizer())

        with pytest.raises(CollaboratorFailure):
            repo.append_message(sample_conversation.id, "user", "hi")


class TestEditMessage:
    """Tests for edit_message."""

    def test_creates_new_row_at_same_position(self, message_repo, sample_conversation):
        message_repo.append_message(sample_conversation.id, "user", "hi")
        original = message_repo.append_message(
            sample_conversation.id, "assistant", "hello back"
        )

        edited = message_repo.edit_message(original.id, "hello again friend")

        assert edited.id != original.id
        assert edited.position == original.position
        assert edited.role == original.role
        assert edited.conversation_id == original.conversation_id
        assert edited.token_count == 3

    def test_original_untouched(self, message_repo, sample_conversation):
        original = message_repo.append_message(sample_conversation.id, "user", "hi")

        message_repo.edit_message(original.id, "hey")

        reloaded = message_repo.get(original.id)
        assert reloaded.content == "hi"

    def test_offset_timestamp_stored_as_same_instant(
        self, db_session, message_repo, sample_conversation
    ):
        original = message_repo.append_message(sample_conversation.id, "user", "hi")

        edited = message_repo.edit_message(
            original.id, "hey", timestamp=datetime(2025, 1, 1, 12, 0, tzinfo=PLUS_TWO)
        )
        db_session.flush()
        db_session.expire_all()

        stored = message_repo.get(edited.id)
        assert MessageSnapshot.from_row(stored).created_at == datetime(
            2025, 1, 1, 10, 0, tzinfo=UTC
        )

    def test_missing_original(self, message_repo):
        with pytest.raises(NotFoundError):
            message_repo.edit_message(uuid.uuid4(), "text")


class TestQueries:
    """Tests for message lookups."""

    def test_get_at_position_lists_variants(self, message_repo, sample_conversation, at):
        original = message_repo.append_message(
            sample_conversation.id, "user", "hi", timestamp=at(0)
        )
        edited = message_repo.edit_message(original.id, "hey", timestamp=at(10))

        variants = message_repo.get_at_position(sample_conversation.id, 0)

        assert [m.id for m in variants] == [original.id, edited.id]

    def test_get_by_conversation(self, message_repo, sample_conversation):
        message_repo.append_message(sample_conversation.id, "user", "a")
        message_repo.append_message(sample_conversation.id, "assistant", "b")

        contents = [m.content for m in message_repo.get_by_conversation(sample_conversation.id)]

        assert contents == ["a", "b"]

    def test_max_position_empty(self, message_repo, sample_conversation):
        assert message_repo.max_position(sample_conversation.id) is None
