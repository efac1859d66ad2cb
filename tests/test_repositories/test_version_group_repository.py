"""
Tests for VersionGroupRepository.
"""

import uuid

import pytest
from sqlalchemy import update

from minichat.exceptions import InvariantViolation, NotFoundError
from minichat.models.db import MessageVersion


@pytest.fixture
def turn(message_repo, sample_conversation, at):
    """A first user/assistant exchange at positions 0 and 1."""
    user = message_repo.append_message(
        sample_conversation.id, "user", "hi", timestamp=at(0)
    )
    assistant = message_repo.append_message(
        sample_conversation.id, "assistant", "hello back", timestamp=at(1)
    )
    return user, assistant


class TestCreateVersionGroup:
    """Tests for create_version_group."""

    def test_round_trip_preserves_order(self, version_repo, sample_conversation, turn):
        ids = [m.id for m in turn]

        group = version_repo.create_version_group(sample_conversation.id, ids)
        resolved = version_repo.get_messages_in_version(group.id)

        assert [m.id for m in resolved] == ids
        assert group.message_ids == ids
        assert group.length == 2

    def test_ordinals_increase(self, version_repo, sample_conversation, turn):
        first = version_repo.create_version_group(sample_conversation.id, [turn[0].id])
        second = version_repo.create_version_group(sample_conversation.id, [turn[0].id])

        assert (first.ordinal, second.ordinal) == (0, 1)

    def test_empty_group_allowed(self, version_repo, sample_conversation):
        group = version_repo.create_version_group(sample_conversation.id, [])

        assert group.length == 0
        assert version_repo.get_messages_in_version(group.id) == []

    def test_missing_conversation(self, version_repo):
        with pytest.raises(NotFoundError):
            version_repo.create_version_group(uuid.uuid4(), [])

    def test_unknown_message(self, version_repo, sample_conversation):
        with pytest.raises(NotFoundError):
            version_repo.create_version_group(sample_conversation.id, [uuid.uuid4()])

    def test_gap_rejected(self, version_repo, sample_conversation, turn):
        with pytest.raises(InvariantViolation):
            version_repo.create_version_group(sample_conversation.id, [turn[1].id])

    def test_out_of_order_rejected(self, version_repo, sample_conversation, turn):
        with pytest.raises(InvariantViolation):
            version_repo.create_version_group(
                sample_conversation.id, [turn[1].id, turn[0].id]
            )

    def test_duplicate_rejected(self, version_repo, sample_conversation, turn):
        with pytest.raises(InvariantViolation):
            version_repo.create_version_group(
                sample_conversation.id, [turn[0].id, turn[0].id]
            )

    def test_foreign_message_rejected(
        self, version_repo, conversation_repo, message_repo, sample_conversation
    ):
        other = conversation_repo.create(title="Other")
        foreign = message_repo.append_message(other.id, "user", "elsewhere")

        with pytest.raises(InvariantViolation):
            version_repo.create_version_group(sample_conversation.id, [foreign.id])


class TestExtendVersionGroup:
    """Tests for extend_version_group."""

    def test_extends_in_order(self, version_repo, message_repo, sample_conversation, turn):
        group = version_repo.create_version_group(sample_conversation.id, [turn[0].id])

        version_repo.extend_version_group(group.id, [turn[1].id])
        follow_up = message_repo.append_message(
            sample_conversation.id, "user", "more", position=2
        )
        version_repo.extend_version_group(group.id, [follow_up.id])

        assert [m.content for m in version_repo.get_messages_in_version(group.id)] == [
            "hi",
            "hello back",
            "more",
        ]

    def test_prior_members_kept(self, version_repo, sample_conversation, turn):
        group = version_repo.create_version_group(sample_conversation.id, [turn[0].id])

        extended = version_repo.extend_version_group(group.id, [turn[1].id])

        assert extended.message_ids[0] == turn[0].id

    def test_wrong_position_rejected(
        self, version_repo, message_repo, sample_conversation, turn
    ):
        group = version_repo.create_version_group(
            sample_conversation.id, [m.id for m in turn]
        )
        stray = message_repo.append_message(
            sample_conversation.id, "user", "stray", position=5
        )

        with pytest.raises(InvariantViolation):
            version_repo.extend_version_group(group.id, [stray.id])

    def test_missing_group(self, version_repo):
        with pytest.raises(NotFoundError):
            version_repo.extend_version_group(uuid.uuid4(), [])


class TestLookups:
    """Tests for latest-version and branch snapshot lookups."""

    def test_latest_is_most_recent(self, version_repo, sample_conversation, turn, at):
        version_repo.create_version_group(sample_conversation.id, [turn[0].id])
        newest = version_repo.create_version_group(
            sample_conversation.id, [m.id for m in turn]
        )

        latest = version_repo.get_latest_version_group(sample_conversation.id)

        assert latest.id == newest.id

    def test_latest_none_without_groups(self, version_repo, sample_conversation):
        assert version_repo.get_latest_version_group(sample_conversation.id) is None

    def test_branch_snapshots(self, version_repo, message_repo, sample_conversation, turn):
        v1 = version_repo.create_version_group(
            sample_conversation.id, [m.id for m in turn]
        )
        edited = message_repo.edit_message(turn[0].id, "hey")
        v2 = version_repo.create_version_group(sample_conversation.id, [edited.id])

        snapshots = version_repo.get_branch_snapshots(sample_conversation.id)

        assert [s.version_id for s in snapshots] == [v1.id, v2.id]
        assert [m.content for m in snapshots[0].messages] == ["hi", "hello back"]
        assert [m.content for m in snapshots[1].messages] == ["hey"]
        assert snapshots[0].created_at.tzinfo is not None

    def test_corrupt_membership_detected(
        self, db_session, version_repo, sample_conversation, turn
    ):
        group = version_repo.create_version_group(
            sample_conversation.id, [m.id for m in turn]
        )
        db_session.execute(
            update(MessageVersion)
            .where(
                MessageVersion.version_id == group.id,
                MessageVersion.position == 1,
            )
            .values(position=3)
            .execution_options(synchronize_session=False)
        )
        db_session.expire_all()

        with pytest.raises(InvariantViolation):
            version_repo.get_messages_in_version(group.id)
