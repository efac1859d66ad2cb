"""
Tests for CLI commands.
"""

import uuid
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from minichat.cli import app

# Disable Rich formatting in tests using NO_COLOR environment variable
runner = CliRunner(env={"NO_COLOR": "1", "TERM": "dumb", "COLUMNS": "200"})


@pytest.fixture(autouse=True)
def cli_service(service):
    """Route every command to the in-memory service, without file logging."""
    with patch("minichat.cli.get_service", return_value=service), patch(
        "minichat.cli.setup_logging"
    ):
        yield service


class TestChatCommand:
    """Tests for chat command."""

    def test_requires_message(self):
        result = runner.invoke(app, ["chat"])

        assert result.exit_code != 0

    def test_new_conversation(self, cli_service):
        result = runner.invoke(app, ["chat", "hello there"])

        assert result.exit_code == 0
        assert "reply 1" in result.stdout
        assert "conversation=" in result.stdout
        assert len(cli_service.list_conversations()) == 1

    def test_continue_conversation(self, cli_service):
        first = cli_service.send_message("hi")

        result = runner.invoke(
            app, ["chat", "again", "--conversation", str(first.conversation_id)]
        )

        assert result.exit_code == 0
        assert len(cli_service.get_messages_in_version(first.version_id)) == 4

    def test_unknown_conversation(self):
        result = runner.invoke(app, ["chat", "hi", "-c", str(uuid.uuid4())])

        assert result.exit_code == 1
        assert "not found" in result.stdout.lower()

    def test_inference_failure(self, inference):
        inference.fail = True

        result = runner.invoke(app, ["chat", "hi"])

        assert result.exit_code == 1
        assert "inference server unavailable" in result.stdout

    def test_closes_service(self, cli_service):
        with patch.object(cli_service, "close", wraps=cli_service.close) as close:
            result = runner.invoke(app, ["chat", "hi"])

        assert result.exit_code == 0
        close.assert_called_once()


class TestEditCommand:
    """Tests for edit command."""

    def test_edit_forks_version(self, cli_service):
        first = cli_service.send_message("hi")

        result = runner.invoke(app, ["edit", str(first.user_message_id), "hey"])

        assert result.exit_code == 0
        assert "Forked version" in result.stdout
        assert len(cli_service.divergence_variants(first.conversation_id, 0)) == 2

    def test_edit_unknown_message(self):
        result = runner.invoke(app, ["edit", str(uuid.uuid4()), "hey"])

        assert result.exit_code == 1


class TestViewCommands:
    """Tests for show, variants and context commands."""

    def test_show_latest_version(self, cli_service):
        first = cli_service.send_message("hi")
        cli_service.edit_and_continue(first.user_message_id, "hey")

        result = runner.invoke(app, ["show", str(first.conversation_id)])

        assert result.exit_code == 0
        assert "hey" in result.stdout

    def test_show_empty_conversation(self, cli_service):
        conversation = cli_service.create_conversation()

        result = runner.invoke(app, ["show", str(conversation.id)])

        assert result.exit_code == 0
        assert "No messages yet" in result.stdout

    def test_variants(self, cli_service):
        first = cli_service.send_message("hi")
        cli_service.edit_and_continue(first.user_message_id, "hey")

        result = runner.invoke(app, ["variants", str(first.conversation_id), "0"])

        assert result.exit_code == 0
        assert "Variant 1" in result.stdout
        assert "Variant 2" in result.stdout

    def test_variants_beyond_history(self, cli_service):
        first = cli_service.send_message("hi")

        result = runner.invoke(app, ["variants", str(first.conversation_id), "9"])

        assert result.exit_code == 1

    def test_context_budget(self, cli_service):
        first = cli_service.send_message("hi")

        result = runner.invoke(app, ["context", str(first.version_id), "--budget", "0"])

        assert result.exit_code == 0
        assert "1 messages" in result.stdout


class TestConversationCommands:
    """Tests for list, rename and delete commands."""

    def test_list_empty(self):
        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "No conversations" in result.stdout

    def test_list(self, cli_service):
        cli_service.send_message("Plan a trip")

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "Plan a trip" in result.stdout

    def test_rename(self, cli_service):
        turn = cli_service.send_message("hi")

        result = runner.invoke(app, ["rename", str(turn.conversation_id), "Greetings"])

        assert result.exit_code == 0
        assert cli_service.get_conversation(turn.conversation_id).title == "Greetings"

    def test_rename_empty(self, cli_service):
        turn = cli_service.send_message("hi")

        result = runner.invoke(app, ["rename", str(turn.conversation_id), "  "])

        assert result.exit_code == 1

    def test_delete_with_confirmation_flag(self, cli_service):
        turn = cli_service.send_message("hi")

        result = runner.invoke(app, ["delete", str(turn.conversation_id), "--yes"])

        assert result.exit_code == 0
        assert cli_service.list_conversations() == []

    def test_delete_aborted(self, cli_service):
        turn = cli_service.send_message("hi")

        result = runner.invoke(app, ["delete", str(turn.conversation_id)], input="n\n")

        assert result.exit_code != 0
        assert len(cli_service.list_conversations()) == 1
