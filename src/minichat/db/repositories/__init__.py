"""
Repository layer for database operations.

Provides a clean API for the conversation, message and version models.
"""

from minichat.db.repositories.base import BaseRepository
from minichat.db.repositories.conversation import ConversationRepository
from minichat.db.repositories.message import MessageRepository
from minichat.db.repositories.user_facts import UserFactsRepository
from minichat.db.repositories.version_group import VersionGroupRepository

__all__ = [
    "BaseRepository",
    "ConversationRepository",
    "MessageRepository",
    "UserFactsRepository",
    "VersionGroupRepository",
]
