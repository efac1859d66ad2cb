"""
User facts repository.
"""

import uuid
from typing import Dict, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from minichat.db.repositories.base import BaseRepository
from minichat.models.db import UserFacts

# Extractor keys accepted for each stored field
FACT_ALIASES = {
    "name": "name",
    "nom": "name",
    "age": "age",
    "location": "location",
    "city": "location",
    "ville": "location",
    "email": "email",
}

FACT_LABELS = {
    "name": "Name",
    "age": "Age",
    "location": "Location",
    "email": "Email",
}


class UserFactsRepository(BaseRepository[UserFacts]):
    """Repository for UserFacts model."""

    def __init__(self, session: Session):
        super().__init__(UserFacts, session)

    def get_by_conversation(self, conversation_id: uuid.UUID) -> Optional[UserFacts]:
        """
        Get the facts recorded for a conversation.

        Args:
            conversation_id: Conversation UUID

        Returns:
            UserFacts instance or None
        """
        return self.session.execute(
            select(UserFacts).where(UserFacts.conversation_id == conversation_id)
        ).scalar_one_or_none()

    def upsert(
        self, conversation_id: uuid.UUID, facts: Mapping[str, str]
    ) -> Optional[UserFacts]:
        """
        Merge newly extracted facts into the stored ones.

        Unknown keys and empty values are ignored; a known value is only
        replaced by a new non-empty one.

        Args:
            conversation_id: Conversation UUID
            facts: Extractor output, e.g. {"name": "Ada", "city": "Lyon"}

        Returns:
            Updated UserFacts, or None when nothing usable was supplied
        """
        updates = normalize_facts(facts)
        if not updates:
            return self.get_by_conversation(conversation_id)

        record = self.get_by_conversation(conversation_id)
        if record is None:
            return self.create(conversation_id=conversation_id, **updates)

        for field_name, value in updates.items():
            setattr(record, field_name, value)
        self.session.flush()
        return record


def normalize_facts(facts: Mapping[str, str]) -> Dict[str, str]:
    """Map extractor keys to stored fields, dropping unknown keys and empty values."""
    return {
        FACT_ALIASES[key.lower()]: value.strip()
        for key, value in facts.items()
        if key.lower() in FACT_ALIASES and value and value.strip()
    }


def render_facts(facts: Union[UserFacts, Mapping[str, str], None]) -> str:
    """
    Render known facts as a context fragment for the prompt.

    Args:
        facts: Stored record or a field -> value mapping

    Returns:
        Fragment text, or an empty string when nothing is known
    """
    if facts is None:
        return ""
    known = facts.as_dict() if isinstance(facts, UserFacts) else normalize_facts(facts)
    if not known:
        return ""
    lines = [
        f"{label}: {known[key]}" for key, label in FACT_LABELS.items() if key in known
    ]
    return "Known information about the user:\n" + "\n".join(lines) + "\n"
