"""
Persistence Recorder: writes the user/assistant turn pair after a successful exchange.

Best effort: a failed write never takes back a reply the user already has.
It is logged and returned as a warning. Turn ids are derived from the
exchange id, so writing the same exchange twice leaves one copy.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from chatapp.chat.exceptions import ConversationNotFound, PersistenceError, StoreUnavailableError
from chatapp.chat.schemas import ChatTurn

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50
PERSISTENCE_WARNING = "Your chat continues, but this exchange may be missing from your history."


def conversation_title(prompt: str) -> str:
    return prompt.strip()[:TITLE_LENGTH].strip() or "New Chat"


def turn_id(exchange_id: str, role: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"chat-exchange:{exchange_id}:{role}"))


@dataclass
class RecordResult:
    conversation_id: Optional[str]
    warning: Optional[str] = None


class PersistenceRecorder:
    def __init__(self, store):
        self.store = store

    def verify_conversation(self, user_id: str, conversation_id: str):
        """Raise unless `conversation_id` belongs to `user_id`. Runs before any model call."""
        if self.store is None:
            return
        try:
            row = self.store.get_conversation(conversation_id, user_id)
        except Exception as e:
            logger.warning(f"Could not look up conversation {conversation_id}: {e}")
            raise StoreUnavailableError() from e
        if not row:
            logger.warning(f"User {user_id} selected conversation {conversation_id} they do not own")
            raise ConversationNotFound()

    def ensure_conversation(
        self,
        user_id: str,
        conversation_id: Optional[str],
        first_prompt: str,
        new_id: Optional[str] = None,
    ) -> str:
        """Return `conversation_id`, creating one (with `new_id` when given) when none is selected."""
        if conversation_id:
            return conversation_id
        if self.store is None:
            raise PersistenceError("Database not configured")
        try:
            row = self.store.insert_conversation(user_id, conversation_title(first_prompt), new_id)
        except Exception as e:
            raise PersistenceError(f"could not create conversation: {e}") from e
        logger.info(f"Created conversation {row['id']} for {user_id}")
        return row["id"]

    def record_exchange(
        self,
        user_id: str,
        conversation_id: Optional[str],
        user_turn: ChatTurn,
        assistant_turn: ChatTurn,
        exchange_id: str,
        new_conversation_id: Optional[str] = None,
    ) -> RecordResult:
        if self.store is None:
            return RecordResult(conversation_id=conversation_id)

        try:
            conversation_id = self.ensure_conversation(
                user_id, conversation_id, user_turn.content, new_id=new_conversation_id
            )
        except PersistenceError as e:
            logger.warning(f"Could not save chat messages: {e}")
            return RecordResult(conversation_id=conversation_id, warning=PERSISTENCE_WARNING)

        rows = [
            _row(conversation_id, user_id, user_turn, exchange_id),
            _row(conversation_id, user_id, assistant_turn, exchange_id),
        ]
        try:
            self.store.insert_messages(rows)
        except Exception as e:
            logger.warning(f"Could not save chat messages for {conversation_id}: {e}")
            return RecordResult(conversation_id=conversation_id, warning=PERSISTENCE_WARNING)
        return RecordResult(conversation_id=conversation_id)


def _row(conversation_id: str, user_id: str, turn: ChatTurn, exchange_id: str) -> dict:
    return {
        "id": turn_id(exchange_id, turn.role),
        "conversation_id": conversation_id,
        "user_id": user_id,
        "role": turn.role,
        "content": turn.content,
        "created_at": turn.timestamp.isoformat(),
    }
