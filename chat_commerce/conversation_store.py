"""
Conversation Store.

Append-only, per-sender transcripts persisted next to the catalog. A
conversation is created on a sender's first message, seeded with the
assistant persona, and only ever grows afterwards.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from chat_commerce.database import DatabaseManager
from chat_commerce.exceptions import NotFoundError, ValidationError
from chat_commerce.models import Conversation, Message, Role

logger = logging.getLogger(__name__)


class ConversationStore:
    """
    Reads and appends transcripts.

    Writes run inside DatabaseManager.transaction(), so each append is all or
    nothing. Appends for one sender are expected to be serialized by the
    caller; the (conversation_id, seq) key rejects a second writer that raced
    for the same position instead of interleaving.
    """

    def __init__(self, database: DatabaseManager, system_prompt: str):
        self.database = database
        self.system_prompt = system_prompt

    def get_or_create(self, sender_id: str, first_user_text: str) -> Tuple[Conversation, bool]:
        """
        Return the sender's conversation, creating it if needed.

        A new conversation holds exactly the system persona followed by
        first_user_text. An existing one is returned unchanged.

        Returns:
            (conversation, created)
        """
        with self.database.transaction() as conn:
            existing = self._load_by_sender(conn, sender_id)
            if existing is not None:
                return existing, False

            now = datetime.now(timezone.utc)
            conversation = Conversation(
                id=str(uuid.uuid4()),
                sender_id=sender_id,
                messages=[
                    Message(role=Role.SYSTEM, content=self.system_prompt, created_at=now),
                    Message(role=Role.USER, content=first_user_text, created_at=now),
                ],
                created_at=now,
                updated_at=now,
            )
            conn.execute(
                "INSERT INTO conversations (id, sender_id, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (conversation.id, sender_id, now.isoformat(), now.isoformat()),
            )
            for seq, message in enumerate(conversation.messages):
                self._insert_message(conn, conversation.id, seq, message)

        logger.info("Created conversation %s for sender %s", conversation.id, sender_id)
        return conversation, True

    def append(self, conversation_id: str, message: Message) -> Conversation:
        """
        Add one message to the end of a conversation.

        Raises:
            ValidationError: For system-role messages
            NotFoundError: If the conversation does not exist
        """
        if message.role == Role.SYSTEM:
            raise ValidationError(
                code="INVALID_MESSAGE",
                message="System messages can only open a conversation",
            )

        with self.database.transaction() as conn:
            if not self._exists(conn, conversation_id):
                raise NotFoundError(
                    code="CONVERSATION_NOT_FOUND",
                    message=f"Conversation {conversation_id} not found",
                )
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), -1) + 1 FROM conversation_messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            self._insert_message(conn, conversation_id, row[0], message)
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (datetime.now(timezone.utc).isoformat(), conversation_id),
            )
            return self._load(conn, conversation_id)

    def record_user_message(self, sender_id: str, text: str) -> Conversation:
        """Get-or-create the sender's conversation and append their message."""
        conversation, created = self.get_or_create(sender_id, text)
        if created:
            return conversation
        return self.append(conversation.id, Message(role=Role.USER, content=text))

    def get(self, conversation_id: str) -> Conversation:
        """
        Raises:
            NotFoundError: If the conversation does not exist
        """
        with self.database.connection() as conn:
            if not self._exists(conn, conversation_id):
                raise NotFoundError(
                    code="CONVERSATION_NOT_FOUND",
                    message=f"Conversation {conversation_id} not found",
                )
            return self._load(conn, conversation_id)

    def get_by_sender(self, sender_id: str) -> Optional[Conversation]:
        with self.database.connection() as conn:
            return self._load_by_sender(conn, sender_id)

    @staticmethod
    def _exists(conn: sqlite3.Connection, conversation_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return row is not None

    @staticmethod
    def _insert_message(conn: sqlite3.Connection, conversation_id: str, seq: int, message: Message) -> None:
        conn.execute(
            "INSERT INTO conversation_messages (conversation_id, seq, role, content, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (conversation_id, seq, message.role.value, message.content, message.created_at.isoformat()),
        )

    def _load_by_sender(self, conn: sqlite3.Connection, sender_id: str) -> Optional[Conversation]:
        row = conn.execute("SELECT id FROM conversations WHERE sender_id = ?", (sender_id,)).fetchone()
        if row is None:
            return None
        return self._load(conn, row["id"])

    @staticmethod
    def _load(conn: sqlite3.Connection, conversation_id: str) -> Conversation:
        row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        message_rows = conn.execute(
            "SELECT role, content, created_at FROM conversation_messages "
            "WHERE conversation_id = ? ORDER BY seq",
            (conversation_id,),
        ).fetchall()
        messages: List[Message] = [
            Message(
                role=Role(message_row["role"]),
                content=message_row["content"],
                created_at=datetime.fromisoformat(message_row["created_at"]),
            )
            for message_row in message_rows
        ]
        return Conversation(
            id=row["id"],
            sender_id=row["sender_id"],
            messages=messages,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
