"""
Tests for the append-only conversation store.
"""

import pytest

from chat_commerce.conversation_store import ConversationStore
from chat_commerce.exceptions import NotFoundError, ValidationError
from chat_commerce.models import Conversation, Message, Role

SYSTEM_PROMPT = "Você é um assistente de vendas."


@pytest.fixture
def store(test_database):
    return ConversationStore(test_database, SYSTEM_PROMPT)


class TestGetOrCreate:
    """Conversation creation and lookup."""

    def test_new_conversation_is_seeded(self, store):
        conversation, created = store.get_or_create("5511999990000", "oi")

        assert created
        assert conversation.sender_id == "5511999990000"
        assert [(m.role, m.content) for m in conversation.messages] == [
            (Role.SYSTEM, SYSTEM_PROMPT),
            (Role.USER, "oi"),
        ]

    def test_existing_conversation_is_unchanged(self, store):
        first, _ = store.get_or_create("5511999990000", "oi")

        second, created = store.get_or_create("5511999990000", "outra mensagem")

        assert not created
        assert second.id == first.id
        assert [m.content for m in second.messages] == [SYSTEM_PROMPT, "oi"]

    def test_one_conversation_per_sender(self, store):
        first, _ = store.get_or_create("sender-a", "oi")
        second, _ = store.get_or_create("sender-b", "olá")

        assert first.id != second.id
        assert store.get_by_sender("sender-a").id == first.id
        assert store.get_by_sender("sender-b").id == second.id

    def test_unknown_sender(self, store):
        assert store.get_by_sender("nobody") is None

    def test_get_unknown_conversation(self, store):
        with pytest.raises(NotFoundError):
            store.get("missing")


class TestAppend:
    """Transcripts only grow at the end."""

    def test_append_adds_to_end(self, store):
        conversation, _ = store.get_or_create("c1", "oi")

        updated = store.append(conversation.id, Message(role=Role.ASSISTANT, content="Olá! Como posso ajudar?"))

        assert [m.role for m in updated.messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
        assert updated.messages[-1].content == "Olá! Como posso ajudar?"
        assert updated.updated_at >= conversation.updated_at

    def test_earlier_messages_are_never_rewritten(self, store):
        conversation, _ = store.get_or_create("c1", "oi")
        before = store.append(conversation.id, Message(role=Role.ASSISTANT, content="Olá!"))

        after = store.append(before.id, Message(role=Role.USER, content="quero arroz"))
        after = store.append(after.id, Message(role=Role.ASSISTANT, content="Quantos?"))

        assert len(after.messages) == len(before.messages) + 2
        assert [m.model_dump() for m in after.messages[:len(before.messages)]] == [
            m.model_dump() for m in before.messages
        ]

    def test_system_message_rejected(self, store):
        conversation, _ = store.get_or_create("c1", "oi")

        with pytest.raises(ValidationError):
            store.append(conversation.id, Message(role=Role.SYSTEM, content="novo papel"))

        assert len(store.get(conversation.id).messages) == 2

    def test_unknown_conversation(self, store):
        with pytest.raises(NotFoundError):
            store.append("missing", Message(role=Role.USER, content="oi"))

    def test_persisted_across_store_instances(self, store, test_database):
        conversation, _ = store.get_or_create("c1", "oi")
        store.append(conversation.id, Message(role=Role.ASSISTANT, content="Olá!"))

        reopened = ConversationStore(test_database, "outro prompt")

        assert [m.content for m in reopened.get(conversation.id).messages] == [SYSTEM_PROMPT, "oi", "Olá!"]


class TestRecordUserMessage:
    """Recording inbound messages."""

    def test_first_message_creates_conversation(self, store):
        conversation = store.record_user_message("c1", "oi")

        assert [m.role for m in conversation.messages] == [Role.SYSTEM, Role.USER]

    def test_later_messages_are_appended(self, store):
        store.record_user_message("c1", "oi")

        conversation = store.record_user_message("c1", "quero arroz")

        assert [m.content for m in conversation.messages] == [SYSTEM_PROMPT, "oi", "quero arroz"]


class TestConversationModel:
    """Transcript invariants enforced by the model."""

    def test_system_only_first(self):
        with pytest.raises(ValueError):
            Conversation(
                sender_id="c1",
                messages=[
                    Message(role=Role.USER, content="oi"),
                    Message(role=Role.SYSTEM, content="papel"),
                ],
            )

    def test_system_first_is_valid(self):
        conversation = Conversation(
            sender_id="c1",
            messages=[
                Message(role=Role.SYSTEM, content="papel"),
                Message(role=Role.USER, content="oi"),
            ],
        )
        assert len(conversation.messages) == 2
