import sqlite3
from datetime import timedelta

import pytest

from orchestrator.models import ConversationMessage
from orchestrator.storage.conversation_store import ConversationStore, normalize_identifier


def test_normalize_identifier_strips_whatsapp_prefix():
    assert normalize_identifier("whatsapp:+447700900123") == "+447700900123"
    assert normalize_identifier(" +447700900123 ") == "+447700900123"
    assert normalize_identifier("") == ""


def test_get_or_create_reuses_latest_active_conversation():
    store = ConversationStore()

    first = store.get_or_create_conversation(user_id="u1", channel_id="ch1", tenant_id="t1")
    again = store.get_or_create_conversation(user_id="u1", channel_id="ch1", tenant_id="t1")
    other_channel = store.get_or_create_conversation(user_id="u1", channel_id="ch2", tenant_id="t1")

    assert again.id == first.id
    assert other_channel.id != first.id


def test_closed_conversation_is_not_reused():
    store = ConversationStore()
    first = store.get_or_create_conversation(user_id="u1", channel_id="ch1", tenant_id="t1")

    assert store.close_conversation(first.id) is True
    fresh = store.get_or_create_conversation(user_id="u1", channel_id="ch1", tenant_id="t1")

    assert fresh.id != first.id
    assert store.get_conversation(first.id).status == "closed"


def test_get_conversation_checks_owner():
    store = ConversationStore()
    conversation = store.create_conversation(user_id="u1", channel_id="ch1", tenant_id="t1")

    assert store.get_conversation(conversation.id, "u1").id == conversation.id
    assert store.get_conversation(conversation.id, "someone-else") is None
    assert store.get_conversation("missing") is None


def test_messages_are_listed_oldest_first_and_touch_conversation():
    store = ConversationStore()
    conversation = store.create_conversation(user_id="u1", channel_id="ch1", tenant_id="t1")

    store.create_message(
        conversation_id=conversation.id,
        direction="inbound",
        content="Where is my refund?",
        tenant_id="t1",
        external_message_id="SM123",
        metadata={"source": "whatsapp"},
    )
    store.create_message(conversation_id=conversation.id, direction="outbound", content="Checking now.", tenant_id="t1")

    messages = store.list_messages(conversation.id)
    assert [m.content for m in messages] == ["Where is my refund?", "Checking now."]
    assert messages[0].external_message_id == "SM123"
    assert messages[0].metadata == {"source": "whatsapp"}
    assert messages[1].metadata == {}
    assert store.get_conversation(conversation.id).last_message_at is not None


def test_create_messages_writes_a_pair_in_one_go():
    store = ConversationStore()
    conversation = store.create_conversation(user_id="u1", channel_id="ch1", tenant_id="t1")
    question = ConversationMessage(conversation_id=conversation.id, tenant_id="t1", direction="inbound", content="Q")
    answer = ConversationMessage(
        conversation_id=conversation.id,
        tenant_id="t1",
        direction="outbound",
        content="A",
        created_at=question.created_at + timedelta(seconds=1),
    )

    store.create_messages([question, answer])

    assert [m.id for m in store.list_messages(conversation.id)] == [question.id, answer.id]
    assert store.get_conversation(conversation.id).last_message_at == answer.created_at


def test_create_messages_is_all_or_nothing():
    store = ConversationStore()
    conversation = store.create_conversation(user_id="u1", channel_id="ch1", tenant_id="t1")
    first = ConversationMessage(conversation_id=conversation.id, tenant_id="t1", direction="inbound", content="Q")
    clash = ConversationMessage(id=first.id, conversation_id=conversation.id, tenant_id="t1", direction="outbound")

    with pytest.raises(sqlite3.IntegrityError):
        store.create_messages([first, clash])

    assert store.list_messages(conversation.id) == []
    assert store.get_conversation(conversation.id).last_message_at is None

def test_channel_lookup_accepts_prefixed_and_bare_numbers():
    store = ConversationStore()
    channel = store.register_channel(user_id="u1", tenant_id="t1", channel_identifier="whatsapp:+447700900123")

    assert channel.channel_identifier == "+447700900123"
    assert store.find_channel_by_identifier("+447700900123").id == channel.id
    assert store.find_channel_by_identifier("whatsapp:+447700900123").id == channel.id
    assert store.find_channel_by_identifier("+447700900999") is None
    assert store.find_channel_by_identifier("+447700900123", channel_type="sms") is None


def test_verify_channel():
    store = ConversationStore()
    channel = store.register_channel(user_id="u1", tenant_id="t1", channel_identifier="+447700900123")
    assert store.find_channel_by_identifier("+447700900123").is_verified is False

    assert store.verify_channel(channel.id) is True

    assert store.find_channel_by_identifier("+447700900123").is_verified is True
    assert store.verify_channel("missing") is False
