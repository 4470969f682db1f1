import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from securemsg import messages
from securemsg.conversations import add_participant, create_conversation
from securemsg.errors import DecryptionFailed, MessageNotFound, NotAParticipant, ValidationFailed
from securemsg.keys import get_session_info, get_conversation_participants_with_keys, rekey_conversation
from securemsg.messages import (
    list_messages,
    mark_messages_read,
    send_message,
    update_message_metadata,
)
from securemsg.models import Conversation, Message


@pytest.fixture
def alice(make_user):
    return make_user("alice@example.com")


@pytest.fixture
def bob(make_user):
    return make_user("bob@example.com")


@pytest.fixture
def carol(make_user):
    return make_user("carol@example.com")


@pytest.fixture
def conversation(session, alice, bob):
    _, keys = alice.crypto.establish_conversation_key({bob.id: bob.public_key})
    return create_conversation(session, alice.id, [bob.id], {"name": "Alice & Bob"}, keys)


def send_text(session, member, conversation_id, text):
    info = get_session_info(session, member.id, conversation_id)
    content_key = member.crypto.unwrap_key(info.encapsulated_key)
    payload = member.crypto.encrypt_message(text, conversation_id, content_key, info.key_version)
    return send_message(
        session,
        member.id,
        conversation_id,
        payload.message.encrypted_content,
        payload.message.iv,
        payload.encryption_metadata,
    )


def test_both_sides_read_the_message(session, alice, bob, conversation):
    send_text(session, alice, conversation.id, "hi")

    page = list_messages(session, bob.id, conversation.id)
    assert len(page) == 1
    assert page[0].sender_id == alice.id
    assert bob.crypto.decrypt_message(page[0]) == "hi"
    assert alice.crypto.decrypt_message(page[0]) == "hi"

    conv = session.get(Conversation, conversation.id)
    assert conv.meta["lastMessage"] == "alice@example.com: New message"
    assert conv.meta["messageCount"] == 1
    assert conv.meta["lastMessageTime"]


def test_keys_are_filled_in_from_participants(session, alice, bob, conversation):
    message = send_text(session, alice, conversation.id, "hi")
    assert set(message.encapsulated_keys) == {str(alice.id), str(bob.id)}
    assert message.encryption_metadata["keyVersion"] == 1


def test_stored_content_is_not_plaintext(session, alice, conversation):
    message = send_text(session, alice, conversation.id, "a secret plan")
    assert "a secret plan" not in message.encrypted_content


def test_outsider_cannot_send(session, alice, carol, conversation):
    with pytest.raises(NotAParticipant):
        send_message(session, carol.id, conversation.id, "Y2lwaGVy", "bm9uY2U=")
    assert session.exec(select(Message)).all() == []


def test_outsider_cannot_list(session, carol, conversation):
    with pytest.raises(NotAParticipant):
        list_messages(session, carol.id, conversation.id)


def test_empty_ciphertext_is_rejected(session, alice, conversation):
    with pytest.raises(ValidationFailed):
        send_message(session, alice.id, conversation.id, "", "bm9uY2U=")


def test_pages_are_newest_first(session, alice, bob, conversation):
    sent = [send_text(session, alice, conversation.id, f"message {i}").id for i in range(5)]

    first = list_messages(session, bob.id, conversation.id, limit=2)
    second = list_messages(session, bob.id, conversation.id, limit=2, offset=2)
    rest = list_messages(session, bob.id, conversation.id, limit=2, offset=4)

    assert [m.id for m in first] == [sent[4], sent[3]]
    assert [m.id for m in second] == [sent[2], sent[1]]
    assert [m.id for m in rest] == [sent[0]]
    assert bob.crypto.decrypt_message(rest[0]) == "message 0"


@pytest.mark.parametrize("limit, offset", [(0, 0), (201, 0), (10, -1)])
def test_page_bounds(session, bob, conversation, limit, offset):
    with pytest.raises(ValidationFailed):
        list_messages(session, bob.id, conversation.id, limit=limit, offset=offset)


def test_message_count_tracks_sends(session, alice, bob, conversation):
    send_text(session, alice, conversation.id, "one")
    send_text(session, bob, conversation.id, "two")

    conv = session.get(Conversation, conversation.id)
    assert conv.meta["messageCount"] == 2
    assert conv.meta["lastMessage"] == "bob@example.com: New message"


def test_preview_failure_does_not_fail_the_send(session, alice, bob, conversation, monkeypatch):
    def broken(conv):
        raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

    monkeypatch.setattr(messages, "touch", broken)
    message = send_text(session, alice, conversation.id, "still delivered")

    assert message.id is not None
    page = list_messages(session, bob.id, conversation.id)
    assert bob.crypto.decrypt_message(page[0]) == "still delivered"
    assert session.get(Conversation, conversation.id).meta["messageCount"] == 0


def test_late_joiner_needs_a_rekey(session, alice, bob, carol, conversation):
    old = send_text(session, alice, conversation.id, "before carol")
    add_participant(session, alice.id, conversation.id, carol.email)

    with pytest.raises(DecryptionFailed):
        carol.crypto.decrypt_message(old)

    members = get_conversation_participants_with_keys(session, alice.id, conversation.id)
    _, keys = alice.crypto.establish_conversation_key({m.id: m.public_key for m in members})
    assert rekey_conversation(session, alice.id, conversation.id, keys) == 2

    new = send_text(session, bob, conversation.id, "welcome carol")
    assert new.encryption_metadata["keyVersion"] == 2
    assert carol.crypto.decrypt_message(new) == "welcome carol"
    assert alice.crypto.decrypt_message(old) == "before carol"


def test_metadata_patch_is_merged(session, alice, bob, conversation):
    message = send_text(session, alice, conversation.id, "hi")
    update_message_metadata(session, bob.id, message.id, {"deliveredTo": [bob.id]})
    updated = update_message_metadata(session, alice.id, message.id, {"clientId": "tmp-1"})

    assert updated.meta == {"deliveredTo": [bob.id], "clientId": "tmp-1"}
    assert alice.crypto.decrypt_message(updated) == "hi"


def test_metadata_patch_access(session, alice, carol, conversation):
    message = send_text(session, alice, conversation.id, "hi")
    with pytest.raises(NotAParticipant):
        update_message_metadata(session, carol.id, message.id, {"readBy": [carol.id]})
    with pytest.raises(MessageNotFound):
        update_message_metadata(session, alice.id, 4242, {})


def test_read_receipts(session, alice, bob, conversation):
    send_text(session, alice, conversation.id, "one")
    send_text(session, alice, conversation.id, "two")
    own = send_text(session, bob, conversation.id, "three")

    changed = mark_messages_read(session, bob.id, conversation.id)
    assert len(changed) == 2
    assert all(m.meta["readBy"] == [bob.id] and m.meta["isRead"] for m in changed)
    assert "readBy" not in session.get(Message, own.id).meta

    assert mark_messages_read(session, bob.id, conversation.id) == []
