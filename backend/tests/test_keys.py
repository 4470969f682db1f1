import pytest

from securemsg.conversations import create_conversation, get_conversation_participants
from securemsg.errors import NotAParticipant, NotAuthenticated, ValidationFailed
from securemsg.keys import (
    get_conversation_participants_with_keys,
    get_session_info,
    rekey_conversation,
    store_user_public_key,
)
from securemsg.models import Conversation, User


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
    return create_conversation(session, alice.id, [bob.id], {}, keys)


def test_session_info_for_a_member(session, bob, conversation):
    info = get_session_info(session, bob.id, conversation.id)
    assert info.key_version == 1
    assert len(bob.crypto.unwrap_key(info.encapsulated_key)) == 32


def test_session_info_for_an_outsider(session, carol, conversation):
    with pytest.raises(NotAParticipant):
        get_session_info(session, carol.id, conversation.id)


def test_conversation_without_keys_starts_at_version_zero(session, alice, bob):
    conv = create_conversation(session, alice.id, [bob.id])
    info = get_session_info(session, alice.id, conv.id)
    assert info.key_version == 0
    assert info.encapsulated_key is None


def test_participants_with_keys(session, alice, bob, conversation):
    members = get_conversation_participants_with_keys(session, bob.id, conversation.id)

    # join order: invited members first, then the creator
    assert [m.id for m in members] == [bob.id, alice.id]
    by_id = {m.id: m for m in members}
    assert by_id[alice.id].email == "alice@example.com"
    assert by_id[alice.id].public_key == alice.public_key
    assert by_id[alice.id].publicKeyAlgorithm == "RSA-OAEP-SHA256"


def test_rekey_replaces_every_key(session, alice, bob, conversation):
    before = session.get(Conversation, conversation.id).updated_at
    new_key, keys = bob.crypto.establish_conversation_key({alice.id: alice.public_key})

    assert rekey_conversation(session, bob.id, conversation.id, keys) == 2

    for member in (alice, bob):
        info = get_session_info(session, member.id, conversation.id)
        assert info.key_version == 2
        assert member.crypto.unwrap_key(info.encapsulated_key) == new_key
    assert session.get(Conversation, conversation.id).updated_at > before


def test_rekey_must_cover_every_member(session, alice, bob, conversation):
    _, keys = alice.crypto.establish_conversation_key({})
    with pytest.raises(ValidationFailed):
        rekey_conversation(session, alice.id, conversation.id, keys)
    assert get_session_info(session, alice.id, conversation.id).key_version == 1


def test_rekey_rejects_keys_for_outsiders(session, alice, bob, carol, conversation):
    _, keys = alice.crypto.establish_conversation_key({bob.id: bob.public_key, carol.id: carol.public_key})
    with pytest.raises(ValidationFailed):
        rekey_conversation(session, alice.id, conversation.id, keys)


def test_outsider_cannot_rekey(session, carol, bob, conversation):
    _, keys = carol.crypto.establish_conversation_key({bob.id: bob.public_key})
    with pytest.raises(NotAParticipant):
        rekey_conversation(session, carol.id, conversation.id, keys)


def test_store_public_key_updates_participations(session, bob, conversation, keypairs):
    new_public = keypairs[3][1]
    assert store_user_public_key(session, bob.id, new_public) is True

    assert session.get(User, bob.id).public_key == new_public
    parts = {p.user_id: p for p in get_conversation_participants(session, bob.id, conversation.id)}
    assert parts[bob.id].public_key == new_public


@pytest.mark.parametrize("public_key", ["", "not a pem", "-----BEGIN PUBLIC KEY-----\nAAAA\n-----END PUBLIC KEY-----\n"])
def test_store_public_key_rejects_garbage(session, bob, public_key):
    with pytest.raises(ValidationFailed):
        store_user_public_key(session, bob.id, public_key)


def test_store_public_key_for_unknown_user(session, keypairs):
    with pytest.raises(NotAuthenticated):
        store_user_public_key(session, 999, keypairs[0][1])
