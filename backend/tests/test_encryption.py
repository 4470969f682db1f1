import pytest

from securemsg.crypto_utils import b64decode, b64encode
from securemsg.encryption import MessageEncryption
from securemsg.errors import DecryptionFailed


@pytest.fixture
def alice(keypairs):
    return MessageEncryption(1, keypairs[0][0])


@pytest.fixture
def bob(keypairs):
    return MessageEncryption(2, keypairs[1][0])


@pytest.fixture
def carol(keypairs):
    return MessageEncryption(3, keypairs[2][0])


def as_message(payload, conversation_id, keys, message_id=1):
    return {
        "id": message_id,
        "conversation_id": conversation_id,
        "encrypted_content": payload.message.encrypted_content,
        "iv": payload.message.iv,
        "encryption_metadata": payload.encryption_metadata,
        "encapsulated_keys": keys,
    }


def flip_byte(data_b64: str, index: int) -> str:
    raw = bytearray(b64decode(data_b64))
    raw[index] ^= 0x01
    return b64encode(bytes(raw))


def test_round_trip_for_every_participant(alice, bob):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    assert set(keys) == {"1", "2"}

    payload = alice.encrypt_message("hi", 7, content_key, key_version=1)
    message = as_message(payload, 7, keys)

    assert alice.decrypt_message(message) == "hi"
    assert bob.decrypt_message(message) == "hi"


def test_round_trip_unicode(alice, bob):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    text = "olá, 世界 🔐\nline two"
    payload = alice.encrypt_message(text, 3, content_key)
    assert bob.decrypt_message(as_message(payload, 3, keys)) == text


def test_metadata_describes_the_envelope(alice, bob):
    content_key, _ = alice.establish_conversation_key({2: bob.public_key})
    payload = alice.encrypt_message("hi", 1, content_key, key_version=4, client_id="tmp-1")

    assert payload.encryption_metadata == {
        "algorithm": "XChaCha20-Poly1305",
        "keyEncapsulation": "RSA-OAEP-SHA256",
        "keySize": 256,
        "keyVersion": 4,
    }
    assert payload.message.algorithm == "XChaCha20-Poly1305"
    assert payload.metadata == {"clientId": "tmp-1"}
    assert "useFixedKey" not in payload.encryption_metadata


def test_fresh_nonce_per_message(alice, bob):
    content_key, _ = alice.establish_conversation_key({2: bob.public_key})
    first = alice.encrypt_message("same text", 1, content_key)
    second = alice.encrypt_message("same text", 1, content_key)

    assert first.message.iv != second.message.iv
    assert first.message.encrypted_content != second.message.encrypted_content


@pytest.mark.parametrize("index", [0, 1, -1])
def test_tampered_ciphertext_is_rejected(alice, bob, index):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    payload = alice.encrypt_message("transfer 10 coins", 9, content_key)
    message = as_message(payload, 9, keys)
    message["encrypted_content"] = flip_byte(message["encrypted_content"], index)

    with pytest.raises(DecryptionFailed):
        bob.decrypt_message(message)


def test_tampered_nonce_is_rejected(alice, bob):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    message = as_message(alice.encrypt_message("hi", 9, content_key), 9, keys)
    message["iv"] = flip_byte(message["iv"], 0)

    with pytest.raises(DecryptionFailed):
        bob.decrypt_message(message)


def test_message_moved_to_another_conversation_is_rejected(alice, bob):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    message = as_message(alice.encrypt_message("hi", 1, content_key), 2, keys)

    with pytest.raises(DecryptionFailed):
        bob.decrypt_message(message)


def test_key_version_is_authenticated(alice, bob):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    message = as_message(alice.encrypt_message("hi", 1, content_key, key_version=1), 1, keys)
    message["encryption_metadata"] = {**message["encryption_metadata"], "keyVersion": 2}

    with pytest.raises(DecryptionFailed):
        bob.decrypt_message(message)


def test_outsider_cannot_decrypt(alice, bob, carol):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    message = as_message(alice.encrypt_message("hi", 1, content_key), 1, keys)

    with pytest.raises(DecryptionFailed, match="no content key"):
        carol.decrypt_message(message)


def test_key_encapsulated_for_someone_else_is_rejected(alice, bob, carol):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    message = as_message(alice.encrypt_message("hi", 1, content_key), 1, {"3": keys["2"]})

    with pytest.raises(DecryptionFailed):
        carol.decrypt_message(message)


def test_fixed_key_envelopes_are_not_opened(bob):
    legacy = {
        "id": 5,
        "conversation_id": 1,
        "encrypted_content": b64encode(b"aGVsbG8="),
        "iv": b64encode(b"\0" * 24),
        "encryption_metadata": {"algorithm": "XSalsa20-Poly1305", "useFixedKey": True},
        "encapsulated_keys": {},
    }
    with pytest.raises(DecryptionFailed):
        bob.decrypt_message(legacy)


def test_plain_base64_is_not_returned_as_plaintext(alice, bob):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    message = as_message(alice.encrypt_message("hi", 1, content_key), 1, keys)
    message["encrypted_content"] = b64encode(b"readable text")

    with pytest.raises(DecryptionFailed):
        bob.decrypt_message(message)


def test_malformed_base64_is_rejected(alice, bob):
    content_key, keys = alice.establish_conversation_key({2: bob.public_key})
    message = as_message(alice.encrypt_message("hi", 1, content_key), 1, keys)
    message["encrypted_content"] = "not base64 !!"

    with pytest.raises(DecryptionFailed):
        bob.decrypt_message(message)


def test_session_keypair_public_key_is_the_one_used():
    session_crypto = MessageEncryption("u-1")
    other = MessageEncryption("u-2")
    content_key, keys = other.establish_conversation_key({"u-1": session_crypto.public_key})

    assert session_crypto.unwrap_conversation_key(keys) == content_key


def test_recipient_without_public_key_is_refused(alice):
    with pytest.raises(ValueError):
        alice.establish_conversation_key({2: None})


def test_corrupted_encapsulated_key(alice, bob):
    _, keys = alice.establish_conversation_key({2: bob.public_key})
    with pytest.raises(DecryptionFailed):
        bob.unwrap_key(flip_byte(keys["2"], 5))
