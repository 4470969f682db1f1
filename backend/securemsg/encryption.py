"""
Message encryption.

Every conversation has a symmetric content key. The key is encapsulated
(RSA-OAEP) for each participant's long-term public key; those encapsulated
copies live on the participant rows and are persisted on every message
record so any participant can open any message of a key version they were
given. Message bodies are sealed with XChaCha20-Poly1305, binding the
conversation id and key version as associated data.

Any failure to open a message raises DecryptionFailed.
"""
import logging
from typing import Dict, Mapping, Optional, Tuple, Union

from .crypto_utils import (
    CONTENT_ALGORITHM,
    CONTENT_KEY_SIZE,
    KEY_ENCAPSULATION,
    NONCE_SIZE,
    b64decode,
    b64encode,
    generate_content_key,
    open_sealed,
    public_pem_from_private,
    rsa_decrypt,
    rsa_encrypt,
    rsa_generate_2048_pem_pair,
    seal,
)
from .errors import DecryptionFailed
from .schemas import EncryptedContent, EncryptedMessagePayload

logger = logging.getLogger(__name__)


def generate_keypair() -> Tuple[str, str]:
    """Returns (private_pem, public_pem) for a participant's long-term key."""
    return rsa_generate_2048_pem_pair()


def encapsulate_key(public_pem: str, content_key: bytes) -> str:
    return b64encode(rsa_encrypt(public_pem, content_key))


def associated_data(conversation_id: Union[int, str], key_version: int) -> bytes:
    return f"securemsg:{conversation_id}:{key_version}".encode()


def _field(message, name, default=None):
    if isinstance(message, Mapping):
        return message.get(name, default)
    return getattr(message, name, default)


class MessageEncryption:
    """Per-session encryption helper bound to one user's keypair."""

    def __init__(self, user_id: Union[int, str], private_key_pem: Optional[str] = None):
        self.user_id = str(user_id)
        if private_key_pem is None:
            private_key_pem, public_key_pem = generate_keypair()
            logger.info(f"[CRYPTO] Generated session keypair for user {self.user_id}")
        else:
            public_key_pem = public_pem_from_private(private_key_pem)
        self._private_key_pem = private_key_pem
        self._public_key_pem = public_key_pem

    @property
    def public_key(self) -> str:
        """The public half of the key used by unwrap_conversation_key."""
        return self._public_key_pem

    def establish_conversation_key(self, recipients: Mapping[Union[int, str], str]) -> Tuple[bytes, Dict[str, str]]:
        """
        Creates a fresh content key and encapsulates it for every recipient.

        :param recipients: participant id -> public key PEM. The caller is always included.
        :return: (content_key, participant id -> encapsulated key)
        """
        keys = {str(uid): pem for uid, pem in recipients.items()}
        keys[self.user_id] = self._public_key_pem
        missing = sorted(uid for uid, pem in keys.items() if not pem)
        if missing:
            raise ValueError(f"participants without a public key: {', '.join(missing)}")

        content_key = generate_content_key()
        encapsulated = {uid: encapsulate_key(pem, content_key) for uid, pem in keys.items()}
        logger.debug(f"[CRYPTO] Content key encapsulated for {len(encapsulated)} participants")
        return content_key, encapsulated

    def unwrap_key(self, encapsulated_key: str) -> bytes:
        try:
            content_key = rsa_decrypt(self._private_key_pem, b64decode(encapsulated_key))
        except (ValueError, TypeError) as exc:
            raise DecryptionFailed(f"could not decapsulate content key: {exc}") from exc
        if len(content_key) != CONTENT_KEY_SIZE:
            raise DecryptionFailed("decapsulated content key has the wrong size")
        return content_key

    def unwrap_conversation_key(self, encapsulated_keys: Mapping[Union[int, str], str]) -> bytes:
        keys = {str(uid): value for uid, value in (encapsulated_keys or {}).items()}
        if self.user_id not in keys:
            raise DecryptionFailed(f"no content key encapsulated for user {self.user_id}")
        return self.unwrap_key(keys[self.user_id])

    def encrypt_message(
        self,
        plaintext: str,
        conversation_id: Union[int, str],
        content_key: bytes,
        key_version: int = 1,
        encapsulated_keys: Optional[Mapping[Union[int, str], str]] = None,
        client_id: Optional[str] = None,
    ) -> EncryptedMessagePayload:
        if len(content_key) != CONTENT_KEY_SIZE:
            raise ValueError("content key must be 32 bytes")

        sealed, nonce = seal(content_key, plaintext.encode("utf-8"), associated_data(conversation_id, key_version))
        metadata = {"clientId": client_id} if client_id else {}
        return EncryptedMessagePayload(
            encapsulatedKeys={str(uid): value for uid, value in (encapsulated_keys or {}).items()},
            message=EncryptedContent(
                encrypted_content=b64encode(sealed),
                iv=b64encode(nonce),
                algorithm=CONTENT_ALGORITHM,
            ),
            encryption_metadata={
                "algorithm": CONTENT_ALGORITHM,
                "keyEncapsulation": KEY_ENCAPSULATION,
                "keySize": CONTENT_KEY_SIZE * 8,
                "keyVersion": key_version,
            },
            metadata=metadata,
        )

    def decrypt_message(self, message, content_key: Optional[bytes] = None) -> str:
        """
        Opens a stored message (a Message row, a MessageOut or its dict form).

        The content key is taken from the message's encapsulated keys unless
        one is passed in.
        """
        meta = _field(message, "encryption_metadata") or {}
        if meta.get("useFixedKey"):
            raise DecryptionFailed("fixed-key envelopes are not supported")
        algorithm = meta.get("algorithm")
        if algorithm != CONTENT_ALGORITHM:
            raise DecryptionFailed(f"unsupported algorithm: {algorithm!r}")

        encrypted_content = _field(message, "encrypted_content")
        iv = _field(message, "iv")
        if not encrypted_content or not iv:
            raise DecryptionFailed("missing ciphertext or iv")

        if content_key is None:
            content_key = self.unwrap_conversation_key(_field(message, "encapsulated_keys"))

        try:
            nonce = b64decode(iv)
            if len(nonce) != NONCE_SIZE:
                raise ValueError("nonce has the wrong size")
            aad = associated_data(_field(message, "conversation_id"), meta.get("keyVersion", 1))
            plaintext = open_sealed(content_key, b64decode(encrypted_content), nonce, aad)
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning(f"[CRYPTO] Decryption failed for message {_field(message, 'id')}: {exc}")
            raise DecryptionFailed(f"message could not be decrypted: {exc}") from exc
