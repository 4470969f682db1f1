from typing import Tuple
import base64
import binascii
import logging

from cryptography.hazmat.primitives.asymmetric import rsa, padding as asym_padding
from cryptography.hazmat.primitives import serialization, hashes
from Crypto.Cipher import ChaCha20_Poly1305
from Crypto.Random import get_random_bytes

logger = logging.getLogger(__name__)

CONTENT_KEY_SIZE = 32
# 24-byte nonces select XChaCha20 in pycryptodome
NONCE_SIZE = 24
TAG_SIZE = 16

CONTENT_ALGORITHM = "XChaCha20-Poly1305"
KEY_ENCAPSULATION = "RSA-OAEP-SHA256"

_OAEP = asym_padding.OAEP(
    mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def rsa_generate_2048_pem_pair() -> Tuple[str, str]:
    logger.debug("[CRYPTO] Generating RSA-2048 keypair")
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    priv_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode()
    pub_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    return priv_pem, pub_pem


def public_pem_from_private(priv_pem: str) -> str:
    private_key = serialization.load_pem_private_key(priv_pem.encode(), password=None)
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()


def rsa_encrypt(pub_pem: str, data: bytes) -> bytes:
    public_key = serialization.load_pem_public_key(pub_pem.encode())
    return public_key.encrypt(data, _OAEP)


def rsa_decrypt(priv_pem: str, data: bytes) -> bytes:
    private_key = serialization.load_pem_private_key(priv_pem.encode(), password=None)
    return private_key.decrypt(data, _OAEP)


def generate_content_key() -> bytes:
    return get_random_bytes(CONTENT_KEY_SIZE)


def seal(key: bytes, plaintext: bytes, associated_data: bytes) -> Tuple[bytes, bytes]:
    """Returns (ciphertext || tag, nonce)."""
    nonce = get_random_bytes(NONCE_SIZE)
    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    cipher.update(associated_data)
    ct, tag = cipher.encrypt_and_digest(plaintext)
    return ct + tag, nonce


def open_sealed(key: bytes, sealed: bytes, nonce: bytes, associated_data: bytes) -> bytes:
    """Raises ValueError when the tag does not verify."""
    if len(sealed) < TAG_SIZE:
        raise ValueError("ciphertext shorter than the authentication tag")
    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    cipher.update(associated_data)
    return cipher.decrypt_and_verify(sealed[:-TAG_SIZE], sealed[-TAG_SIZE:])


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode()


def b64decode(data: str) -> bytes:
    """Strict decoding; raises ValueError on malformed input."""
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError) as exc:
        raise ValueError(f"invalid base64: {exc}") from exc
