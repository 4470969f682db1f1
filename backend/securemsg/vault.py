import os
import base64
import hashlib
import logging
from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)


class Vault:
    """Encrypts private keys at rest with a master secret."""

    def __init__(self, secret: str = None):
        secret = secret or os.environ.get("VAULT_SECRET")
        if not secret:
            logger.warning("[VAULT] VAULT_SECRET not set, generating an ephemeral master key.")
            secret = Fernet.generate_key().decode()
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
        self._fernet = Fernet(key)

    def encrypt(self, data: bytes) -> str:
        return self._fernet.encrypt(data).decode()

    def decrypt(self, token: str) -> bytes:
        return self._fernet.decrypt(token.encode())


vault = Vault()
