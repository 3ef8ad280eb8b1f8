"""Credential vault for upstream API tokens.

WHAT:
    Authenticated symmetric encryption (AES-256-GCM) for long-lived Meta access
    tokens, plus the module helpers the registry calls on every read/write.

WHY:
    Tokens must never sit in the database or logs in plaintext. The master
    secret is stretched with PBKDF2 so operators can supply any passphrase
    rather than a uniformly random key.

TOKEN FORMAT:
    base64( nonce (12 bytes) || tag (16 bytes) || ciphertext )

REFERENCES:
    - adsync/services/account_registry.py (encrypts on write, decrypts on read)
    - generate_keys.py (operator helper for a fresh ENCRYPTION_KEY)
"""

import base64
import binascii
import hashlib
import logging
import os
import secrets
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import get_settings

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
KDF_ITERATIONS = 100_000
# Fixed salt: the master secret is the only secret input to the KDF.
KDF_SALT = hashlib.sha256(b"adsync-credential-vault").digest()


class DecryptionError(ValueError):
    """Raised when a stored token is tampered, malformed or encrypted with another key."""
    pass


class CredentialVault:
    """AES-GCM encrypt/decrypt bound to one derived key.

    Usage:
        ```python
        vault = CredentialVault(master_secret)
        token = vault.encrypt("EAAB...")
        assert vault.decrypt(token) == "EAAB..."
        ```
    """

    def __init__(self, master_secret: str):
        if not master_secret:
            raise RuntimeError("Credential vault requires a non-empty master secret.")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=KDF_SALT,
            iterations=KDF_ITERATIONS,
        )
        self._aead = AESGCM(kdf.derive(master_secret.encode("utf-8")))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret into an opaque base64 token. Empty input returns empty."""
        if not plaintext:
            return ""

        nonce = os.urandom(NONCE_LENGTH)
        # AESGCM appends the tag to the ciphertext; the stored layout puts it first.
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by `encrypt`.

        Raises:
            DecryptionError: Invalid base64, too short, or authentication tag mismatch.
        """
        if not token:
            return ""

        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise DecryptionError("Encrypted token is not valid base64.") from exc

        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError(
                f"Encrypted token too short ({len(raw)} bytes, need at least {NONCE_LENGTH + TAG_LENGTH})."
            )

        nonce = raw[:NONCE_LENGTH]
        tag = raw[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = raw[NONCE_LENGTH + TAG_LENGTH:]

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Encrypted token failed authentication (tampered or wrong key).") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted token is not valid UTF-8.") from exc

    @staticmethod
    def generate_key() -> str:
        """Return a fresh random master secret candidate (base64 of 64 random bytes)."""
        return base64.b64encode(secrets.token_bytes(64)).decode("ascii")

    @staticmethod
    def hash(value: str) -> str:
        """SHA-256 hex digest, for non-reversible fingerprints of secrets."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()


@lru_cache(maxsize=4)
def _vault_for(master_secret: str) -> CredentialVault:
    return CredentialVault(master_secret)


def get_vault() -> CredentialVault:
    """Return the process vault built from ENCRYPTION_KEY.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not configured.
    """
    master_secret = get_settings().ENCRYPTION_KEY
    if not master_secret:
        raise RuntimeError(
            "ENCRYPTION_KEY is not set. Generate one with `python generate_keys.py` "
            "and export it or add it to backend/.env."
        )
    return _vault_for(master_secret)


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt provider secrets before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., Meta access token).
        context:   Friendly label for logs (account id / client name).

    Returns:
        Opaque base64 token suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = get_vault().encrypt(plaintext)
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt provider secrets right before building an API client.

    Raises:
        ValueError: If the stored value is empty.
        DecryptionError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = get_vault().decrypt(ciphertext)
    except DecryptionError:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise

    logger.info("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
    return plaintext
