"""
Sealbox Session Cipher

AES-256-GCM authenticated encryption of message payloads under a
per-message session key. The ciphertext and the 16-byte tag are kept apart
so the tag can travel in the sealed package header.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import AuthenticationError, ValidationError
from .keys import KEY_BYTES, SecretKey

logger = logging.getLogger(__name__)


# Constants
NONCE_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16  # 128 bits for GCM authentication tag

KeyLike = Union[SecretKey, bytes, bytearray]


@dataclass(frozen=True)
class CipherResult:
    """Output of a single encryption."""

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes


def key_bytes(key: KeyLike) -> Union[bytes, bytearray]:
    """Return the raw buffer of a key, checking it is exactly 256 bits."""
    material = key.material if isinstance(key, SecretKey) else key
    if not isinstance(material, (bytes, bytearray)):
        raise ValidationError("Key must be bytes", field="key")
    if len(material) != KEY_BYTES:
        raise ValidationError(f"Key must be {KEY_BYTES} bytes, got {len(material)}", field="key")
    return material


class SessionCipher:
    """
    Symmetric authenticated encryption for message content.

    Every call to encrypt() draws a fresh random IV, so an IV is never
    reused with the same key. decrypt() verifies the tag over the whole
    ciphertext before any plaintext is returned.
    """

    def encrypt(
        self,
        plaintext: bytes,
        session_key: KeyLike,
        associated_data: Optional[bytes] = None,
    ) -> CipherResult:
        """
        Encrypt plaintext under the session key.

        Args:
            plaintext: Data to encrypt
            session_key: 32-byte key
            associated_data: Optional data authenticated but not encrypted

        Returns:
            CipherResult with ciphertext, iv and auth_tag
        """
        if not isinstance(plaintext, (bytes, bytearray)):
            raise ValidationError("Plaintext must be bytes", field="plaintext")

        aesgcm = AESGCM(key_bytes(session_key))
        iv = secrets.token_bytes(NONCE_SIZE)
        sealed = aesgcm.encrypt(iv, bytes(plaintext), associated_data)

        return CipherResult(
            ciphertext=sealed[:-TAG_SIZE],
            iv=iv,
            auth_tag=sealed[-TAG_SIZE:],
        )

    def decrypt(
        self,
        ciphertext: bytes,
        iv: bytes,
        auth_tag: bytes,
        session_key: KeyLike,
        associated_data: Optional[bytes] = None,
    ) -> bytes:
        """
        Verify and decrypt.

        Raises:
            AuthenticationError: If the tag does not verify
        """
        if len(iv) != NONCE_SIZE or len(auth_tag) != TAG_SIZE:
            raise AuthenticationError("Malformed IV or authentication tag")

        aesgcm = AESGCM(key_bytes(session_key))
        try:
            return aesgcm.decrypt(bytes(iv), bytes(ciphertext) + bytes(auth_tag), associated_data)
        except InvalidTag:
            logger.warning("Session decryption failed (integrity check)")
            raise AuthenticationError("Authentication tag did not verify")
