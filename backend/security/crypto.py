"""
Channel encryption: X25519 key agreement + AES-256-GCM frame sealing.

Keys are ephemeral (one exchange per channel) and never persisted.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from config import APP_ID

PUBLIC_KEY_SIZE = 32
KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12
TAG_SIZE = 16

_KDF_INFO = f"{APP_ID}-channel-key".encode("utf-8")


class KeyExchange:
    """Our half of one X25519 exchange."""

    def __init__(self) -> None:
        self._private_key = x25519.X25519PrivateKey.generate()
        self.public_bytes = self._private_key.public_key().public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )

    def derive(self, peer_public_bytes: bytes) -> "FrameCipher":
        """Combine with the peer's raw public key into a channel cipher.

        Raises:
            ValueError: malformed or low-order peer key.
        """
        if len(peer_public_bytes) != PUBLIC_KEY_SIZE:
            raise ValueError(
                f"Peer public key must be {PUBLIC_KEY_SIZE} bytes, got {len(peer_public_bytes)}"
            )
        peer_key = x25519.X25519PublicKey.from_public_bytes(peer_public_bytes)
        secret = self._private_key.exchange(peer_key)
        key = HKDF(
            algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=_KDF_INFO
        ).derive(secret)
        return FrameCipher(key)


class FrameCipher:
    """Seals and opens frame payloads with one channel key.

    The frame type is bound as associated data, so a payload cannot be
    replayed under a different message type.
    """

    def __init__(self, key: bytes) -> None:
        self._aead = AESGCM(key)

    def seal(self, msg_type: int, plaintext: bytes) -> bytes:
        """Return ``nonce || ciphertext || tag``."""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, bytes([msg_type]))

    def open(self, msg_type: int, data: bytes) -> bytes:
        """Inverse of :meth:`seal`.

        Raises:
            ValueError: the frame is truncated or fails authentication.
        """
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise ValueError("Sealed frame too short")
        try:
            return self._aead.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], bytes([msg_type]))
        except InvalidTag as e:
            raise ValueError("Frame authentication failed") from e
