"""
Security module: ECDH key exchange + AES-256-GCM encryption for the peer channel.

Keys are ephemeral (one keypair per session descriptor) and never persisted.
The public halves travel inside the offer/answer descriptors, so the derived
key binds the data channel to the signaling exchange.
"""

import os
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

logger = logging.getLogger(__name__)

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
# AES-256 key size
KEY_SIZE = 32
# GCM authentication tag size
TAG_SIZE = 16


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """
    Generate an ephemeral X25519 keypair.

    Returns:
        (private_key, public_key_bytes) where public_key_bytes
        is 32 bytes suitable for a descriptor.
    """
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw,
        format=PublicFormat.Raw,
    )
    return private_key, public_bytes


def derive_session_key(
    private_key: X25519PrivateKey,
    peer_public_bytes: bytes,
    session_nonce: bytes,
) -> bytes:
    """
    Derive a 32-byte AES-256 channel key from the ECDH shared secret.

    The offer's session nonce is used as HKDF salt so two sessions between
    the same keys never share a channel key.
    """
    peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
    shared_secret = private_key.exchange(peer_public_key)

    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=session_nonce,
        info=b"mobile-coder-relay-v1-channel-key",
    ).derive(shared_secret)


def encrypt_frame(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt a frame payload using AES-256-GCM.

    Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt_frame(key: bytes, data: bytes) -> bytes:
    """
    Decrypt a frame payload encrypted with AES-256-GCM.

    Raises cryptography.exceptions.InvalidTag on tampering, truncation or a
    wrong key.
    """
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise InvalidTag()
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    return AESGCM(key).decrypt(nonce, ciphertext, None)
