"""
Security module: AES-256-GCM message encryption + key provisioning.

Ciphertexts are self-contained: URL-safe base64 of
nonce (12 bytes) || ciphertext || tag (16 bytes), so decryption only needs
the ciphertext and the key. Keys are never persisted.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from whisperdrop.config import APP_ID, DEFAULT_KEY_HEX
from whisperdrop.errors import DecryptionFailed, InvalidInput

logger = logging.getLogger(__name__)

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
TAG_SIZE = 16
# AES-256 key size
KEY_SIZE = 32


def generate_key() -> bytes:
    """Return a fresh 256-bit key from the OS CSPRNG."""
    return os.urandom(KEY_SIZE)


def _load_default_key() -> bytes:
    if DEFAULT_KEY_HEX:
        try:
            key = bytes.fromhex(DEFAULT_KEY_HEX)
        except ValueError as e:
            raise InvalidInput(f"WHISPERDROP_DEFAULT_KEY is not valid hex: {e}")
        _check_key(key)
        logger.info("Loaded default message key from environment")
        return key
    logger.info("No default message key configured; generated an ephemeral one")
    return generate_key()


def _check_key(key: bytes) -> bytes:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidInput(
            f"encryption key must be {KEY_SIZE} bytes",
            data={"length": len(key) if isinstance(key, (bytes, bytearray)) else None},
        )
    return bytes(key)


_default_key = _load_default_key()


def default_key() -> bytes:
    return _default_key


def set_default_key(key: bytes) -> None:
    """Provision the process-wide default key. Call once at startup."""
    global _default_key
    _default_key = _check_key(key)


def encrypt(plaintext: str, key: bytes | None = None) -> str:
    """
    Encrypt a message payload using AES-256-GCM.

    Every call draws a new random nonce, so equal plaintexts never produce
    equal ciphertexts.
    """
    key = _check_key(key if key is not None else _default_key)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")


def decrypt(ciphertext: str, key: bytes | None = None) -> str:
    """
    Decrypt a payload produced by :func:`encrypt`.

    Raises:
        DecryptionFailed: wrong key, corrupted or tampered ciphertext.
    """
    key = _check_key(key if key is not None else _default_key)
    try:
        data = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
    except (binascii.Error, ValueError) as e:
        raise DecryptionFailed(f"ciphertext is not valid base64: {e}")

    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailed("ciphertext is truncated", data={"length": len(data)})

    nonce, sealed = data[:NONCE_SIZE], data[NONCE_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, sealed, None)
        return plaintext.decode("utf-8")
    except InvalidTag:
        raise DecryptionFailed("authentication failed (wrong key or tampered data)")
    except UnicodeDecodeError as e:
        raise DecryptionFailed(f"plaintext is not valid UTF-8: {e}")


def decrypt_or(ciphertext: str, fallback: str, key: bytes | None = None) -> str:
    """Decrypt, returning ``fallback`` instead of raising on failure."""
    try:
        return decrypt(ciphertext, key)
    except DecryptionFailed as e:
        logger.debug(f"Decryption failed, using fallback: {e}")
        return fallback


def hash_password(password: str) -> str:
    """One-way SHA-256 digest for verification. Never use it as a key."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def verify_password(password: str, digest: str) -> bool:
    return hmac.compare_digest(hash_password(password), digest)


def derive_room_key(room_id: str, password: str, pin: str = "") -> bytes:
    """
    Derive a 32-byte room key from secure-room credentials.

    Uses HKDF-SHA256 with the room id as salt, so the same password in two
    rooms yields unrelated keys.
    """
    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=room_id.encode("utf-8"),
        info=f"{APP_ID}-room-key".encode("utf-8"),
    ).derive(f"{password}\x00{pin}".encode("utf-8"))


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """
    Generate an ephemeral X25519 keypair.

    Returns:
        (private_key, public_key_bytes) where public_key_bytes
        is 32 bytes suitable for transmission.
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
    session_id: str = "",
) -> bytes:
    """
    Agree on a per-session message key with a peer.

    Both sides must pass the same ``session_id``; it is bound into the HKDF
    info so keys for different conversations never coincide.
    """
    try:
        peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
    except ValueError as e:
        raise InvalidInput(f"invalid peer public key: {e}")
    shared_secret = private_key.exchange(peer_public_key)

    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=f"{APP_ID}-session-key:{session_id}".encode("utf-8"),
    ).derive(shared_secret)
