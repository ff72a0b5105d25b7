import base64
import os

from cryptography.exceptions import InvalidKey, InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
SALT_BYTES = 16
HASH_BYTES = 32
NONCE_BYTES = 12


def b64e(data: bytes) -> str:
    """URL-safe base64 encoding without newlines."""
    return base64.urlsafe_b64encode(data).decode("ascii")


def b64d(data: str) -> bytes:
    """URL-safe base64 decoding from string."""
    return base64.urlsafe_b64decode(data.encode("ascii"))


def _scrypt(salt: bytes, n: int, r: int, p: int) -> Scrypt:
    return Scrypt(salt=salt, length=HASH_BYTES, n=n, r=r, p=p)


def hash_password(password: str) -> str:
    """Hash a password with scrypt. Returns ``scrypt$n$r$p$salt$hash``."""
    salt = os.urandom(SALT_BYTES)
    digest = _scrypt(salt, SCRYPT_N, SCRYPT_R, SCRYPT_P).derive(password.encode("utf-8"))
    return "$".join(["scrypt", str(SCRYPT_N), str(SCRYPT_R), str(SCRYPT_P), b64e(salt), b64e(digest)])


def verify_password(password: str, encoded: str) -> bool:
    """Check a password against an encoded hash. Returns False on mismatch or malformed input."""
    parts = encoded.split("$")
    if len(parts) != 6 or parts[0] != "scrypt":
        return False
    _, n, r, p, salt, digest = parts
    try:
        _scrypt(b64d(salt), int(n), int(r), int(p)).verify(password.encode("utf-8"), b64d(digest))
    except (InvalidKey, ValueError):
        return False
    return True


def generate_sealing_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def load_sealing_key(encoded: str) -> bytes:
    key = b64d(encoded)
    if len(key) != 32:
        raise ValueError("Sealing key must be 32 bytes (AES-256)")
    return key


def seal_share(key: bytes, share: str, associated_data: bytes | None = None) -> str:
    """
    Encrypt a key share with AES-256-GCM.
    The result is ``b64(nonce || ciphertext || tag)`` and is safe to store as TEXT.
    """
    nonce = os.urandom(NONCE_BYTES)
    ct_with_tag = AESGCM(key).encrypt(nonce, share.encode("utf-8"), associated_data)
    return b64e(nonce + ct_with_tag)


def open_share(key: bytes, sealed: str, associated_data: bytes | None = None) -> str:
    """Decrypt a sealed share; raises ValueError when the key or binding is wrong."""
    raw = b64d(sealed)
    nonce, ct_with_tag = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
    try:
        return AESGCM(key).decrypt(nonce, ct_with_tag, associated_data).decode("utf-8")
    except InvalidTag as exc:
        raise ValueError("Key share could not be opened with the given key") from exc
