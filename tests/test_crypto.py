import sys
from pathlib import Path
import base64

import pytest

# Ensure project root is on sys.path for direct `python tests/test_crypto.py` runs.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from custody_store import crypto  # noqa: E402


def test_b64_roundtrip():
    raw = b"hello world"
    encoded = crypto.b64e(raw)
    assert isinstance(encoded, str)
    assert crypto.b64d(encoded) == raw
    base64.urlsafe_b64decode(encoded.encode("ascii"))


def test_password_hash_verifies_and_is_salted():
    first = crypto.hash_password("correct-horse")
    second = crypto.hash_password("correct-horse")
    assert first.startswith("scrypt$")
    assert first != second
    assert crypto.verify_password("correct-horse", first) is True
    assert crypto.verify_password("battery-staple", first) is False


def test_verify_password_rejects_malformed_hash():
    assert crypto.verify_password("whatever", "not-a-hash") is False
    assert crypto.verify_password("whatever", "bcrypt$1$2$3$abc$def") is False


def test_seal_and_open_share():
    key = crypto.generate_sealing_key()
    sealed = crypto.seal_share(key, "share-material", b"user:1")
    assert "share-material" not in sealed
    assert crypto.open_share(key, sealed, b"user:1") == "share-material"


def test_open_share_with_wrong_binding_or_key_fails():
    key = crypto.generate_sealing_key()
    sealed = crypto.seal_share(key, "share-material", b"user:1")
    with pytest.raises(ValueError):
        crypto.open_share(key, sealed, b"user:2")
    with pytest.raises(ValueError):
        crypto.open_share(crypto.generate_sealing_key(), sealed, b"user:1")


def test_load_sealing_key_checks_length():
    key = crypto.generate_sealing_key()
    assert crypto.load_sealing_key(crypto.b64e(key)) == key
    with pytest.raises(ValueError):
        crypto.load_sealing_key(crypto.b64e(b"short"))


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-vv"]))
