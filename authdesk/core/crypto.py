from __future__ import annotations

import base64
import os
import secrets
from dataclasses import dataclass
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

PASSKEY_CHECK_MARKER = b"authdesk.passkey.check.v1"
PASSKEY_CHECK_AAD = b"authdesk.manifest.check"


class DecryptionError(ValueError):
    pass


@dataclass(frozen=True)
class KdfParams:
    n: int = 2**14
    r: int = 8
    p: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"name": "scrypt", "n": self.n, "r": self.r, "p": self.p}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "KdfParams":
        return cls(n=int(d.get("n", 2**14)), r=int(d.get("r", 8)), p=int(d.get("p", 1)))


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


def new_salt() -> str:
    return _b64e(secrets.token_bytes(16))


def derive_key(passkey: str, salt: str, kdf: KdfParams) -> bytes:
    # AES-256 key
    s = Scrypt(salt=_b64d(salt), length=32, n=kdf.n, r=kdf.r, p=kdf.p)
    return s.derive(passkey.encode("utf-8"))


def best_effort_restrict_permissions(path: str) -> None:
    """
    Best-effort permissions tightening.
    On Windows this is limited; on POSIX it sets 0o600.
    """
    try:
        if os.name != "nt":
            os.chmod(path, 0o600)
    except OSError:
        return


def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: bytes = b"") -> Dict[str, Any]:
    aes = AESGCM(key)
    nonce = secrets.token_bytes(12)
    ct = aes.encrypt(nonce, plaintext, aad or None)
    return {"v": 1, "nonce": _b64e(nonce), "ciphertext": _b64e(ct)}


def aesgcm_decrypt(key: bytes, blob: Dict[str, Any], aad: bytes = b"") -> bytes:
    if blob.get("v") != 1:
        raise DecryptionError("Unsupported encrypted blob version.")
    aes = AESGCM(key)
    try:
        nonce = _b64d(blob["nonce"])
        ct = _b64d(blob["ciphertext"])
        return aes.decrypt(nonce, ct, aad or None)
    except (InvalidTag, KeyError, ValueError) as e:
        raise DecryptionError("Unable to decrypt blob.") from e


def encrypt_with_passkey(passkey: str, plaintext: bytes, kdf: KdfParams, aad: bytes = b"") -> Dict[str, Any]:
    salt = new_salt()
    blob = aesgcm_encrypt(derive_key(passkey, salt, kdf), plaintext, aad=aad)
    blob["salt"] = salt
    return blob


def decrypt_with_passkey(passkey: str, blob: Dict[str, Any], kdf: KdfParams, aad: bytes = b"") -> bytes:
    if not blob.get("salt"):
        raise DecryptionError("Encrypted blob has no salt.")
    return aesgcm_decrypt(derive_key(passkey, blob["salt"], kdf), blob, aad=aad)


def make_passkey_check(passkey: str, kdf: KdfParams) -> Dict[str, Any]:
    return encrypt_with_passkey(passkey, PASSKEY_CHECK_MARKER, kdf, aad=PASSKEY_CHECK_AAD)


def verify_passkey_check(passkey: str, check: Dict[str, Any], kdf: KdfParams) -> bool:
    try:
        pt = decrypt_with_passkey(passkey, check, kdf, aad=PASSKEY_CHECK_AAD)
    except DecryptionError:
        return False
    return secrets.compare_digest(pt, PASSKEY_CHECK_MARKER)
