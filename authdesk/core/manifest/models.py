from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MANIFEST_VERSION = 1


class AccountEntry(BaseModel):
    """Decrypted account, as handed to a credential provider."""

    model_config = ConfigDict(extra="forbid")

    account_name: str
    kind: str = "steam"
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("account_name")
    @classmethod
    def _name_required(cls, v: str) -> str:
        v = str(v or "").strip()
        if not v:
            raise ValueError("account_name required")
        return v

    @field_validator("kind")
    @classmethod
    def _kind_lower(cls, v: str) -> str:
        return str(v or "").strip().lower() or "steam"


class EncryptedBlob(BaseModel):
    model_config = ConfigDict(extra="forbid")

    v: int = 1
    salt: str
    nonce: str
    ciphertext: str


class ManifestEntry(BaseModel):
    """
    Persisted account. Exactly one of payload / encrypted_payload is set,
    matching the manifest's encrypted flag.
    """

    model_config = ConfigDict(extra="forbid")

    account_name: str
    kind: str = "steam"
    payload: Optional[Dict[str, Any]] = None
    encrypted_payload: Optional[EncryptedBlob] = None

    @model_validator(mode="after")
    def _one_payload(self) -> "ManifestEntry":
        if (self.payload is None) == (self.encrypted_payload is None):
            raise ValueError("entry needs exactly one of payload / encrypted_payload")
        return self

    @property
    def is_encrypted(self) -> bool:
        return self.encrypted_payload is not None


class ManifestFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = Field(default=MANIFEST_VERSION, ge=1)
    encrypted: bool = False
    passkey_check: Optional[EncryptedBlob] = None
    kdf: Dict[str, Any] = Field(default_factory=lambda: {"name": "scrypt", "n": 2**14, "r": 8, "p": 1})
    entries: List[ManifestEntry] = Field(default_factory=list)
    first_run: bool = True
    periodic_checking: bool = False
    periodic_checking_interval: int = Field(default=5, ge=1, le=86400)
    check_all_accounts: bool = False
    language: str = "en"

    @model_validator(mode="after")
    def _consistent(self) -> "ManifestFile":
        names = [e.account_name for e in self.entries]
        if len(names) != len(set(names)):
            raise ValueError("account names must be unique")
        if self.encrypted and self.passkey_check is None:
            raise ValueError("encrypted manifest has no passkey_check")
        if not self.encrypted and self.passkey_check is not None:
            raise ValueError("plaintext manifest carries a passkey_check")
        for e in self.entries:
            if e.is_encrypted != self.encrypted:
                raise ValueError(f"entry {e.account_name!r} does not match the manifest encryption flag")
        return self

    def names(self) -> List[str]:
        return [e.account_name for e in self.entries]

    def index_of(self, account_name: str) -> int:
        for i, e in enumerate(self.entries):
            if e.account_name == account_name:
                return i
        return -1


SETTINGS_FIELDS = ("first_run", "periodic_checking", "periodic_checking_interval", "check_all_accounts", "language")
