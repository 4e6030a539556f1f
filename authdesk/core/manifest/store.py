from __future__ import annotations

import json
import os
import threading
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from authdesk.core.config.io import atomic_write_json, read_json_file
from authdesk.core.crypto import (
    DecryptionError,
    KdfParams,
    best_effort_restrict_permissions,
    decrypt_with_passkey,
    encrypt_with_passkey,
    make_passkey_check,
    verify_passkey_check,
)
from authdesk.core.errors import (
    AccountImportError,
    AccountNotFoundError,
    DuplicateAccountError,
    ManifestCorruptError,
    ManifestLockedError,
    WrongPasskeyError,
)
from authdesk.core.manifest.models import SETTINGS_FIELDS, AccountEntry, EncryptedBlob, ManifestEntry, ManifestFile
from authdesk.core.providers.totp import payload_from_uri


class ManifestStore:
    """
    Ordered, optionally passkey-encrypted collection of accounts persisted as
    one JSON document.

    Every mutation stages a complete new manifest, writes it with an atomic
    replace, and only then swaps it into memory. A failed write or a wrong
    passkey leaves both the file and the in-memory state untouched.
    """

    def __init__(
        self,
        path: str,
        *,
        backups_dir: Optional[str] = None,
        max_backups: int = 10,
        kdf: Optional[KdfParams] = None,
        logger=None,
    ):
        self.path = path
        self.backups_dir = backups_dir if backups_dir is not None else os.path.join(os.path.dirname(path) or ".", "backups")
        self.max_backups = int(max_backups)
        self.kdf = kdf or KdfParams()
        self.logger = logger

        self._lock = threading.RLock()
        self._manifest: Optional[ManifestFile] = None
        self._plain: Optional[List[AccountEntry]] = None
        self._passkey: Optional[str] = None

    # ---------- lifecycle ----------
    def load(self) -> ManifestFile:
        with self._lock:
            rr = read_json_file(self.path)
            if rr.missing:
                if self.logger:
                    self.logger.info(f"No manifest at {self.path}; creating an empty one.")
                fresh = ManifestFile(kdf=self.kdf.to_dict())
                self._commit(fresh, [], passkey=None)
                return fresh
            if not rr.ok:
                raise ManifestCorruptError(path=self.path, error=rr.error)
            try:
                m = ManifestFile.model_validate(rr.data)
            except ValidationError as e:
                raise ManifestCorruptError(path=self.path, error=f"{e.error_count()} validation error(s)") from e
            self._manifest = m
            self._passkey = None
            self._plain = None if m.encrypted else [_plain_entry(e) for e in m.entries]
            return m

    def save(self) -> None:
        with self._lock:
            m = self._require_loaded()
            self._write(m)

    def reload_settings(self) -> Dict[str, Any]:
        """Re-read only the settings fields (written by an external settings UI)."""
        with self._lock:
            m = self._require_loaded()
            rr = read_json_file(self.path)
            if not rr.ok:
                raise ManifestCorruptError(path=self.path, error=rr.error)
            try:
                disk = ManifestFile.model_validate(rr.data)
            except ValidationError as e:
                raise ManifestCorruptError(path=self.path, error=f"{e.error_count()} validation error(s)") from e
            self._manifest = m.model_copy(update={k: getattr(disk, k) for k in SETTINGS_FIELDS})
            return self.settings()

    # ---------- read API ----------
    @property
    def manifest(self) -> ManifestFile:
        with self._lock:
            return self._require_loaded()

    def is_encrypted(self) -> bool:
        with self._lock:
            return self._require_loaded().encrypted

    def is_unlocked(self) -> bool:
        with self._lock:
            return self._plain is not None

    def names(self) -> List[str]:
        with self._lock:
            return self._require_loaded().names()

    def settings(self) -> Dict[str, Any]:
        with self._lock:
            m = self._require_loaded()
            return {k: getattr(m, k) for k in SETTINGS_FIELDS}

    def accounts(self) -> List[AccountEntry]:
        with self._lock:
            self._require_loaded()
            if self._plain is None:
                raise ManifestLockedError()
            return [a.model_copy(deep=True) for a in self._plain]

    def get(self, account_name: str) -> AccountEntry:
        for a in self.accounts():
            if a.account_name == account_name:
                return a
        raise AccountNotFoundError(account_name=account_name)

    def verify_passkey(self, passkey: Optional[str]) -> bool:
        with self._lock:
            m = self._require_loaded()
            if not m.encrypted:
                return True
            if not passkey or m.passkey_check is None:
                return False
            return verify_passkey_check(passkey, m.passkey_check.model_dump(), KdfParams.from_dict(m.kdf))

    def unlock_all(self, passkey: Optional[str]) -> List[AccountEntry]:
        """Decrypt every entry or none of them."""
        with self._lock:
            m = self._require_loaded()
            if not m.encrypted:
                return self.accounts()
            plain = self._decrypt_all(m, passkey)
            self._plain = plain
            self._passkey = passkey
            return [a.model_copy(deep=True) for a in plain]

    # ---------- mutations ----------
    def add_entry(self, entry: AccountEntry) -> None:
        with self._lock:
            m = self._require_loaded()
            plain = self._require_plain()
            if m.index_of(entry.account_name) >= 0:
                raise DuplicateAccountError(account_name=entry.account_name)
            sealed = self._seal(entry, m)
            staged = m.model_copy(update={"entries": [*m.entries, sealed]})
            self._commit(staged, [*plain, entry.model_copy(deep=True)], passkey=self._passkey)
            if self.logger:
                self.logger.info(f"Account added: {entry.account_name} ({entry.kind})")

    def remove_entry(
        self,
        account_name: str,
        also_deactivate_remote: bool = False,
        deactivate: Optional[Callable[[], bool]] = None,
    ) -> bool:
        with self._lock:
            m = self._require_loaded()
            idx = m.index_of(account_name)
            if idx < 0:
                return False
            if also_deactivate_remote:
                if deactivate is None or not deactivate():
                    if self.logger:
                        self.logger.warning(f"Remote deactivation failed for {account_name}; entry kept.")
                    return False
            entries = [e for e in m.entries if e.account_name != account_name]
            plain = None if self._plain is None else [a for a in self._plain if a.account_name != account_name]
            self._commit(m.model_copy(update={"entries": entries}), plain, passkey=self._passkey)
            if self.logger:
                self.logger.info(f"Account removed: {account_name}")
            return True

    def move_entry(self, from_index: int, to_index: int) -> bool:
        """Out-of-range indices (checked against the current length) are a no-op."""
        with self._lock:
            m = self._require_loaded()
            n = len(m.entries)
            if not (0 <= from_index < n and 0 <= to_index < n) or from_index == to_index:
                return False
            entries = list(m.entries)
            entries.insert(to_index, entries.pop(from_index))
            plain = None
            if self._plain is not None:
                plain = list(self._plain)
                plain.insert(to_index, plain.pop(from_index))
            self._commit(m.model_copy(update={"entries": entries}), plain, passkey=self._passkey)
            return True

    def update_payload(self, account_name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            m = self._require_loaded()
            plain = self._require_plain()
            idx = m.index_of(account_name)
            if idx < 0:
                raise AccountNotFoundError(account_name=account_name)
            updated = plain[idx].model_copy(update={"payload": dict(payload)}, deep=True)
            entries = list(m.entries)
            entries[idx] = self._seal(updated, m)
            new_plain = list(plain)
            new_plain[idx] = updated
            self._commit(m.model_copy(update={"entries": entries}), new_plain, passkey=self._passkey)

    def rekey(self, old_passkey: Optional[str], new_passkey: Optional[str]) -> bool:
        """
        Re-encrypt every entry under new_passkey (or store them in plain text
        when new_passkey is empty). All entries are decrypted and re-sealed in a
        staging copy first; nothing is written unless that fully succeeds.
        """
        with self._lock:
            m = self._require_loaded()
            if m.encrypted:
                plain = self._decrypt_all(m, old_passkey)
            else:
                plain = [_plain_entry(e) for e in m.entries]

            new_passkey = new_passkey or None
            if new_passkey:
                check = make_passkey_check(new_passkey, self.kdf)
                entries = [_seal_entry(a, new_passkey, self.kdf) for a in plain]
                update = {"encrypted": True, "passkey_check": EncryptedBlob(**check), "kdf": self.kdf.to_dict(), "entries": entries}
            else:
                entries = [ManifestEntry(account_name=a.account_name, kind=a.kind, payload=dict(a.payload)) for a in plain]
                update = {"encrypted": False, "passkey_check": None, "entries": entries}
            staged = ManifestFile.model_validate(m.model_copy(update=update).model_dump())
            self._commit(staged, plain, passkey=new_passkey)
            if self.logger:
                self.logger.info("Manifest passkey " + ("changed" if new_passkey else "removed") + f" ({len(entries)} entries)")
            return True

    def update_settings(self, **fields: Any) -> Dict[str, Any]:
        unknown = set(fields) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        with self._lock:
            m = self._require_loaded()
            staged = ManifestFile.model_validate({**m.model_dump(), **fields})
            self._commit(staged, self._plain, passkey=self._passkey)
            return self.settings()

    # ---------- import ----------
    def import_mafile(self, path: str) -> AccountEntry:
        entry = entry_from_mafile(path)
        self.add_entry(entry)
        return entry

    def import_otpauth_uri(self, uri: str) -> AccountEntry:
        entry = entry_from_otpauth_uri(uri)
        self.add_entry(entry)
        return entry

    # ---------- internal ----------
    def _require_loaded(self) -> ManifestFile:
        if self._manifest is None:
            raise RuntimeError("ManifestStore.load() must be called first.")
        return self._manifest

    def _require_plain(self) -> List[AccountEntry]:
        if self._plain is None:
            raise ManifestLockedError()
        return self._plain

    def _decrypt_all(self, m: ManifestFile, passkey: Optional[str]) -> List[AccountEntry]:
        kdf = KdfParams.from_dict(m.kdf)
        if not passkey or m.passkey_check is None or not verify_passkey_check(passkey, m.passkey_check.model_dump(), kdf):
            raise WrongPasskeyError()
        out: List[AccountEntry] = []
        for e in m.entries:
            if e.encrypted_payload is None:
                raise ManifestCorruptError(path=self.path, error=f"entry {e.account_name} is not encrypted")
            try:
                pt = decrypt_with_passkey(passkey, e.encrypted_payload.model_dump(), kdf, aad=e.account_name.encode("utf-8"))
            except DecryptionError as ex:
                raise WrongPasskeyError("The passkey does not decrypt every account.", account_name=e.account_name) from ex
            out.append(AccountEntry(account_name=e.account_name, kind=e.kind, payload=json.loads(pt.decode("utf-8"))))
        return out

    def _seal(self, entry: AccountEntry, m: ManifestFile) -> ManifestEntry:
        if not m.encrypted:
            return ManifestEntry(account_name=entry.account_name, kind=entry.kind, payload=dict(entry.payload))
        if not self._passkey:
            raise ManifestLockedError()
        return _seal_entry(entry, self._passkey, KdfParams.from_dict(m.kdf))

    def _commit(self, staged: ManifestFile, plain: Optional[List[AccountEntry]], *, passkey: Optional[str]) -> None:
        self._write(staged)
        self._manifest = staged
        self._plain = plain
        self._passkey = passkey

    def _write(self, m: ManifestFile) -> None:
        atomic_write_json(self.path, m.model_dump(mode="json"), self.backups_dir, max_backups=self.max_backups)
        best_effort_restrict_permissions(self.path)


def _plain_entry(e: ManifestEntry) -> AccountEntry:
    return AccountEntry(account_name=e.account_name, kind=e.kind, payload=dict(e.payload or {}))


def _seal_entry(entry: AccountEntry, passkey: str, kdf: KdfParams) -> ManifestEntry:
    pt = json.dumps(entry.payload, ensure_ascii=False, sort_keys=True).encode("utf-8")
    blob = encrypt_with_passkey(passkey, pt, kdf, aad=entry.account_name.encode("utf-8"))
    return ManifestEntry(account_name=entry.account_name, kind=entry.kind, encrypted_payload=EncryptedBlob(**blob))


def entry_from_mafile(path: str) -> AccountEntry:
    """Build a steam entry from a .maFile document (account_name, shared_secret, identity_secret, Session, ...)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise AccountImportError("Unable to read the .maFile.", path=os.path.basename(path), error=str(e)) from e
    if not isinstance(data, dict) or not data.get("account_name") or not data.get("shared_secret"):
        raise AccountImportError("The .maFile has no account_name/shared_secret.", path=os.path.basename(path))
    return AccountEntry(account_name=str(data["account_name"]), kind="steam", payload=data)


def entry_from_otpauth_uri(uri: str) -> AccountEntry:
    name, payload = payload_from_uri(uri)
    return AccountEntry(account_name=name, kind="totp", payload=payload)
