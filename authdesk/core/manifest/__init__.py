from authdesk.core.manifest.models import (
    SETTINGS_FIELDS,
    AccountEntry,
    EncryptedBlob,
    ManifestEntry,
    ManifestFile,
)
from authdesk.core.manifest.store import ManifestStore, entry_from_mafile, entry_from_otpauth_uri

__all__ = [
    "SETTINGS_FIELDS",
    "AccountEntry",
    "EncryptedBlob",
    "ManifestEntry",
    "ManifestFile",
    "ManifestStore",
    "entry_from_mafile",
    "entry_from_otpauth_uri",
]
