from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from authdesk.core.events.redaction import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class AuthdeskError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- per-account (batch continues) ----
class InvalidSessionError(AuthdeskError):
    def __init__(self, user_message: str = "The account session is invalid or expired.", **ctx: Any):
        super().__init__("invalid_session", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class ProviderError(AuthdeskError):
    def __init__(self, user_message: str = "The account provider failed.", **ctx: Any):
        super().__init__("provider_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


# ---- user input (operation aborted, no state change) ----
class WrongPasskeyError(AuthdeskError):
    def __init__(self, user_message: str = "Wrong passkey.", **ctx: Any):
        super().__init__("wrong_passkey", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class PasskeyMismatchError(AuthdeskError):
    def __init__(self, user_message: str = "The passkeys do not match.", **ctx: Any):
        super().__init__("passkey_mismatch", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class ManifestLockedError(AuthdeskError):
    def __init__(self, user_message: str = "The manifest is encrypted; enter the passkey first.", **ctx: Any):
        super().__init__("manifest_locked", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class DuplicateAccountError(AuthdeskError):
    def __init__(self, user_message: str = "An account with that name already exists.", **ctx: Any):
        super().__init__("duplicate_account", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class AccountNotFoundError(AuthdeskError):
    def __init__(self, user_message: str = "No such account.", **ctx: Any):
        super().__init__("account_not_found", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class AccountImportError(AuthdeskError):
    def __init__(self, user_message: str = "Unable to import the account.", **ctx: Any):
        super().__init__("import_failed", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


# ---- network ----
class TimeAlignmentError(AuthdeskError):
    def __init__(self, user_message: str = "Unable to align time with the time server.", **ctx: Any):
        super().__init__("time_alignment_failed", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


# ---- fatal ----
class ManifestCorruptError(AuthdeskError):
    def __init__(self, user_message: str = "The manifest file is corrupt.", **ctx: Any):
        super().__init__("manifest_corrupt", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ConfigError(AuthdeskError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)
