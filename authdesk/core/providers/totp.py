from __future__ import annotations

import binascii
import hashlib
from typing import Any, Callable, Dict, List, Optional

import pyotp

from authdesk.core.errors import AccountImportError
from authdesk.core.providers.base import (
    ConfirmationAction,
    ConfirmationProof,
    CredentialProvider,
    DeactivationScheme,
    PendingConfirmation,
)

_DIGESTS = {"sha1": hashlib.sha1, "sha256": hashlib.sha256, "sha512": hashlib.sha512}


class TotpProvider(CredentialProvider):
    """
    Plain RFC 6238 identity (otpauth:// accounts).

    There is no remote session or confirmation queue behind it, so the session
    and confirmation operations are local no-ops.
    """

    kind = "totp"

    def __init__(self, account_name: str, payload: Dict[str, Any], *, clock: Optional[Callable[[], int]] = None):
        super().__init__(account_name, clock=clock)
        self._payload = dict(payload)
        digest = str(self._payload.get("digest") or "sha1").lower()
        if digest not in _DIGESTS:
            raise AccountImportError("Unsupported TOTP digest.", digest=digest)
        if int(self._payload.get("period") or 30) < 1:
            raise AccountImportError("TOTP period must be at least one second.")
        try:
            self._totp = pyotp.TOTP(
                str(self._payload["secret"]),
                digits=int(self._payload.get("digits") or 6),
                digest=_DIGESTS[digest],
                interval=int(self._payload.get("period") or 30),
            )
        except KeyError as e:
            raise AccountImportError("TOTP payload has no secret.") from e
        try:
            self._totp.byte_secret()
        except (binascii.Error, ValueError) as e:
            raise AccountImportError("TOTP secret is not valid base32.", account_name=account_name) from e
        self.period = int(self._totp.interval)

    def generate_code(self, timestamp: int) -> str:
        return self._totp.at(int(timestamp))

    def refresh_session(self) -> bool:
        return True

    def fetch_pending_confirmations(self) -> List[PendingConfirmation]:
        return []

    def respond_to_confirmation(self, confirmation: PendingConfirmation, action: ConfirmationAction, proof: Optional[ConfirmationProof]) -> bool:
        return False

    def deactivate(self, scheme: DeactivationScheme) -> bool:
        # local-only identity: removing it from the manifest is the whole deactivation
        return scheme != DeactivationScheme.NONE

    def export_payload(self) -> Dict[str, Any]:
        return dict(self._payload)


def payload_from_uri(uri: str) -> tuple[str, Dict[str, Any]]:
    """Parse an otpauth://totp/ URI into (account_name, payload)."""
    try:
        otp = pyotp.parse_uri(uri)
    except ValueError as e:
        raise AccountImportError("Invalid otpauth URI.", error=str(e)) from e
    if not isinstance(otp, pyotp.TOTP):
        raise AccountImportError("Only time-based (totp) URIs are supported.")
    name = str(otp.name or "").strip()
    if not name:
        raise AccountImportError("The URI has no account label.")
    digest_name = getattr(otp.digest(), "name", "sha1")
    payload: Dict[str, Any] = {
        "secret": otp.secret,
        "digits": int(otp.digits),
        "period": int(otp.interval),
        "digest": str(digest_name).lower(),
    }
    if otp.issuer:
        payload["issuer"] = otp.issuer
    return name, payload
