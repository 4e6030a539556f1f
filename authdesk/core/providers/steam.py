from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import struct
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from pyotp.contrib import Steam

from authdesk.core.errors import AccountImportError, InvalidSessionError
from authdesk.core.providers.base import (
    ConfirmationAction,
    ConfirmationProof,
    CredentialProvider,
    DeactivationScheme,
    PendingConfirmation,
)

CONF_TAG_LIST = "conf"
CONF_TAG_ACCEPT = "allow"
CONF_TAG_DENY = "cancel"


class SteamTransport(Protocol):
    """
    Network half of a Steam Guard identity, supplied by the host application.

    Implementations raise InvalidSessionError when the stored session is no
    longer accepted by the remote side.
    """

    def refresh_session(self, *, session: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def fetch_confirmations(self, *, session: Dict[str, Any], device_id: str, timestamp: int, key: str) -> List[Dict[str, Any]]: ...

    def respond(self, *, session: Dict[str, Any], device_id: str, timestamp: int, key: str, confirmation_id: str, nonce: str, accept: bool) -> bool: ...

    def deactivate(self, *, session: Dict[str, Any], revocation_code: str, scheme: int) -> bool: ...


def confirmation_key(identity_secret: str, timestamp: int, tag: str) -> str:
    """HMAC-SHA1 over the big-endian timestamp followed by the tag (at most 32 bytes)."""
    try:
        secret = base64.b64decode(identity_secret)
    except (binascii.Error, ValueError) as e:
        raise AccountImportError("identity_secret is not valid base64.") from e
    msg = struct.pack(">Q", int(timestamp)) + tag.encode("utf-8")[:32]
    return base64.b64encode(hmac.new(secret, msg, hashlib.sha1).digest()).decode("ascii")


def _steam_totp(shared_secret: str) -> Steam:
    try:
        raw = base64.b64decode(shared_secret, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AccountImportError("shared_secret is not valid base64.") from e
    return Steam(base64.b32encode(raw).decode("ascii"))


class SteamGuardProvider(CredentialProvider):
    """
    Steam Guard mobile authenticator identity built from a .maFile payload.

    Codes and confirmation proofs are computed locally; everything else goes
    through the transport.
    """

    kind = "steam"

    def __init__(
        self,
        account_name: str,
        payload: Dict[str, Any],
        *,
        clock: Optional[Callable[[], int]] = None,
        transport: Optional[SteamTransport] = None,
    ):
        super().__init__(account_name, clock=clock)
        self._payload = dict(payload)
        if not self._payload.get("shared_secret"):
            raise AccountImportError("The account has no shared_secret.", account_name=account_name)
        self._totp = _steam_totp(str(self._payload["shared_secret"]))
        self.transport = transport

    @property
    def device_id(self) -> str:
        return str(self._payload.get("device_id") or "")

    @property
    def session(self) -> Dict[str, Any]:
        return dict(self._payload.get("Session") or {})

    def generate_code(self, timestamp: int) -> str:
        return self._totp.at(int(timestamp))

    def make_proof(self, action: ConfirmationAction, timestamp: int) -> Optional[ConfirmationProof]:
        tag = CONF_TAG_ACCEPT if action == ConfirmationAction.ACCEPT else CONF_TAG_DENY
        return ConfirmationProof(timestamp=int(timestamp), key=self._key(timestamp, tag))

    def refresh_session(self) -> bool:
        transport = self._require_transport()
        fresh = transport.refresh_session(session=self.session)
        if not fresh:
            return False
        self._payload["Session"] = {**self.session, **fresh}
        return True

    def fetch_pending_confirmations(self) -> List[PendingConfirmation]:
        transport = self._require_transport()
        ts = self._now()
        raw = transport.fetch_confirmations(session=self.session, device_id=self.device_id, timestamp=ts, key=self._key(ts, CONF_TAG_LIST))
        out: List[PendingConfirmation] = []
        for item in raw or []:
            out.append(
                PendingConfirmation(
                    id=str(item.get("id")),
                    nonce=str(item.get("nonce") or item.get("key") or ""),
                    description=str(item.get("description") or item.get("headline") or ""),
                    type=str(item.get("type") or "other"),
                    account_name=self.account_name,
                )
            )
        return out

    def respond_to_confirmation(self, confirmation: PendingConfirmation, action: ConfirmationAction, proof: Optional[ConfirmationProof]) -> bool:
        transport = self._require_transport()
        if proof is None:
            proof = self.make_proof(action, self._now())
        return bool(
            transport.respond(
                session=self.session,
                device_id=self.device_id,
                timestamp=proof.timestamp,
                key=proof.key,
                confirmation_id=confirmation.id,
                nonce=confirmation.nonce,
                accept=action == ConfirmationAction.ACCEPT,
            )
        )

    def deactivate(self, scheme: DeactivationScheme) -> bool:
        if scheme == DeactivationScheme.NONE:
            return False
        transport = self._require_transport()
        return bool(transport.deactivate(session=self.session, revocation_code=str(self._payload.get("revocation_code") or ""), scheme=int(scheme)))

    def export_payload(self) -> Dict[str, Any]:
        return dict(self._payload)

    # ---- internals ----
    def _key(self, timestamp: int, tag: str) -> str:
        secret = self._payload.get("identity_secret")
        if not secret:
            raise InvalidSessionError("The account has no identity_secret.", account_name=self.account_name)
        return confirmation_key(str(secret), timestamp, tag)

    def _now(self) -> int:
        if self.clock is None:
            return int(time.time())
        return int(self.clock())

    def _require_transport(self) -> SteamTransport:
        if self.transport is None:
            raise InvalidSessionError("No session transport is configured for this account.", account_name=self.account_name)
        return self.transport
