from __future__ import annotations

from typing import Any, Dict


REDACT_KEYS = {
    "passkey",
    "password",
    "secret",
    "shared_secret",
    "identity_secret",
    "revocation_code",
    "uri",
    "session",
    "token",
    "access_token",
    "refresh_token",
    "steamloginsecure",
    "sessionid",
    "key",
    "proof",
}


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if str(k).lower() in REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = _redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [_redact(x) for x in obj]
    return obj


def redact(obj: Any) -> Any:
    return _redact(obj)
