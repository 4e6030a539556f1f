from __future__ import annotations

import json
import os
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from authdesk.core.errors import AuthdeskError, InvalidSessionError, ProviderError, TimeAlignmentError
from authdesk.core.events.redaction import redact


@dataclass
class ErrorReporterConfig:
    include_tracebacks: bool = False


class ErrorReporter:
    """
    Append-only JSONL record of per-account and background failures.
    Reporting never raises into the caller.
    """

    def __init__(self, *, path: str = os.path.join("logs", "errors.jsonl"), cfg: Optional[ErrorReporterConfig] = None, logger=None):
        self.path = path
        self.cfg = cfg or ErrorReporterConfig()
        self.logger = logger
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def report_exception(
        self,
        exc: BaseException,
        *,
        subsystem: str,
        account_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuthdeskError:
        err = normalize_exception(exc, subsystem=subsystem, context=context or {})
        self.write_error(err, subsystem=subsystem, account_name=account_name, internal_exc=exc)
        return err

    def write_error(self, err: AuthdeskError, *, subsystem: str, account_name: Optional[str] = None, internal_exc: Optional[BaseException] = None) -> None:
        entry: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "subsystem": subsystem,
            "account_name": account_name,
            "error_code": err.code,
            "severity": err.severity.value,
            "recoverable": bool(err.recoverable),
            "user_message": err.user_message,
            "safe_context": redact(err.context or {}),
        }
        if self.cfg.include_tracebacks and internal_exc is not None:
            entry["internal_context"] = {"traceback": "".join(traceback.format_exception(type(internal_exc), internal_exc, internal_exc.__traceback__, limit=30))}
        line = json.dumps(entry, ensure_ascii=False)
        try:
            with self._lock:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except OSError as e:
            if self.logger:
                self.logger.warning(f"Unable to write error record: {e}")
        if self.logger:
            who = f"[{account_name}] " if account_name else ""
            self.logger.warning(f"{who}{subsystem}: {err.code} ({err.context.get('error', err.user_message)})")

    def recent(self, n: int = 50) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        out: List[Dict[str, Any]] = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    out.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return out[-max(1, int(n)) :]


def normalize_exception(exc: BaseException, *, subsystem: str, context: Dict[str, Any]) -> AuthdeskError:
    # Passthrough
    if isinstance(exc, AuthdeskError):
        return exc

    msg = str(exc)
    ctx = dict(context or {})

    if subsystem == "time":
        return TimeAlignmentError(error=msg, **ctx)
    if isinstance(exc, requests.RequestException):
        if subsystem in {"sessions", "confirmations", "providers"}:
            return ProviderError("The remote service could not be reached.", error=msg, **ctx)
    if isinstance(exc, PermissionError) and subsystem in {"sessions", "confirmations"}:
        return InvalidSessionError(error=msg, **ctx)
    if subsystem in {"sessions", "confirmations", "providers"}:
        return ProviderError(error=msg, **ctx)

    # Generic safe error
    return AuthdeskError(code="unknown_error", user_message="Something went wrong.", context={"error": msg, **ctx})
