from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from authdesk.core.errors import InvalidSessionError
from authdesk.core.providers.base import CredentialProvider, PendingConfirmation


@dataclass(frozen=True)
class AccountFailure:
    account_name: str
    reason: str  # invalid_session | fetch_failed
    message: str = ""


@dataclass(frozen=True)
class ConfirmationBatch:
    confirmations: Tuple[PendingConfirmation, ...] = ()
    failures: Tuple[AccountFailure, ...] = ()

    def to_public(self) -> List[dict]:
        return [c.to_public() for c in self.confirmations]


@dataclass(frozen=True)
class PollResult:
    skipped: bool
    reason: Optional[str] = None
    batch: ConfirmationBatch = field(default_factory=ConfirmationBatch)
    notified: bool = False


class ConfirmationPoller:
    """
    One poll cycle fetches pending confirmations for the active account (or all
    accounts) and hands a non-empty batch to notify() exactly once.

    Until acknowledge() is called, further cycles are skipped so the user is not
    shown the same confirmations again while still answering them.
    """

    def __init__(
        self,
        *,
        active_provider: Callable[[], Optional[CredentialProvider]],
        all_providers: Callable[[], Sequence[CredentialProvider]],
        notify: Callable[[ConfirmationBatch], None],
        check_all_accounts: bool = False,
        logger=None,
        error_reporter=None,
    ):
        self.active_provider = active_provider
        self.all_providers = all_providers
        self.notify = notify
        self.check_all_accounts = bool(check_all_accounts)
        self.logger = logger
        self.error_reporter = error_reporter

        self._lock = threading.Lock()
        self._pending_ack = False
        self._running = False
        self._closed = False

    @property
    def awaiting_ack(self) -> bool:
        with self._lock:
            return self._pending_ack

    def acknowledge(self) -> None:
        with self._lock:
            self._pending_ack = False

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def poll_once(self) -> PollResult:
        with self._lock:
            if self._closed:
                return PollResult(skipped=True, reason="closed")
            if self._pending_ack:
                return PollResult(skipped=True, reason="pending_ack")
            if self._running:
                return PollResult(skipped=True, reason="in_progress")
            self._running = True
        try:
            targets = self._targets()
            if targets is None:
                return PollResult(skipped=True, reason="no_active_account")
            batch = self._collect(targets)
        finally:
            with self._lock:
                self._running = False

        with self._lock:
            if self._closed:
                return PollResult(skipped=True, reason="closed")
            notify = bool(batch.confirmations)
            if notify:
                self._pending_ack = True
        if notify:
            if self.logger:
                self.logger.info(f"{len(batch.confirmations)} pending confirmation(s)")
            self.notify(batch)
        return PollResult(skipped=False, batch=batch, notified=notify)

    def _targets(self) -> Optional[List[CredentialProvider]]:
        if self.check_all_accounts:
            return list(self.all_providers())
        active = self.active_provider()
        if active is None:
            return None
        return [active]

    def _collect(self, targets: Sequence[CredentialProvider]) -> ConfirmationBatch:
        found: List[PendingConfirmation] = []
        failures: List[AccountFailure] = []
        for p in targets:
            try:
                found.extend(p.fetch_pending_confirmations())
            except InvalidSessionError as e:
                failures.append(AccountFailure(p.account_name, "invalid_session", e.user_message))
                if self.logger:
                    self.logger.warning(f"Confirmations skipped for {p.account_name}: invalid session")
            except Exception as e:  # noqa: BLE001
                failures.append(AccountFailure(p.account_name, "fetch_failed", str(e)[:300]))
                if self.error_reporter is not None:
                    self.error_reporter.report_exception(e, subsystem="confirmations", account_name=p.account_name)
                elif self.logger:
                    self.logger.warning(f"Confirmation fetch failed for {p.account_name}: {e}")
        return ConfirmationBatch(confirmations=tuple(found), failures=tuple(failures))
