from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, List, Optional, Set

from authdesk.core.errors import InvalidSessionError


class RefreshOutcome(str, Enum):
    ALREADY_FRESH = "already_fresh"
    IN_PROGRESS = "in_progress"
    REFRESHED = "refreshed"
    FAILED = "failed"


class SessionRefreshCache:
    """
    Remembers which accounts had a successful session refresh since start.

    The set only grows (forget() aside, used when an account is removed).
    A failed refresh leaves the name out so the next selection retries.
    """

    def __init__(self, *, logger=None, error_reporter=None):
        self.logger = logger
        self.error_reporter = error_reporter
        self._lock = threading.Lock()
        self._fresh: Set[str] = set()
        self._inflight: Set[str] = set()

    def ensure_fresh(self, account_name: str, refresh_fn: Callable[[], bool]) -> RefreshOutcome:
        with self._lock:
            if account_name in self._fresh:
                return RefreshOutcome.ALREADY_FRESH
            if account_name in self._inflight:
                return RefreshOutcome.IN_PROGRESS
            self._inflight.add(account_name)

        ok = False
        try:
            ok = bool(refresh_fn())
        except InvalidSessionError as e:
            if self.logger:
                self.logger.warning(f"Session refresh rejected for {account_name}: {e.user_message}")
        except Exception as e:  # noqa: BLE001
            if self.error_reporter is not None:
                self.error_reporter.report_exception(e, subsystem="sessions", account_name=account_name)
            elif self.logger:
                self.logger.warning(f"Session refresh failed for {account_name}: {e}")
        finally:
            with self._lock:
                self._inflight.discard(account_name)
                if ok:
                    self._fresh.add(account_name)

        if ok:
            if self.logger:
                self.logger.info(f"Session refreshed: {account_name}")
            return RefreshOutcome.REFRESHED
        return RefreshOutcome.FAILED

    def mark_fresh(self, account_name: str) -> None:
        with self._lock:
            self._fresh.add(account_name)

    def is_fresh(self, account_name: str) -> bool:
        with self._lock:
            return account_name in self._fresh

    def forget(self, account_name: Optional[str]) -> None:
        if not account_name:
            return
        with self._lock:
            self._fresh.discard(account_name)

    def snapshot(self) -> List[str]:
        with self._lock:
            return sorted(self._fresh)
