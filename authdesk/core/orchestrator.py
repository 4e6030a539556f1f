from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from authdesk.core.confirmations import ConfirmationBatch, ConfirmationPoller, PollResult
from authdesk.core.errors import (
    AccountNotFoundError,
    AuthdeskError,
    InvalidSessionError,
    ManifestLockedError,
    PasskeyMismatchError,
)
from authdesk.core.events.bus import EventBus
from authdesk.core.events.models import EventSeverity, EventType, SourceSubsystem
from authdesk.core.events.redaction import redact
from authdesk.core.manifest.models import AccountEntry
from authdesk.core.manifest.store import ManifestStore, entry_from_mafile, entry_from_otpauth_uri
from authdesk.core.providers.base import ConfirmationAction, CredentialProvider, DeactivationScheme, PendingConfirmation
from authdesk.core.providers.registry import ProviderContext, ProviderRegistry, default_registry
from authdesk.core.scheduler import PeriodicTask
from authdesk.core.selection import AccountSelection
from authdesk.core.sessions import RefreshOutcome, SessionRefreshCache
from authdesk.core.time_aligner import CODE_PERIOD_SECONDS, TimeAligner, code_window, seconds_remaining


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    code: str = "ok"
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TickResult:
    timestamp: int
    window: int
    seconds_remaining: int
    account_name: Optional[str] = None
    code: Optional[str] = None
    aligning: bool = False


class Orchestrator:
    """
    Owns the shared state (time offset, refreshed sessions, providers, selection)
    and drives the two periodic tasks:

    - fast tick: kick time alignment, regenerate the active account's code
    - poll tick: confirmation polling, only while periodic checking is enabled

    Manifest mutations and the ticks' provider snapshots share one RLock.
    Network work runs on a thread pool; nothing here blocks on the network
    while holding that lock.
    """

    def __init__(
        self,
        *,
        store: ManifestStore,
        aligner: TimeAligner,
        registry: Optional[ProviderRegistry] = None,
        provider_ctx: Optional[ProviderContext] = None,
        bus: Optional[EventBus] = None,
        error_reporter=None,
        logger=None,
        code_interval_seconds: float = 1.0,
        align_interval_seconds: float = 5.0,
        network_workers: int = 4,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.aligner = aligner
        self.registry = registry or default_registry()
        self.provider_ctx = provider_ctx or ProviderContext()
        if self.provider_ctx.clock is None:
            self.provider_ctx.clock = aligner.now
        self.bus = bus
        self.error_reporter = error_reporter
        self.logger = logger
        self.align_interval_seconds = float(align_interval_seconds)
        self._monotonic = monotonic

        self._lock = threading.RLock()
        self._providers: Tuple[CredentialProvider, ...] = ()
        self._by_name: Dict[str, CredentialProvider] = {}
        self._closed = False
        self._started = False
        self._status = "idle"
        self._last_align_kick: Optional[float] = None
        self._last_tick: Optional[TickResult] = None

        self.selection = AccountSelection()
        self.sessions = SessionRefreshCache(logger=logger, error_reporter=error_reporter)
        self.poller = ConfirmationPoller(
            active_provider=self._active_provider,
            all_providers=self.providers,
            notify=self._on_batch,
            logger=logger,
            error_reporter=error_reporter,
        )
        self._executor = ThreadPoolExecutor(max_workers=int(network_workers), thread_name_prefix="authdesk-net")
        self._fast_task = PeriodicTask("fast-tick", self.fast_tick, code_interval_seconds, run_immediately=True, logger=logger)
        self._poll_task = PeriodicTask("poll-tick", self.poll_tick, 5.0, logger=logger)

    # ---------- lifecycle ----------
    def open(self, passkey: Optional[str] = None) -> OperationResult:
        with self._lock:
            try:
                m = self.store.load()
                if m.encrypted:
                    self.store.unlock_all(passkey)
                self._rebuild()
                if m.first_run:
                    self.store.update_settings(first_run=False)
            except AuthdeskError as e:
                return self._fail(e)
            self._apply_settings()
            names = self.store.names()
            encrypted = self.store.is_encrypted()
        if self.logger:
            self.logger.info(f"Manifest opened: {len(names)} account(s), encrypted={encrypted}")
        self._emit(EventType.MANIFEST_CHANGED, SourceSubsystem.manifest, {"accounts": names, "encrypted": encrypted})
        return OperationResult(True, data={"accounts": names, "encrypted": encrypted})

    def start(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Orchestrator was stopped.")
            self._started = True
            self._fast_task.start()
            self._apply_settings()

    def stop(self) -> None:
        with self._lock:
            self._closed = True
            self._started = False
        self.poller.close()
        self._fast_task.stop()
        self._poll_task.stop()
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self.logger:
            self.logger.info("Orchestrator stopped.")

    @property
    def closed(self) -> bool:
        return self._closed

    # ---------- ticks ----------
    def fast_tick(self) -> TickResult:
        aligning = self._maybe_align()
        ts = self.aligner.now()
        name = self.selection.active
        provider = self._provider(name)
        code: Optional[str] = None
        if provider is not None:
            try:
                code = provider.generate_code(ts)
            except Exception as e:  # noqa: BLE001
                self._report(e, subsystem="providers", account_name=name)
        period = provider.period if provider is not None else CODE_PERIOD_SECONDS
        result = TickResult(
            timestamp=ts,
            window=code_window(ts, period),
            seconds_remaining=seconds_remaining(ts, period),
            account_name=name if provider is not None else None,
            code=code,
            aligning=aligning,
        )
        with self._lock:
            if self._closed:
                return result
            self._last_tick = result
        self._emit(
            EventType.CODE_UPDATED,
            SourceSubsystem.orchestrator,
            {"code": code, "window": result.window, "seconds_remaining": result.seconds_remaining},
            account_name=result.account_name,
        )
        return result

    def poll_tick(self) -> PollResult:
        result = self.poller.poll_once()
        if result.skipped:
            return result
        for f in result.batch.failures:
            self._emit(
                EventType.ERROR_RAISED,
                SourceSubsystem.confirmations,
                {"code": f.reason, "message": f.message},
                account_name=f.account_name,
                severity=EventSeverity.WARN,
            )
        return result

    # ---------- selection ----------
    def select(self, account_name: str) -> Optional[Future]:
        """Make account_name active and refresh its session in the background (once per run)."""
        if not self.selection.set_active(account_name):
            return None
        provider = self._provider(account_name)
        if provider is None:
            return None
        return self._submit(self._refresh_if_needed, account_name, provider)

    def select_index(self, i: int) -> Optional[Future]:
        name = self.selection.select_index(i)
        if name is None:
            return None
        return self.select(name)

    def filter(self, query: str) -> List[str]:
        return self.selection.filter(query)

    # ---------- account management ----------
    def add_account(self, entry: AccountEntry) -> OperationResult:
        with self._lock:
            try:
                self.registry.create(entry, self.provider_ctx)
                self.store.add_entry(entry)
            except AuthdeskError as e:
                return self._fail(e)
            self._rebuild()
            names = self.store.names()
        self._emit(EventType.MANIFEST_CHANGED, SourceSubsystem.manifest, {"accounts": names, "added": entry.account_name})
        return OperationResult(True, data={"account_name": entry.account_name})

    def import_mafile(self, path: str) -> OperationResult:
        try:
            entry = entry_from_mafile(path)
        except AuthdeskError as e:
            return self._fail(e)
        return self.add_account(entry)

    def import_otpauth_uri(self, uri: str) -> OperationResult:
        try:
            entry = entry_from_otpauth_uri(uri)
        except AuthdeskError as e:
            return self._fail(e)
        return self.add_account(entry)

    def remove_account(
        self,
        account_name: str,
        also_deactivate_remote: bool = False,
        scheme: DeactivationScheme = DeactivationScheme.SCHEME_1,
    ) -> OperationResult:
        with self._lock:
            if not self.store.is_unlocked():
                return self._fail(ManifestLockedError())
            if account_name not in self.store.names():
                return self._fail(AccountNotFoundError(account_name=account_name))
            provider = self._provider(account_name)
        if also_deactivate_remote:
            # remote call, made without the lock so the ticks keep running
            refused = self._deactivate_remote(account_name, provider, scheme)
            if refused is not None:
                return refused
        with self._lock:
            try:
                removed = self.store.remove_entry(account_name)
            except AuthdeskError as e:
                return self._fail(e)
            if not removed:
                return self._fail(AccountNotFoundError(account_name=account_name))
            self.sessions.forget(account_name)
            self._rebuild()
            names = self.store.names()
        self._emit(EventType.MANIFEST_CHANGED, SourceSubsystem.manifest, {"accounts": names, "removed": account_name})
        return OperationResult(True, data={"account_name": account_name})

    def move_account(self, from_index: int, to_index: int) -> OperationResult:
        with self._lock:
            if not self.store.is_unlocked():
                return self._fail(ManifestLockedError())
            try:
                moved = self.store.move_entry(from_index, to_index)
            except AuthdeskError as e:
                return self._fail(e)
            if not moved:
                return OperationResult(False, "no_op")
            self._rebuild()
            names = self.store.names()
        self._emit(EventType.MANIFEST_CHANGED, SourceSubsystem.manifest, {"accounts": names})
        return OperationResult(True, data={"accounts": names})

    def move_active(self, delta: int) -> OperationResult:
        with self._lock:
            step = self.selection.step(delta)
            if step is None:
                return OperationResult(False, "no_op")
            return self.move_account(*step)

    def change_passkey(self, current: Optional[str], new: Optional[str], confirm: Optional[str]) -> OperationResult:
        if (new or "") != (confirm or ""):
            return self._fail(PasskeyMismatchError())
        with self._lock:
            try:
                self.store.rekey(current, new or None)
            except AuthdeskError as e:
                return self._fail(e)
            encrypted = self.store.is_encrypted()
        self._emit(EventType.MANIFEST_CHANGED, SourceSubsystem.manifest, {"encrypted": encrypted})
        return OperationResult(True, data={"encrypted": encrypted})

    # ---------- sessions ----------
    def refresh_session(self, account_name: Optional[str] = None) -> OperationResult:
        """Explicit refresh, regardless of whether the account was refreshed before."""
        name = account_name or self.selection.active
        provider = self._provider(name)
        if provider is None:
            return self._fail(AccountNotFoundError(account_name=name))
        try:
            ok = bool(provider.refresh_session())
        except InvalidSessionError as e:
            return self._fail(e)
        except Exception as e:  # noqa: BLE001
            err = self._report(e, subsystem="sessions", account_name=name)
            return self._fail(err)
        if not ok:
            return OperationResult(False, "refresh_failed", "The session could not be refreshed.")
        self.sessions.mark_fresh(name)
        self._persist_payload(provider)
        self._emit(EventType.SESSION_REFRESHED, SourceSubsystem.sessions, {}, account_name=name)
        return OperationResult(True, data={"account_name": name})

    def deactivate_account(self, account_name: str, scheme: DeactivationScheme, entered_code: str) -> OperationResult:
        if DeactivationScheme(scheme) == DeactivationScheme.NONE:
            return OperationResult(False, "no_action")
        provider = self._provider(account_name)
        if provider is None:
            return self._fail(AccountNotFoundError(account_name=account_name))
        expected = provider.generate_code(self.aligner.now())
        if str(entered_code or "").strip().upper() != expected.upper():
            return OperationResult(False, "code_mismatch", "The entered code does not match the current code.")
        return self.remove_account(account_name, also_deactivate_remote=True, scheme=DeactivationScheme(scheme))

    # ---------- confirmations ----------
    def pending_confirmations(self, account_name: str) -> OperationResult:
        """One on-demand fetch for account_name; does not touch the poller's ack state."""
        provider = self._provider(account_name)
        if provider is None:
            return self._fail(AccountNotFoundError(account_name=account_name))
        try:
            found = provider.fetch_pending_confirmations()
        except InvalidSessionError as e:
            return self._fail(e)
        except Exception as e:  # noqa: BLE001
            err = self._report(e, subsystem="confirmations", account_name=account_name)
            return self._fail(err)
        return OperationResult(True, data={"confirmations": list(found)})

    def respond_to_confirmation(self, confirmation: PendingConfirmation, action: ConfirmationAction) -> OperationResult:
        provider = self._provider(confirmation.account_name)
        if provider is None:
            return self._fail(AccountNotFoundError(account_name=confirmation.account_name))
        try:
            proof = provider.make_proof(action, self.aligner.now())
            ok = bool(provider.respond_to_confirmation(confirmation, action, proof))
        except InvalidSessionError as e:
            return self._fail(e)
        except Exception as e:  # noqa: BLE001
            err = self._report(e, subsystem="confirmations", account_name=confirmation.account_name)
            return self._fail(err)
        if not ok:
            return OperationResult(False, "respond_failed", "The confirmation was not accepted by the remote side.")
        return OperationResult(True, data={"id": confirmation.id, "action": ConfirmationAction(action).value})

    def acknowledge_confirmations(self) -> None:
        self.poller.acknowledge()

    # ---------- settings ----------
    def update_settings(self, **fields: Any) -> OperationResult:
        with self._lock:
            try:
                settings = self.store.update_settings(**fields)
            except AuthdeskError as e:
                return self._fail(e)
            except (ValueError, ValidationError) as e:
                return OperationResult(False, "invalid_settings", str(e)[:300])
            self._apply_settings()
        return OperationResult(True, data=settings)

    def reload_settings(self) -> OperationResult:
        with self._lock:
            try:
                settings = self.store.reload_settings()
            except AuthdeskError as e:
                return self._fail(e)
            self._apply_settings()
        return OperationResult(True, data=settings)

    # ---------- read API ----------
    def providers(self) -> Tuple[CredentialProvider, ...]:
        with self._lock:
            return self._providers

    def current_code(self) -> Optional[str]:
        provider = self._provider(self.selection.active)
        if provider is None:
            return None
        return provider.generate_code(self.aligner.now())

    def code_period(self) -> int:
        provider = self._provider(self.selection.active)
        return provider.period if provider is not None else CODE_PERIOD_SECONDS

    def status(self) -> Dict[str, Any]:
        with self._lock:
            last = self._last_tick
            return {
                "status": self._status,
                "running": self._started and not self._closed,
                "active": self.selection.active,
                "accounts": [p.account_name for p in self._providers],
                "alignment": asdict(self.aligner.status()),
                "awaiting_ack": self.poller.awaiting_ack,
                "fresh_sessions": self.sessions.snapshot(),
                "polling": self._poll_task.is_running(),
                "last_tick": asdict(last) if last else None,
            }

    # ---------- internals ----------
    def _rebuild(self) -> None:
        """Recreate providers from the store; the tuple is replaced, never mutated."""
        previous = self._by_name
        providers: List[CredentialProvider] = []
        for entry in self.store.accounts():
            keep = previous.get(entry.account_name)
            if keep is not None and keep.kind == entry.kind:
                providers.append(keep)
                continue
            try:
                providers.append(self.registry.create(entry, self.provider_ctx))
            except AuthdeskError as e:
                self._report(e, subsystem="providers", account_name=entry.account_name)
        self._providers = tuple(providers)
        self._by_name = {p.account_name: p for p in providers}
        self.selection.set_accounts(self.store.names())

    def _apply_settings(self) -> None:
        s = self.store.settings()
        self.poller.check_all_accounts = bool(s["check_all_accounts"])
        self._poll_task.set_interval(float(s["periodic_checking_interval"]))
        if self._started and s["periodic_checking"]:
            self._poll_task.start()
        else:
            # called under the lock: a poll stuck on the network must not stall the fast tick
            self._poll_task.stop(wait=False)

    def _provider(self, account_name: Optional[str]) -> Optional[CredentialProvider]:
        if not account_name:
            return None
        with self._lock:
            return self._by_name.get(account_name)

    def _deactivate_remote(
        self, account_name: str, provider: Optional[CredentialProvider], scheme: DeactivationScheme
    ) -> Optional[OperationResult]:
        """None when the remote side confirmed the deactivation, else the refusal to return."""
        if provider is None:
            return OperationResult(False, "deactivate_failed", "The account has no provider.")
        try:
            ok = bool(provider.deactivate(scheme))
        except AuthdeskError as e:
            if e.code in {"invalid_session", "provider_error"}:
                return OperationResult(False, "deactivate_failed", e.user_message)
            return self._fail(e)
        except Exception as e:  # noqa: BLE001
            err = self._report(e, subsystem="providers", account_name=account_name)
            return OperationResult(False, "deactivate_failed", err.user_message)
        if not ok:
            if self.logger:
                self.logger.warning(f"Remote deactivation failed for {account_name}; entry kept.")
            return OperationResult(False, "deactivate_failed", "Remote deactivation failed; the account was kept.")
        return None

    def _active_provider(self) -> Optional[CredentialProvider]:
        return self._provider(self.selection.active)

    def _maybe_align(self) -> bool:
        now = self._monotonic()
        with self._lock:
            if self._closed:
                return False
            due = (
                not self.aligner.aligned
                or self._last_align_kick is None
                or now - self._last_align_kick >= self.align_interval_seconds
            )
            if not due:
                return self.aligner.is_aligning()
            fut = self.aligner.align_async(self._executor)
            if fut is None:
                return True
            self._last_align_kick = now
        self._set_status("aligning")
        fut.add_done_callback(self._on_aligned)
        return True

    def _on_aligned(self, fut: Future) -> None:
        if self._closed or fut.cancelled():
            return
        st = self.aligner.status()
        if st.last_ok:
            self._set_status("ready")
        else:
            self._set_status("align_failed", severity=EventSeverity.WARN, error=st.last_error)

    def _set_status(self, status: str, *, severity: EventSeverity = EventSeverity.INFO, **extra: Any) -> None:
        with self._lock:
            if self._status == status:
                return
            self._status = status
        self._emit(EventType.STATUS_CHANGED, SourceSubsystem.time, {"status": status, **extra}, severity=severity)

    def _refresh_if_needed(self, account_name: str, provider: CredentialProvider) -> RefreshOutcome:
        outcome = self.sessions.ensure_fresh(account_name, provider.refresh_session)
        if outcome == RefreshOutcome.REFRESHED and not self._closed:
            self._persist_payload(provider)
            self._emit(EventType.SESSION_REFRESHED, SourceSubsystem.sessions, {}, account_name=account_name)
        return outcome

    def _persist_payload(self, provider: CredentialProvider) -> None:
        with self._lock:
            if self._closed or provider.account_name not in self.store.names():
                return
            try:
                self.store.update_payload(provider.account_name, provider.export_payload())
            except AuthdeskError as e:
                self._report(e, subsystem="sessions", account_name=provider.account_name)

    def _on_batch(self, batch: ConfirmationBatch) -> None:
        self._emit(
            EventType.CONFIRMATIONS_BATCH,
            SourceSubsystem.confirmations,
            {"confirmations": batch.to_public(), "failures": [f.account_name for f in batch.failures]},
        )

    def _submit(self, fn: Callable[..., Any], *args: Any) -> Optional[Future]:
        if self._closed:
            return None
        return self._executor.submit(fn, *args)

    def _emit(
        self,
        event_type: EventType,
        source: SourceSubsystem,
        payload: Dict[str, Any],
        *,
        account_name: Optional[str] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> None:
        if self.bus is None or self._closed:
            return
        self.bus.emit(event_type, source=source, payload=payload, account_name=account_name, severity=severity)

    def _report(self, exc: BaseException, *, subsystem: str, account_name: Optional[str] = None) -> AuthdeskError:
        if self.error_reporter is not None:
            err = self.error_reporter.report_exception(exc, subsystem=subsystem, account_name=account_name)
        elif isinstance(exc, AuthdeskError):
            err = exc
        else:
            err = AuthdeskError(code="unknown_error", user_message="Something went wrong.", context={"error": str(exc)})
        if self.error_reporter is None and self.logger:
            self.logger.warning(f"[{account_name or '-'}] {subsystem}: {err.code} ({exc})")
        self._emit(EventType.ERROR_RAISED, SourceSubsystem.orchestrator, {"code": err.code, "subsystem": subsystem}, account_name=account_name, severity=EventSeverity.ERROR)
        return err

    def _fail(self, e: AuthdeskError) -> OperationResult:
        if self.logger:
            self.logger.info(f"Operation refused: {e.code} ({e.user_message})")
        return OperationResult(False, e.code, e.user_message, data=redact(dict(e.context or {})))
