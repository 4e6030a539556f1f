from __future__ import annotations

import collections
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from authdesk.core.events.models import BaseEvent, EventSeverity, EventType, SourceSubsystem

Handler = Callable[[BaseEvent], None]


class OverflowPolicy(str, Enum):
    DROP_OLDEST = "DROP_OLDEST"
    DROP_NEWEST = "DROP_NEWEST"


class EventBusConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_queue_size: int = Field(default=1000, ge=10, le=100_000)
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    shutdown_grace_seconds: float = Field(default=2.0, ge=0.1, le=60.0)
    keep_recent: int = Field(default=200, ge=10, le=10_000)
    # a slow subscriber only ever needs the newest of these (per account)
    coalesce: List[str] = Field(default_factory=lambda: [EventType.CODE_UPDATED.value])


@dataclass
class _Subscriber:
    pattern: str
    handler: Handler
    priority: int
    inbox: "queue.Queue[BaseEvent]" = field(default_factory=queue.Queue)
    stop: threading.Event = field(default_factory=threading.Event)
    # (event_type, account_name) -> newest event_id handed to this subscriber
    newest: Dict[tuple, str] = field(default_factory=dict)
    thread: Optional[threading.Thread] = None

    def wants(self, ev: BaseEvent) -> bool:
        if self.pattern == "*":
            return True
        if self.pattern.endswith(".*"):
            return ev.namespace == self.pattern[:-2]
        return self.pattern == ev.event_type


class EventBus:
    """
    In-process event bus between the orchestrator and the presentation layer.

    publish() never blocks the tick threads: events go to one bounded queue and
    a dispatcher fans them out to one worker per subscriber, so each subscriber
    sees events in publish order and a slow one holds up nobody else.
    Coalesced types (code.updated by default) are skipped by a worker when a
    newer event for the same account is already waiting for it.
    A failing handler is counted and re-published as error.raised.
    """

    def __init__(self, *, cfg: Optional[EventBusConfig] = None, logger=None, error_reporter=None):
        self.cfg = cfg or EventBusConfig()
        self.logger = logger
        self.error_reporter = error_reporter

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._queue: Deque[BaseEvent] = collections.deque()
        self._subs: List[_Subscriber] = []
        self._running = False
        self._accepting = True
        self._coalesce = frozenset(self.cfg.coalesce)
        self._counts: Dict[str, int] = collections.Counter()
        self._recent: Deque[Dict[str, Any]] = collections.deque(maxlen=int(self.cfg.keep_recent))
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="eventbus-dispatch", daemon=True)
        if self.cfg.enabled:
            self.start()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._accepting = True
        self._dispatcher.start()

    def subscribe(self, event_type: Union[str, EventType], handler: Handler, priority: int = 50) -> None:
        """
        event_type is an exact name ("code.updated"), a namespace ("session.*")
        or "*" for everything. Lower priority values receive events first.
        """
        if not callable(handler):
            raise ValueError("handler must be callable")
        pattern = event_type.value if isinstance(event_type, EventType) else str(event_type)
        sub = _Subscriber(pattern=pattern, handler=handler, priority=int(priority))
        sub.thread = threading.Thread(target=self._worker_loop, args=(sub,), name=f"eventbus-{getattr(handler, '__name__', 'sub')}", daemon=True)
        sub.thread.start()
        with self._lock:
            self._subs.append(sub)
            self._subs.sort(key=lambda s: s.priority)

    def unsubscribe(self, handler: Handler) -> int:
        with self._lock:
            gone = [s for s in self._subs if s.handler is handler]
            self._subs = [s for s in self._subs if s.handler is not handler]
        for s in gone:
            s.stop.set()
        return len(gone)

    def publish(self, ev: BaseEvent) -> bool:
        if not (self._accepting and self.cfg.enabled):
            return False
        with self._lock:
            if len(self._queue) >= self.cfg.max_queue_size:
                self._counts["dropped"] += 1
                if self.cfg.overflow_policy == OverflowPolicy.DROP_NEWEST:
                    return False
                self._queue.popleft()
            self._queue.append(ev)
            self._counts["published"] += 1
            self._recent.appendleft({"event_type": ev.event_type, "account_name": ev.account_name, "ts": ev.timestamp})
            self._cv.notify()
        return True

    def emit(
        self,
        event_type: Union[str, EventType],
        *,
        source: SourceSubsystem,
        payload: Optional[Dict[str, Any]] = None,
        account_name: Optional[str] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> bool:
        ev = BaseEvent(event_type=event_type, source_subsystem=source, account_name=account_name, severity=severity, payload=payload or {})
        return self.publish(ev)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": bool(self.cfg.enabled) and self._running,
                "published_total": self._counts["published"],
                "dropped_total": self._counts["dropped"],
                "delivered_total": self._counts["delivered"],
                "coalesced_total": self._counts["coalesced"],
                "handler_errors_total": self._counts["handler_errors"],
                "queue_depth": len(self._queue),
                "subscribers": len(self._subs),
                "recent": list(self._recent)[:50],
            }

    def set_enabled(self, enabled: bool) -> None:
        self.cfg.enabled = bool(enabled)

    def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """Stop accepting, give the dispatcher up to grace_seconds to drain, then stop the workers."""
        self._accepting = False
        grace = float(self.cfg.shutdown_grace_seconds if grace_seconds is None else grace_seconds)
        deadline = time.monotonic() + grace
        with self._lock:
            while self._queue and self._dispatcher.is_alive() and time.monotonic() < deadline:
                self._cv.notify_all()
                self._cv.wait(timeout=0.05)
            self._running = False
            self._cv.notify_all()
            subs, self._subs = self._subs, []
        if self._dispatcher.is_alive():
            self._dispatcher.join(timeout=max(0.1, grace))
        for s in subs:
            s.stop.set()
            if s.thread is not None:
                s.thread.join(timeout=0.5)

    # ---- internals ----
    def _dispatch_loop(self) -> None:
        while True:
            with self._lock:
                while self._running and not self._queue:
                    self._cv.wait(timeout=0.2)
                if not self._running:
                    return
                ev = self._queue.popleft()
                targets = [s for s in self._subs if s.wants(ev)]
                coalesced = ev.event_type in self._coalesce
                for s in targets:
                    if coalesced:
                        s.newest[(ev.event_type, ev.account_name)] = ev.event_id
                    s.inbox.put_nowait(ev)
                self._counts["delivered"] += len(targets)
                self._cv.notify_all()

    def _worker_loop(self, sub: _Subscriber) -> None:
        while not sub.stop.is_set():
            try:
                ev = sub.inbox.get(timeout=0.1)
            except queue.Empty:
                continue
            if ev.event_type in self._coalesce and sub.newest.get((ev.event_type, ev.account_name)) != ev.event_id:
                with self._lock:
                    self._counts["coalesced"] += 1
                continue
            self._safe_handle(sub.handler, ev)

    def _safe_handle(self, handler: Handler, ev: BaseEvent) -> None:
        try:
            handler(ev)
        except Exception as e:  # noqa: BLE001
            with self._lock:
                self._counts["handler_errors"] += 1
            name = getattr(handler, "__name__", "handler")
            if self.error_reporter is not None:
                self.error_reporter.report_exception(e, subsystem="events", account_name=ev.account_name, context={"event_type": ev.event_type})
            elif self.logger:
                self.logger.warning(f"Event handler {name} failed on {ev.event_type}: {e}")
            # a failing error.raised handler must not feed itself
            if ev.event_type != EventType.ERROR_RAISED.value:
                self.emit(
                    EventType.ERROR_RAISED,
                    source=ev.source_subsystem,
                    account_name=ev.account_name,
                    severity=EventSeverity.ERROR,
                    payload={"handler": name, "event_type": ev.event_type, "error": str(e)[:500]},
                )
