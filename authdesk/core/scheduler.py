from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class PeriodicTask:
    """
    Runs fn every interval seconds on its own daemon thread.

    A slow run delays only this task; the next run starts interval seconds after
    the previous one finished. Exceptions are logged and the loop keeps going.

    Every start() gets its own stop/wake events, so a loop that is still inside a
    slow fn() after stop() can only finish and exit, even if the task is started
    again in the meantime.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], object],
        interval_seconds: float,
        *,
        run_immediately: bool = False,
        logger=None,
    ):
        self.name = name
        self.fn = fn
        self.run_immediately = bool(run_immediately)
        self.logger = logger
        self._interval = max(0.05, float(interval_seconds))
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.last_run_at: Optional[float] = None

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def set_interval(self, seconds: float) -> None:
        self._interval = max(0.05, float(seconds))
        self._wake.set()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self.is_running():
            return
        stop, wake = threading.Event(), threading.Event()
        self._stop, self._wake = stop, wake
        self._thread = threading.Thread(target=self._loop, args=(stop, wake), name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0, *, wait: bool = True) -> None:
        """
        Signal the current loop to exit. With wait=False the call returns at once
        and a run already in progress finishes on its own.
        """
        self._stop.set()
        self._wake.set()
        t, self._thread = self._thread, None
        if wait and t is not None and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=timeout)

    def _loop(self, stop: threading.Event, wake: threading.Event) -> None:
        if not self.run_immediately:
            self._sleep(stop, wake)
        while not stop.is_set():
            try:
                self.fn()
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.error(f"Periodic task {self.name} failed: {e}")
            self.runs += 1
            self.last_run_at = time.time()
            self._sleep(stop, wake)

    def _sleep(self, stop: threading.Event, wake: threading.Event) -> None:
        # set_interval() wakes us so a shorter interval applies right away
        deadline = time.monotonic() + self._interval
        while not stop.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if wake.wait(timeout=remaining):
                wake.clear()
                deadline = min(deadline, time.monotonic() + self._interval)
