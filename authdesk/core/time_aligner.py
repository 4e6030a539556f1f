from __future__ import annotations

import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from authdesk.core.config.models import DEFAULT_TIME_SOURCE_URL

CODE_PERIOD_SECONDS = 30


def code_window(ts: int, period: int = CODE_PERIOD_SECONDS) -> int:
    return int(ts) // int(period)


def seconds_remaining(ts: int, period: int = CODE_PERIOD_SECONDS) -> int:
    return int(period) - int(ts) % int(period)


@dataclass(frozen=True)
class AlignmentStatus:
    offset: int
    aligned: bool
    last_ok: bool
    last_attempt_at: Optional[float] = None
    last_error: Optional[str] = None


class TimeAligner:
    """
    Keeps the signed offset between the remote time source and the local clock.

    now() is pure arithmetic over the last good offset; only align() touches the
    network, and it never raises: a failed fetch keeps the previous offset.
    """

    def __init__(
        self,
        *,
        url: str = DEFAULT_TIME_SOURCE_URL,
        timeout_seconds: float = 5.0,
        local_clock: Callable[[], float] = time.time,
        session: Optional[requests.Session] = None,
        logger=None,
    ):
        self.url = url
        self.timeout_seconds = float(timeout_seconds)
        self.local_clock = local_clock
        self.session = session
        self.logger = logger

        self._lock = threading.Lock()
        self._offset = 0
        self._aligned = False
        self._last_ok = False
        self._last_attempt_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._inflight: Optional[Future] = None

    def now(self) -> int:
        with self._lock:
            offset = self._offset
        return int(self.local_clock()) + offset

    @property
    def offset(self) -> int:
        with self._lock:
            return self._offset

    @property
    def aligned(self) -> bool:
        with self._lock:
            return self._aligned

    def align(self) -> int:
        local = int(self.local_clock())
        with self._lock:
            self._last_attempt_at = float(local)
        try:
            server_time = self._fetch_server_time()
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            with self._lock:
                self._last_ok = False
                self._last_error = str(e)[:300]
                offset = self._offset
            if self.logger:
                self.logger.warning(f"Time alignment failed; keeping offset {offset}s: {e}")
            return offset

        with self._lock:
            self._offset = server_time - local
            self._aligned = True
            self._last_ok = True
            self._last_error = None
            offset = self._offset
        if self.logger:
            self.logger.info(f"Time aligned: offset={offset}s")
        return offset

    def align_async(self, executor: Executor) -> Optional[Future]:
        """Submit align() unless one is already running."""
        with self._lock:
            if self._inflight is not None and not self._inflight.done():
                return None
            fut = executor.submit(self.align)
            self._inflight = fut
            return fut

    def is_aligning(self) -> bool:
        with self._lock:
            return self._inflight is not None and not self._inflight.done()

    def status(self) -> AlignmentStatus:
        with self._lock:
            return AlignmentStatus(
                offset=self._offset,
                aligned=self._aligned,
                last_ok=self._last_ok,
                last_attempt_at=self._last_attempt_at,
                last_error=self._last_error,
            )

    def _fetch_server_time(self) -> int:
        post = self.session.post if self.session is not None else requests.post
        r = post(self.url, data={"steamid": "0"}, timeout=self.timeout_seconds)
        if r.status_code != 200:
            raise ValueError(f"HTTP {r.status_code}")
        data = r.json()
        return int(data["response"]["server_time"])
