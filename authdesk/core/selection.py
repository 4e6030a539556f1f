from __future__ import annotations

import re
import threading
from typing import List, Optional, Sequence, Tuple


def match_names(names: Sequence[str], query: str) -> List[str]:
    """
    "~pattern" is a regular expression searched anywhere in the name; an invalid
    pattern matches everything. Anything else is a case-sensitive substring.
    """
    query = query or ""
    if not query:
        return list(names)
    if query.startswith("~"):
        try:
            rx = re.compile(query[1:])
        except re.error:
            return list(names)
        return [n for n in names if rx.search(n)]
    return [n for n in names if query in n]


class AccountSelection:
    """Ordered account names, the current filter and the active account."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._names: List[str] = []
        self._query = ""
        self._visible: List[str] = []
        self._active: Optional[str] = None

    @property
    def active(self) -> Optional[str]:
        with self._lock:
            return self._active

    @property
    def names(self) -> List[str]:
        with self._lock:
            return list(self._names)

    @property
    def visible(self) -> List[str]:
        with self._lock:
            return list(self._visible)

    @property
    def query(self) -> str:
        with self._lock:
            return self._query

    def set_accounts(self, names: Sequence[str]) -> Optional[str]:
        with self._lock:
            self._names = list(names)
            self._visible = match_names(self._names, self._query)
            if self._active not in self._names:
                self._active = self._visible[0] if self._visible else None
            return self._active

    def set_active(self, name: Optional[str]) -> bool:
        with self._lock:
            if name is None:
                self._active = None
                return True
            if name not in self._names:
                return False
            self._active = name
            return True

    def filter(self, query: str) -> List[str]:
        with self._lock:
            self._query = query or ""
            self._visible = match_names(self._names, self._query)
            return list(self._visible)

    @property
    def selected_index(self) -> Optional[int]:
        with self._lock:
            if self._active is None or self._active not in self._visible:
                return None
            return self._visible.index(self._active)

    def select_index(self, i: int) -> Optional[str]:
        with self._lock:
            if not (0 <= int(i) < len(self._visible)):
                return None
            self._active = self._visible[int(i)]
            return self._active

    def step(self, delta: int) -> Optional[Tuple[int, int]]:
        """Manifest indices (from, to) for moving the active account by delta, or None."""
        with self._lock:
            if self._active is None:
                return None
            src = self._names.index(self._active)
            dst = src + int(delta)
            if delta == 0 or not (0 <= dst < len(self._names)):
                return None
            return src, dst
