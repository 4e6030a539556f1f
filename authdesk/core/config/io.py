from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ReadResult:
    ok: bool
    data: Dict[str, Any]
    error: Optional[str] = None

    @property
    def missing(self) -> bool:
        return self.error == "missing"


def _stamp() -> str:
    # fixed width, so names sort chronologically; nanoseconds keep back-to-back saves apart
    ns = time.time_ns()
    return time.strftime("%Y%m%d_%H%M%S", time.gmtime(ns // 1_000_000_000)) + f"_{ns % 1_000_000_000:09d}"


def dumps_json(data: Dict[str, Any]) -> str:
    """Canonical on-disk form: stable key order, so an unchanged document rewrites byte-for-byte."""
    return json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True) + "\n"


def read_json_file(path: str) -> ReadResult:
    if not os.path.exists(path):
        return ReadResult(ok=False, data={}, error="missing")
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except json.JSONDecodeError as e:
        return ReadResult(ok=False, data={}, error=f"corrupt_json:{e}")
    except (OSError, UnicodeDecodeError) as e:
        return ReadResult(ok=False, data={}, error=str(e))
    if not isinstance(obj, dict):
        return ReadResult(ok=False, data={}, error="not_object")
    return ReadResult(ok=True, data=obj)


def list_backups(path: str, backups_dir: str) -> List[str]:
    """Backups of path, newest first."""
    if not os.path.isdir(backups_dir):
        return []
    prefix = f"{os.path.basename(path)}."
    items = [os.path.join(backups_dir, f) for f in os.listdir(backups_dir) if f.startswith(prefix)]
    items.sort(reverse=True)
    return items


def prune_backups(path: str, backups_dir: str, keep: int) -> int:
    removed = 0
    for p in list_backups(path, backups_dir)[max(0, keep) :]:
        try:
            os.remove(p)
            removed += 1
        except OSError:
            continue
    return removed


def backup_file(path: str, backups_dir: str, *, reason: str, max_backups: int = 10) -> Optional[str]:
    if max_backups <= 0 or not os.path.exists(path):
        return None
    os.makedirs(backups_dir, exist_ok=True)
    out = os.path.join(backups_dir, f"{os.path.basename(path)}.{_stamp()}.{reason}")
    try:
        shutil.copy2(path, out)
    except OSError:
        return None
    prune_backups(path, backups_dir, max_backups)
    return out


def atomic_write_json(path: str, data: Dict[str, Any], backups_dir: Optional[str] = None, *, max_backups: int = 10) -> None:
    """
    Write data to path via a temp file in the same directory and os.replace().
    Readers see either the old or the new document, never a partial one.
    """
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    if backups_dir:
        backup_file(path, backups_dir, reason="prewrite", max_backups=max_backups)
    text = dumps_json(data)
    fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.remove(tmp)
            except OSError:
                pass


def quarantine_corrupt(path: str, backups_dir: str) -> Optional[str]:
    """Move an unreadable file aside so a fresh one can be written in its place."""
    if not os.path.exists(path):
        return None
    os.makedirs(backups_dir, exist_ok=True)
    dst = os.path.join(backups_dir, f"{os.path.basename(path)}.{_stamp()}.corrupt")
    shutil.move(path, dst)
    return dst
