"""JSON-lines transcript of dispatched commands."""

from __future__ import annotations

import datetime as _dt
import json
import threading
from pathlib import Path
from typing import Any, Dict


def now_utc() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def isoformat_utc(dt: _dt.datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


class TranscriptLogger:
    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        timestamp = now_utc().strftime("%Y%m%dT%H%M%S%fZ")
        self._path = self._root / f"session-{timestamp}.jsonl"
        self._file = self._path.open("a", encoding="utf-8")
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._file.closed

    def log(self, payload: Dict[str, Any]) -> None:
        record = dict(payload)
        record.setdefault("ts", isoformat_utc(now_utc()))
        with self._lock:
            if self._file.closed:
                return
            self._file.write(json.dumps(record, ensure_ascii=False) + "\n")
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            self._file.close()


__all__ = ["TranscriptLogger", "isoformat_utc", "now_utc"]
