"""Pending-work containers drained by the executor.

The stack and the queue hold tagged entries rather than plain strings so a
user line that happens to read ``ERROR_BOUNDARY_START:x`` is never mistaken
for a marker. :func:`decode_entry` and ``render()`` convert to and from the
sentinel text used for display and scripted fixtures.
"""

from __future__ import annotations

import itertools
import re
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Iterable, List, Optional, Union


class BoundaryKind(Enum):
    ERROR = "ERROR"
    SILENT = "SILENT"
    SCRIPT = "SCRIPT"


@dataclass(frozen=True)
class CommandEntry:
    line: str

    def render(self) -> str:
        return self.line


@dataclass(frozen=True)
class BoundaryStart:
    kind: BoundaryKind
    boundary_id: str

    def render(self) -> str:
        return f"{self.kind.value}_BOUNDARY_START:{self.boundary_id}"


@dataclass(frozen=True)
class BoundaryEnd:
    kind: BoundaryKind
    boundary_id: str

    def render(self) -> str:
        return f"{self.kind.value}_BOUNDARY_END:{self.boundary_id}"


StackEntry = Union[CommandEntry, BoundaryStart, BoundaryEnd]


@dataclass
class BoundaryFrame:
    """A boundary whose START has run and whose END has not."""

    kind: BoundaryKind
    boundary_id: str
    error_captured: bool = False

    def describe(self) -> str:
        suffix = " (error captured)" if self.error_captured else ""
        return f"{self.kind.value} {self.boundary_id}{suffix}"


_MARKER = re.compile(r"^(ERROR|SILENT|SCRIPT)_BOUNDARY_(START|END):(\S+)$")


def decode_entry(text: str) -> StackEntry:
    """Turn sentinel text back into a boundary entry; anything else is a command."""

    match = _MARKER.match(text.strip())
    if not match:
        return CommandEntry(text)
    kind = BoundaryKind(match.group(1))
    if match.group(2) == "START":
        return BoundaryStart(kind, match.group(3))
    return BoundaryEnd(kind, match.group(3))


def as_entry(item: Union[str, StackEntry]) -> StackEntry:
    if isinstance(item, str):
        return CommandEntry(item)
    return item


def wrap(kind: BoundaryKind, boundary_id: str, body: Iterable[Union[str, StackEntry]]) -> List[StackEntry]:
    """Return ``body`` framed by START/END markers, in run order."""

    return [BoundaryStart(kind, boundary_id), *(as_entry(item) for item in body), BoundaryEnd(kind, boundary_id)]


class ExecutionStack:
    """LIFO container; the entry meant to run first must be pushed last."""

    def __init__(self) -> None:
        self._items: List[StackEntry] = []

    def push(self, item: Union[str, StackEntry]) -> None:
        self._items.append(as_entry(item))

    def push_many(self, items: Iterable[Union[str, StackEntry]]) -> None:
        """Push ``items`` given in run order so they pop in that same order."""

        for item in reversed(list(items)):
            self.push(item)

    def pop(self) -> Optional[StackEntry]:
        if not self._items:
            return None
        return self._items.pop()

    def peek(self) -> Optional[StackEntry]:
        if not self._items:
            return None
        return self._items[-1]

    def clear(self) -> None:
        self._items.clear()

    def entries(self) -> List[StackEntry]:
        """Pending entries, next to pop first."""

        return list(reversed(self._items))

    def __len__(self) -> int:
        return len(self._items)


class ConditionalQueue:
    """FIFO staging area for bodies whose condition evaluated true."""

    def __init__(self) -> None:
        self._items: Deque[StackEntry] = deque()

    def enqueue(self, item: Union[str, StackEntry]) -> None:
        self._items.append(as_entry(item))

    def dequeue(self) -> Optional[StackEntry]:
        if not self._items:
            return None
        return self._items.popleft()

    def clear(self) -> None:
        self._items.clear()

    def entries(self) -> List[StackEntry]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


class BoundaryIdGenerator:
    """Thread-safe monotonic ids such as ``try_id_3``."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self, prefix: str) -> str:
        with self._lock:
            value = next(self._counter)
        return f"{prefix}_id_{value}"


__all__ = [
    "BoundaryEnd",
    "BoundaryFrame",
    "BoundaryIdGenerator",
    "BoundaryKind",
    "BoundaryStart",
    "CommandEntry",
    "ConditionalQueue",
    "ExecutionStack",
    "StackEntry",
    "as_entry",
    "decode_entry",
    "wrap",
]
