"""``${...}`` placeholder expansion against a :class:`VariableStore`."""

from __future__ import annotations

from typing import List, Tuple

from neuro.variables import VariableStore

PLACEHOLDER_OPEN = "${"
PLACEHOLDER_CLOSE = "}"

# ${${x}} resolves; one level more resolves to ""
MAX_NESTING_DEPTH = 2


def has_variables(text: str) -> bool:
    return PLACEHOLDER_OPEN in text


def _closing_brace(text: str, start: int) -> int:
    """Return the index of the ``}`` closing the placeholder opened at ``start``."""

    depth = 0
    index = start
    while index < len(text):
        if text.startswith(PLACEHOLDER_OPEN, index):
            depth += 1
            index += len(PLACEHOLDER_OPEN)
            continue
        if text[index] == PLACEHOLDER_CLOSE:
            depth -= 1
            if depth == 0:
                return index
        index += 1
    return -1


class Interpolator:
    """Expands placeholders left to right without ever failing.

    Missing names become the empty string. Values inserted by a lookup are not
    scanned again, so a value containing ``${...}`` is emitted literally and a
    self-referencing variable cannot loop.
    """

    def __init__(self, store: VariableStore, *, max_depth: int = MAX_NESTING_DEPTH) -> None:
        self.store = store
        self.max_depth = max_depth

    def interpolate(self, text: str) -> str:
        if not has_variables(text):
            return text
        expanded, _overflow = self._expand(text, 1)
        return expanded

    def _expand(self, text: str, level: int) -> Tuple[str, bool]:
        out: List[str] = []
        overflow = False
        index = 0
        while True:
            start = text.find(PLACEHOLDER_OPEN, index)
            if start < 0:
                out.append(text[index:])
                break
            end = _closing_brace(text, start)
            if end < 0:
                # unterminated: keep the opener literally and keep scanning
                out.append(text[index:start + len(PLACEHOLDER_OPEN)])
                index = start + len(PLACEHOLDER_OPEN)
                continue
            out.append(text[index:start])
            value, too_deep = self._resolve(text[start + len(PLACEHOLDER_OPEN):end], level)
            out.append(value)
            overflow = overflow or too_deep
            index = end + len(PLACEHOLDER_CLOSE)
        return "".join(out), overflow

    def _resolve(self, inner: str, level: int) -> Tuple[str, bool]:
        if level > self.max_depth:
            return "", True
        name = inner
        if has_variables(inner):
            name, overflow = self._expand(inner, level + 1)
            if overflow:
                return "", True
        if not name:
            return "", False
        value, _found = self.store.get(name)
        return value, False


__all__ = ["Interpolator", "MAX_NESTING_DEPTH", "has_variables"]
