"""Shared text helpers used by the parser, the script loader and built-in commands."""

from __future__ import annotations

from typing import Iterable, List

_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "\\": "\\",
    '"': '"',
    "'": "'",
}

_TRUE_VALUES = {"true", "1", "yes", "on", "enabled"}
_FALSE_VALUES = {"false", "0", "no", "off", "disabled", ""}

CONTINUATION_MARKER = "..."
COMMENT_PREFIX = "%%"


def interpret_escape_sequences(text: str) -> str:
    """Replace ``\\n``, ``\\t``, ``\\r``, ``\\\\``, ``\\"`` and ``\\'`` in a single pass.

    Unknown sequences are kept verbatim so Windows paths and regular
    expressions survive untouched. A trailing lone backslash is kept as well.
    """

    if "\\" not in text:
        return text
    out: List[str] = []
    idx = 0
    length = len(text)
    while idx < length:
        char = text[idx]
        if char == "\\" and idx + 1 < length and text[idx + 1] in _ESCAPES:
            out.append(_ESCAPES[text[idx + 1]])
            idx += 2
            continue
        out.append(char)
        idx += 1
    return "".join(out)


def is_truthy(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return True


def join_continuation_lines(lines: Iterable[str]) -> List[str]:
    """Join lines ending with ``...`` onto the line that follows them."""

    joined: List[str] = []
    pending: List[str] = []
    for raw in lines:
        line = raw.rstrip("\r\n")
        stripped = line.rstrip()
        if stripped.endswith(CONTINUATION_MARKER):
            pending.append(stripped[: -len(CONTINUATION_MARKER)].strip())
            continue
        if pending:
            pending.append(line.strip())
            joined.append(" ".join(part for part in pending if part))
            pending = []
            continue
        joined.append(line)
    if pending:
        joined.append(" ".join(part for part in pending if part))
    return joined


def script_commands(lines: Iterable[str]) -> List[str]:
    """Return the executable lines of a script, skipping blanks and ``%%`` comments."""

    commands: List[str] = []
    for line in join_continuation_lines(lines):
        stripped = line.strip()
        if not stripped or stripped.startswith(COMMENT_PREFIX):
            continue
        commands.append(stripped)
    return commands


__all__ = [
    "COMMENT_PREFIX",
    "CONTINUATION_MARKER",
    "interpret_escape_sequences",
    "is_truthy",
    "join_continuation_lines",
    "script_commands",
]
