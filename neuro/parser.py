"""Line parser producing command descriptors from backslash command syntax.

Accepted forms::

    \\name
    \\name message tail
    \\name[key=value, other="quoted, text", flag] message tail
    plain text without a leading backslash

Plain text is routed to the default command (normally ``send``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

COMMAND_PREFIX = "\\"
_QUOTES = ("\"", "'")
# a quote only opens a quoted value right after one of these
_QUOTE_OPENERS = ("[", ",", "=", " ", "\t")


class ParseMode(Enum):
    RAW = "raw"
    KEY_VALUE = "key_value"


@dataclass(frozen=True)
class CommandDescriptor:
    """Structured representation of a single input line."""

    name: str
    parse_mode: ParseMode
    bracket_content: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)
    message: str = ""
    line: str = ""

    def option(self, key: str, default: str = "") -> str:
        return self.options.get(key, default)

    def has_option(self, key: str) -> bool:
        return key in self.options

    def render(self) -> str:
        """Rebuild a canonical command line for this descriptor."""

        text = COMMAND_PREFIX + self.name
        if self.parse_mode is ParseMode.KEY_VALUE and self.options:
            parts = []
            for key, value in self.options.items():
                parts.append(key if value == "" else f"{key}={_quote_value(value)}")
            text += "[" + ", ".join(parts) + "]"
        elif self.bracket_content is not None:
            text += "[" + self.bracket_content + "]"
        if self.message:
            text += " " + self.message
        return text


def _quote_value(value: str) -> str:
    """Quote ``value`` so it survives a round trip through the bracket parser.

    Quoted values have no escape sequences, so the quote character must not
    occur inside the value.
    """

    needs_quotes = any(ch in value for ch in ", =[]\t") or value[:1] in _QUOTES
    if not needs_quotes:
        return value
    for quote in _QUOTES:
        if quote not in value:
            return f"{quote}{value}{quote}"
    raise ValueError(f"option value cannot be quoted: {value!r}")


ModeLookup = Callable[[str], ParseMode]


def _default_mode(_name: str) -> ParseMode:
    return ParseMode.KEY_VALUE


def _opens_quote(text: str, index: int) -> bool:
    return text[index] in _QUOTES and (index == 0 or text[index - 1] in _QUOTE_OPENERS)


def _matching_bracket(text: str) -> int:
    """Return the index of the ``]`` closing ``text[0]`` or ``-1`` when unbalanced."""

    depth = 0
    quote: Optional[str] = None
    for index, char in enumerate(text):
        if quote:
            if char == quote:
                quote = None
            continue
        if _opens_quote(text, index):
            quote = char
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return index
    return -1


def split_by_comma(content: str) -> List[str]:
    """Split ``content`` on top-level commas, honoring quotes and nested brackets."""

    parts: List[str] = []
    current: List[str] = []
    depth = 0
    quote: Optional[str] = None
    for index, char in enumerate(content):
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if _opens_quote(content, index):
            quote = char
        elif char == "[":
            depth += 1
        elif char == "]" and depth > 0:
            depth -= 1
        elif char == "," and depth == 0:
            part = "".join(current).strip()
            if part:
                parts.append(part)
            current = []
            continue
        current.append(char)
    part = "".join(current).strip()
    if part:
        parts.append(part)
    return parts


def unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
        return value[1:-1]
    return value


def parse_key_value_options(content: str) -> Dict[str, str]:
    """Decompose bracket content into options; bare tokens become empty-valued flags."""

    options: Dict[str, str] = {}
    for token in split_by_comma(content):
        if unquote(token) != token:
            options[unquote(token)] = ""
        elif "=" in token:
            key, value = token.split("=", 1)
            key = key.strip()
            if not key:
                continue
            options[key] = unquote(value.strip())
        else:
            options[token] = ""
    return options


def parse_array_value(value: str) -> List[str]:
    """Parse ``"[a, b, 'c d']"`` style values; a plain value becomes a one-item list."""

    text = value.strip()
    if text.startswith("[") and text.endswith("]"):
        return [unquote(item) for item in split_by_comma(text[1:-1])]
    if not text:
        return []
    return [unquote(text)]


def parse_line(
    line: str,
    mode_for: Optional[ModeLookup] = None,
    default_command: str = "send",
) -> Optional[CommandDescriptor]:
    """Parse ``line`` into a descriptor, or return ``None`` when the syntax is malformed.

    ``mode_for`` maps a command name to its declared parse mode; unknown
    commands should map to :attr:`ParseMode.KEY_VALUE`.
    """

    lookup = mode_for or _default_mode
    text = line.strip()
    if not text.startswith(COMMAND_PREFIX):
        return CommandDescriptor(
            name=default_command,
            parse_mode=lookup(default_command),
            message=text,
            line=line,
        )

    body = text[len(COMMAND_PREFIX):]
    end = 0
    while end < len(body) and body[end] != "[" and not body[end].isspace():
        end += 1
    name = body[:end]
    rest = body[end:]
    if not name:
        return CommandDescriptor(
            name=default_command,
            parse_mode=lookup(default_command),
            message=rest.strip(),
            line=line,
        )

    mode = lookup(name)
    bracket_content: Optional[str] = None
    if rest.startswith("["):
        close = _matching_bracket(rest)
        if close < 0:
            return None
        bracket_content = rest[1:close]
        message = rest[close + 1:].strip()
    else:
        message = rest[1:] if rest[:1].isspace() else rest
        if mode is ParseMode.KEY_VALUE:
            message = message.strip()

    options: Dict[str, str] = {}
    if mode is ParseMode.KEY_VALUE and bracket_content is not None:
        options = parse_key_value_options(bracket_content)
    return CommandDescriptor(
        name=name,
        parse_mode=mode,
        bracket_content=bracket_content,
        options=options,
        message=message,
        line=line,
    )


__all__ = [
    "COMMAND_PREFIX",
    "CommandDescriptor",
    "ModeLookup",
    "ParseMode",
    "parse_array_value",
    "parse_key_value_options",
    "parse_line",
    "split_by_comma",
    "unquote",
]
