"""Command registry and the handler contract shared by every built-in command."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from neuro.parser import ParseMode

if TYPE_CHECKING:  # pragma: no cover - typing only
    from neuro.context import ShellContext


# ---------------------------------------------------------------------------
# Command invocation/result types
# ---------------------------------------------------------------------------


@dataclass
class CommandInvocation:
    name: str
    options: Dict[str, str] = field(default_factory=dict)
    message: str = ""
    line: str = ""
    bracket_content: Optional[str] = None

    def option(self, key: str, default: str = "") -> str:
        return self.options.get(key, default)

    def has_option(self, key: str) -> bool:
        return key in self.options


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    status: int = 0
    audit: Dict[str, Any] = field(default_factory=dict)
    streamed: bool = False

    @property
    def ok(self) -> bool:
        return self.status == 0

    def error_message(self) -> str:
        message = self.stderr.strip()
        return message or f"command failed with status {self.status}"

    def merge(
        self,
        other: "CommandResult",
        *,
        include_stdout: bool = True,
        include_stderr: bool = True,
    ) -> None:
        if include_stdout:
            self.stdout += other.stdout
        if include_stderr:
            self.stderr += other.stderr
        self.status = other.status
        self.audit.update(other.audit)
        self.streamed = self.streamed or other.streamed


Handler = Callable[["ShellContext", CommandInvocation], CommandResult]


class DuplicateCommandError(ValueError):
    """Raised when a command name is registered twice."""


class UnknownCommandError(LookupError):
    """Raised when a command name is not present in the registry."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown command: {name}")
        self.name = name


@dataclass
class Command:
    name: str
    summary: str
    usage: str
    handler: Handler
    parse_mode: ParseMode = ParseMode.KEY_VALUE
    # control-flow commands interpolate their body when it runs, not when queued
    interpolate_message: bool = True
    long_help: Optional[str] = None
    examples: List[str] = field(default_factory=list)

    def help_text(self) -> str:
        lines = [f"{self.name} - {self.summary}", f"Usage: {self.usage}"]
        if self.long_help:
            lines.append("")
            lines.append(self.long_help)
        if self.examples:
            lines.append("")
            lines.append("Examples:")
            lines.extend(f"  {example}" for example in self.examples)
        return "\n".join(lines)


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: Dict[str, Command] = {}

    def register(self, command: Command) -> None:
        """Add ``command``; a second registration under the same name is rejected."""

        if not command.name:
            raise ValueError("command name cannot be empty")
        if command.name in self._commands:
            raise DuplicateCommandError(f"command already registered: {command.name}")
        self._commands[command.name] = command

    def get(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def resolve(self, name: str) -> Command:
        command = self._commands.get(name)
        if command is None:
            raise UnknownCommandError(name)
        return command

    def parse_mode_for(self, name: str) -> ParseMode:
        command = self._commands.get(name)
        return command.parse_mode if command else ParseMode.KEY_VALUE

    def __contains__(self, name: object) -> bool:
        return name in self._commands

    def __len__(self) -> int:
        return len(self._commands)

    def names(self) -> List[str]:
        return sorted(self._commands.keys())

    def values(self) -> Iterable[Command]:
        return self._commands.values()


def command(name: str, summary: str, usage: str, **kwargs: Any) -> Callable[[Handler], Handler]:
    parse_mode = kwargs.pop("parse_mode", ParseMode.KEY_VALUE)
    interpolate_message = kwargs.pop("interpolate_message", True)
    long_help = kwargs.pop("long_help", None)
    examples = list(kwargs.pop("examples", ()))
    if kwargs:
        raise TypeError(f"Unexpected command options: {', '.join(sorted(kwargs))}")

    def decorator(func: Handler) -> Handler:
        func.__command_definition__ = Command(  # type: ignore[attr-defined]
            name=name,
            summary=summary,
            usage=usage,
            handler=func,
            parse_mode=parse_mode,
            interpolate_message=interpolate_message,
            long_help=long_help,
            examples=examples,
        )
        return func

    return decorator


def collect_commands(namespace: Iterable[Any]) -> List[Command]:
    """Return the command definitions attached to the callables in ``namespace``."""

    return [
        obj.__command_definition__
        for obj in namespace
        if callable(obj) and hasattr(obj, "__command_definition__")
    ]


__all__ = [
    "Command",
    "CommandInvocation",
    "CommandRegistry",
    "CommandResult",
    "DuplicateCommandError",
    "Handler",
    "UnknownCommandError",
    "collect_commands",
    "command",
]
