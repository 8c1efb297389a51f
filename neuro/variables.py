"""Variable store shared by the executor and every command handler.

A single mapping holds all namespaces; the first character of a name selects
the namespace:

``name``  user variable
``_name`` system output (``_output``, ``_status``, ``_error``, script parameters)
``#name`` session metadata
``@name`` environment-like live values computed on read
``1``     positional message history (``1`` is the latest message)
"""

from __future__ import annotations

import datetime as _dt
import getpass
import os
import re
import sys
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

SYSTEM_PREFIX = "_"
METADATA_PREFIX = "#"
ENV_PREFIX = "@"
RESERVED_PREFIXES = (SYSTEM_PREFIX, METADATA_PREFIX, ENV_PREFIX)

# system variables users may still assign with \set
USER_WRITABLE_SYSTEM = frozenset({"_echo_command"})

TEST_SESSION_ID = "test-session"
_TEST_DATE = "2024-01-01"
_TEST_TIME = "12:00:00"
_INVALID_NAME = re.compile(r"[\s${}\[\]=,]")


class VariableError(ValueError):
    """Raised when a variable name is invalid or reserved for the system."""


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on host passwd
        return os.environ.get("USER", "")


def is_positional(name: str) -> bool:
    return name.isdigit()


def is_system_name(name: str) -> bool:
    return name.startswith(RESERVED_PREFIXES) or is_positional(name)


def validate_user_name(name: str) -> None:
    if not name:
        raise VariableError("variable name cannot be empty")
    if _INVALID_NAME.search(name):
        raise VariableError(f"invalid variable name: {name}")
    if name in USER_WRITABLE_SYSTEM:
        return
    if is_positional(name):
        raise VariableError(f"positional variable {name} is read-only")
    if name.startswith(RESERVED_PREFIXES):
        raise VariableError(f"cannot set system variable: {name}")


class VariableStore:
    def __init__(self, *, test_mode: bool = False, session_id: Optional[str] = None) -> None:
        self.test_mode = test_mode
        self._values: Dict[str, str] = {}
        self._history_size = 0
        self._script_arg_count = 0
        self._session_id = session_id or (TEST_SESSION_ID if test_mode else uuid.uuid4().hex)
        self._live: Dict[str, Callable[[], str]] = {
            "@pwd": os.getcwd,
            "@user": _current_user,
            "@home": lambda: str(Path.home()),
            "@date": self._today,
            "@time": self._now,
            "@os": lambda: sys.platform,
        }
        self._seed()

    def _seed(self) -> None:
        self._values["#session_id"] = self._session_id
        self._values["#test_mode"] = "true" if self.test_mode else "false"
        self._values["#message_count"] = "0"

    def _today(self) -> str:
        if self.test_mode:
            return _TEST_DATE
        return _dt.date.today().isoformat()

    def _now(self) -> str:
        if self.test_mode:
            return _TEST_TIME
        return _dt.datetime.now().strftime("%H:%M:%S")

    # -------------------- reads ------------------------------
    def get(self, name: str) -> Tuple[str, bool]:
        if name in self._values:
            return self._values[name], True
        live = self._live.get(name)
        if live is not None:
            return live(), True
        return "", False

    def value(self, name: str, default: str = "") -> str:
        value, found = self.get(name)
        return value if found else default

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name)[1]

    def all(self) -> Dict[str, str]:
        """Snapshot of stored variables plus the current live values."""

        snapshot = {name: live() for name, live in self._live.items()}
        snapshot.update(self._values)
        return dict(sorted(snapshot.items()))

    def user_variables(self) -> Dict[str, str]:
        return {name: value for name, value in self.all().items() if not is_system_name(name)}

    def system_variables(self) -> Dict[str, str]:
        return {name: value for name, value in self.all().items() if is_system_name(name)}

    # -------------------- writes -----------------------------
    def set(self, name: str, value: str) -> None:
        """Assign a user variable, rejecting reserved names with :class:`VariableError`."""

        validate_user_name(name)
        self._values[name] = str(value)

    def set_system(self, name: str, value: str) -> None:
        """Assign any variable, including reserved namespaces."""

        if not name:
            raise VariableError("variable name cannot be empty")
        self._values[name] = str(value)

    def unset(self, name: str) -> bool:
        return self._values.pop(name, None) is not None

    def update_message_history(self, messages: Sequence[str], limit: int = 10) -> None:
        """Refresh positional variables so ``1`` is the newest of ``messages``."""

        for index in range(1, self._history_size + 1):
            self._values.pop(str(index), None)
        recent = list(messages)[-limit:] if limit > 0 else []
        for offset, content in enumerate(reversed(recent), start=1):
            self._values[str(offset)] = content
        self._history_size = len(recent)
        self._values["#message_count"] = str(len(messages))

    def set_script_parameters(self, path: str, args: Sequence[str], named: Dict[str, str]) -> None:
        """Expose script arguments as ``_0``, ``_1``.., ``_*`` and ``_@``.

        Positional values left over from a previous script are removed first.
        """

        for index in range(1, self._script_arg_count + 1):
            self._values.pop(f"_{index}", None)
        self._values["_0"] = str(path)
        for index, arg in enumerate(args, start=1):
            self._values[f"_{index}"] = str(arg)
        self._script_arg_count = len(args)
        self._values["_*"] = " ".join(args)
        self._values["_@"] = ",".join(f"{key}={value}" for key, value in named.items())

    def reset(self) -> None:
        """Drop every stored variable; session metadata is seeded again."""

        self._values.clear()
        self._history_size = 0
        self._script_arg_count = 0
        self._seed()


__all__ = [
    "ENV_PREFIX",
    "METADATA_PREFIX",
    "RESERVED_PREFIXES",
    "SYSTEM_PREFIX",
    "TEST_SESSION_ID",
    "USER_WRITABLE_SYSTEM",
    "VariableError",
    "VariableStore",
    "is_positional",
    "is_system_name",
    "validate_user_name",
]
