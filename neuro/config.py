"""Runtime configuration resolved from ``NEURO_*`` environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
VERSION = "0.1.0"
RC_FILENAME = ".neurorc"
_TRUE = {"1", "true", "yes", "on"}


def _positive_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw:
        try:
            parsed = int(raw)
            if parsed > 0:
                return parsed
        except ValueError:
            pass
    return default


def _positive_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw:
        try:
            parsed = float(raw)
            if parsed > 0:
                return parsed
        except ValueError:
            pass
    return default


@dataclass
class ShellConfig:
    default_command: str = "send"
    step_budget: int = 10000
    bash_timeout: float = 60.0
    history_limit: int = 10
    transcript_dir: Optional[Path] = None
    rc_file: Path = field(default_factory=lambda: Path.home() / RC_FILENAME)
    test_mode: bool = False
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ShellConfig":
        env = os.environ if environ is None else environ
        config = cls()
        config.default_command = env.get("NEURO_DEFAULT_COMMAND", "").strip() or config.default_command
        config.step_budget = _positive_int(env, "NEURO_STEP_BUDGET", config.step_budget)
        config.bash_timeout = _positive_float(env, "NEURO_BASH_TIMEOUT", config.bash_timeout)
        config.history_limit = _positive_int(env, "NEURO_HISTORY_LIMIT", config.history_limit)
        transcript_dir = env.get("NEURO_TRANSCRIPT_DIR")
        if transcript_dir:
            config.transcript_dir = Path(transcript_dir).expanduser()
        rc_file = env.get("NEURO_RC_FILE")
        if rc_file:
            config.rc_file = Path(rc_file).expanduser()
        config.test_mode = env.get("NEURO_TEST_MODE", "").strip().lower() in _TRUE
        level = env.get("NEURO_LOG_LEVEL", "").strip().upper()
        if level and isinstance(logging.getLevelName(level), int):
            config.log_level = level
        return config

    def with_overrides(self, **changes: object) -> "ShellConfig":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})

    def find_rc_file(self, cwd: Path) -> Optional[Path]:
        """Return ``./.neurorc`` if present, otherwise the configured rc file if it exists."""

        local = cwd / RC_FILENAME
        if local.is_file():
            return local
        if self.rc_file.is_file():
            return self.rc_file
        return None


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    kwargs: Dict[str, Any] = {"level": getattr(logging, level.upper(), logging.INFO), "format": LOG_FORMAT}
    if log_file is not None:
        kwargs["filename"] = str(log_file)
    logging.basicConfig(**kwargs)


__all__ = ["LOG_FORMAT", "RC_FILENAME", "VERSION", "ShellConfig", "configure_logging"]
