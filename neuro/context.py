"""Explicit per-session composition of the interpreter's collaborators."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from neuro.chat import ChatSession, ChatSessionManager, DeterministicChatBackend
from neuro.config import ShellConfig
from neuro.execution_stack import (
    BoundaryFrame,
    BoundaryIdGenerator,
    BoundaryKind,
    ConditionalQueue,
    ExecutionStack,
)
from neuro.interpolation import Interpolator
from neuro.registry import CommandRegistry
from neuro.transcript import TranscriptLogger
from neuro.variables import VariableStore


class ShellContext:
    """Everything a handler may touch during one interactive session.

    A context is passed explicitly to the executor and to every handler, so two
    sessions in the same process never share variables or pending work.

    When ``output``/``errors`` are given, command output is written to them as
    it is produced and run results are marked ``streamed``.
    """

    def __init__(
        self,
        config: Optional[ShellConfig] = None,
        *,
        registry: Optional[CommandRegistry] = None,
        backend: Optional[DeterministicChatBackend] = None,
        cwd: Optional[Path] = None,
        output: Optional[TextIO] = None,
        errors: Optional[TextIO] = None,
    ) -> None:
        self.config = config or ShellConfig()
        self.store = VariableStore(test_mode=self.config.test_mode)
        self.interpolator = Interpolator(self.store)
        self.stack = ExecutionStack()
        self.queue = ConditionalQueue()
        self.ids = BoundaryIdGenerator()
        # boundaries whose START has run, innermost last
        self.frames: List[BoundaryFrame] = []
        self.registry = registry if registry is not None else CommandRegistry()
        self.sessions = ChatSessionManager()
        self.backend = backend or DeterministicChatBackend()
        self.cwd = (cwd or Path.cwd()).resolve()
        self.output = output
        self.errors = errors
        self.logger = logging.getLogger("neuro.shell")
        self.transcript: Optional[TranscriptLogger] = None
        if self.config.transcript_dir is not None:
            self.transcript = TranscriptLogger(self.config.transcript_dir)
        # script boundary id -> script path, read when the boundary closes
        self.script_labels: Dict[str, str] = {}
        self.exit_code: Optional[int] = None

    @property
    def chat(self) -> ChatSession:
        """The active chat session, created on first use."""

        return self.sessions.current()

    def interpolate(self, text: str) -> str:
        return self.interpolator.interpolate(text)

    # -------------------- output ------------------------------
    def silenced(self) -> bool:
        return any(frame.kind is BoundaryKind.SILENT for frame in self.frames)

    @property
    def streaming(self) -> bool:
        return self.output is not None and not self.silenced()

    def write_output(self, text: str) -> None:
        if text and self.output is not None and not self.silenced():
            self.output.write(text)
            self.output.flush()

    def write_errors(self, text: str) -> None:
        if text and self.errors is not None:
            self.errors.write(text)
            self.errors.flush()

    # -------------------- lifecycle ---------------------------
    def request_exit(self, code: int) -> None:
        self.exit_code = code

    def sync_session_variables(self) -> None:
        """Mirror the active chat session into ``#`` metadata and history."""

        session = self.sessions.active
        if session is None:
            for name in ("#session_name", "#active_session_id", "#active_session_name"):
                self.store.set_system(name, "")
            self.store.update_message_history([], self.config.history_limit)
            return
        self.store.set_system("#session_name", session.name)
        self.store.set_system("#active_session_id", session.session_id)
        self.store.set_system("#active_session_name", session.name)
        self.store.update_message_history(session.contents(), self.config.history_limit)

    def reset_session(self) -> None:
        """Clear variables, chat sessions and pending work."""

        self.store.reset()
        self.sessions.reset()
        self.stack.clear()
        self.queue.clear()
        self.frames.clear()
        self.script_labels.clear()
        self.logger.info("Session reset")

    def close(self) -> None:
        if self.transcript is not None:
            self.transcript.close()


__all__ = ["ShellContext"]
