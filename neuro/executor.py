"""State machine draining the conditional queue and the execution stack.

Every pending entry is either a command line or a boundary marker. Failures
never propagate as Python exceptions between entries: each dispatch outcome is
folded into ``_status``/``_error`` and the open error boundaries decide
whether the run continues or halts.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import List, Optional

from neuro.context import ShellContext
from neuro.execution_stack import BoundaryEnd, BoundaryFrame, BoundaryKind, BoundaryStart, StackEntry
from neuro.parser import parse_line
from neuro.registry import Command, CommandInvocation, CommandResult, UnknownCommandError
from neuro.stringprocessing import is_truthy

logger = logging.getLogger("neuro.executor")

ECHO_PREFIX = "%%> "
SCRIPT_SUFFIX = ".neuro"
SCRIPT_COMMAND = "run"
UNKNOWN_COMMAND_STATUS = 127


class ExecutorState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    HALTED = "halted-on-error"


class Executor:
    def __init__(self, context: ShellContext) -> None:
        self.context = context
        self.state = ExecutorState.IDLE
        self.steps = 0
        self._lock = threading.RLock()

    @property
    def open_boundaries(self) -> List[BoundaryFrame]:
        return list(self.context.frames)

    def run(self, line: Optional[str] = None) -> CommandResult:
        """Push ``line`` (if any) and drain all pending work.

        The returned result merges the output of every dispatched command. Its
        status is the status of the halting command, the requested exit code,
        or ``0``.
        """

        with self._lock:
            if line is not None and line.strip():
                self.context.stack.push(line)
            return self._drain()

    def reset(self) -> None:
        with self._lock:
            self._stop()
            self.state = ExecutorState.IDLE

    # -------------------- main loop ---------------------------
    def _drain(self) -> CommandResult:
        ctx = self.context
        result = CommandResult(streamed=ctx.output is not None)
        self.state = ExecutorState.RUNNING
        self.steps = 0
        while len(ctx.queue) or len(ctx.stack):
            if self.steps >= ctx.config.step_budget:
                self._fail(result, CommandResult(status=1, stderr="step budget exceeded\n"))
                return result
            self.steps += 1
            entry = self._next_entry()
            if isinstance(entry, BoundaryStart):
                self._open(entry)
                continue
            if isinstance(entry, BoundaryEnd):
                self._close(entry, result)
                continue

            outcome = self._dispatch(entry.render())
            if outcome is None:
                continue
            if ctx.exit_code is not None:
                self._collect(result, outcome)
                self._stop()
                result.status = ctx.exit_code
                self.state = ExecutorState.IDLE
                return result

            if outcome.ok:
                self._collect(result, outcome)
                ctx.store.set_system("_status", "0")
                ctx.store.set_system("_error", "")
                continue

            frame = self._innermost_error_frame()
            if frame is None:
                self._fail(result, outcome)
                return result
            message = outcome.error_message()
            ctx.store.set_system("_status", "1")
            ctx.store.set_system("_error", message)
            frame.error_captured = True
            self._collect(result, outcome, include_stderr=False)
            logger.info("Error absorbed by boundary %s: %s", frame.boundary_id, message)
            ctx.queue.clear()
            self._skip_to_end(frame, result)

        if ctx.frames:
            logger.warning(
                "Discarding unclosed boundaries: %s",
                ", ".join(frame.boundary_id for frame in ctx.frames),
            )
            for frame in ctx.frames:
                ctx.script_labels.pop(frame.boundary_id, None)
            ctx.frames.clear()
        result.status = 0
        self.state = ExecutorState.IDLE
        return result

    def _next_entry(self) -> StackEntry:
        entry = self.context.queue.dequeue()
        if entry is None:
            entry = self.context.stack.pop()
        if entry is None:
            raise RuntimeError("no pending entries to run")
        return entry

    def _collect(self, result: CommandResult, outcome: CommandResult, *, include_stderr: bool = True) -> None:
        """Merge ``outcome`` into the run result; stderr is also written live when kept."""

        result.merge(outcome, include_stdout=not self.context.silenced(), include_stderr=include_stderr)
        if include_stderr:
            self.context.write_errors(outcome.stderr)

    def _fail(self, result: CommandResult, outcome: CommandResult) -> None:
        message = outcome.error_message()
        self.context.store.set_system("_status", "1")
        self.context.store.set_system("_error", message)
        self._collect(result, outcome)
        logger.warning("Run halted: %s", message)
        self._stop()
        self.state = ExecutorState.HALTED

    def _stop(self) -> None:
        self.context.stack.clear()
        self.context.queue.clear()
        self.context.script_labels.clear()
        self.context.frames.clear()

    # -------------------- boundaries --------------------------
    def _innermost_error_frame(self) -> Optional[BoundaryFrame]:
        for frame in reversed(self.context.frames):
            if frame.kind is BoundaryKind.ERROR:
                return frame
        return None

    def _open(self, entry: BoundaryStart) -> None:
        store = self.context.store
        if entry.kind is BoundaryKind.ERROR:
            store.set_system("_last_status", store.value("_status"))
            store.set_system("_last_error", store.value("_error"))
        self.context.frames.append(BoundaryFrame(entry.kind, entry.boundary_id))

    def _pop_frame(self, entry: BoundaryEnd) -> Optional[BoundaryFrame]:
        frames = self.context.frames
        for index in range(len(frames) - 1, -1, -1):
            frame = frames[index]
            if frame.boundary_id == entry.boundary_id and frame.kind is entry.kind:
                abandoned = frames[index + 1:]
                if abandoned:
                    logger.warning(
                        "Closing %s with unclosed inner boundaries: %s",
                        entry.boundary_id,
                        ", ".join(inner.boundary_id for inner in abandoned),
                    )
                del frames[index:]
                return frame
        logger.warning("Ignoring end marker without start: %s", entry.render())
        return None

    def _close(self, entry: BoundaryEnd, result: CommandResult) -> None:
        frame = self._pop_frame(entry)
        if frame is None:
            return
        store = self.context.store
        if frame.kind is BoundaryKind.ERROR and not frame.error_captured:
            store.set_system("_status", "0")
            store.set_system("_error", "")
        elif frame.kind is BoundaryKind.SCRIPT:
            path = self.context.script_labels.pop(frame.boundary_id, "")
            store.set_system("#last_script", path)
            result.audit.setdefault("scripts", []).append(path)
            logger.info("Script %s executed successfully", path)

    def _skip_to_end(self, frame: BoundaryFrame, result: CommandResult) -> None:
        """Discard stack entries until ``frame``'s end marker, keeping nested markers balanced."""

        stack = self.context.stack
        while True:
            entry = stack.pop()
            if entry is None:
                logger.warning("No end marker found for boundary %s", frame.boundary_id)
                return
            if isinstance(entry, BoundaryStart):
                self.context.frames.append(BoundaryFrame(entry.kind, entry.boundary_id))
            elif isinstance(entry, BoundaryEnd):
                if entry.boundary_id == frame.boundary_id and entry.kind is frame.kind:
                    self._close(entry, result)
                    return
                inner = self._pop_frame(entry)
                if inner is not None and inner.kind is BoundaryKind.SCRIPT:
                    self.context.script_labels.pop(inner.boundary_id, None)
            else:
                logger.debug("Skipping %s", entry.render())

    # -------------------- dispatch ----------------------------
    def _dispatch(self, line: str) -> Optional[CommandResult]:
        text = line.strip()
        if not text:
            return None
        ctx = self.context
        descriptor = parse_line(text, ctx.registry.parse_mode_for, ctx.config.default_command)
        if descriptor is None:
            outcome = CommandResult(status=1, stderr=f"failed to parse command: {text}\n")
            self._record(text, outcome)
            return outcome

        options = {key: ctx.interpolate(value) for key, value in descriptor.options.items()}
        try:
            command = ctx.registry.resolve(descriptor.name)
            message = descriptor.message
            if command.interpolate_message:
                message = ctx.interpolate(message)
        except UnknownCommandError as exc:
            script = self._script_command(descriptor.name)
            if script is None:
                outcome = CommandResult(status=UNKNOWN_COMMAND_STATUS, stderr=f"{exc}\n")
                self._record(text, outcome)
                return outcome
            command = script
            message = ctx.interpolate(f"{descriptor.name} {descriptor.message}".strip())

        invocation = CommandInvocation(
            name=command.name,
            options=options,
            message=message,
            line=text,
            bracket_content=descriptor.bracket_content,
        )
        prefix = ""
        if is_truthy(ctx.store.value("_echo_command", "false")):
            prefix = f"{ECHO_PREFIX}{text}\n"
            ctx.write_output(prefix)
        logger.debug("Dispatching %s", text)
        try:
            outcome = command.handler(ctx, invocation)
        except Exception as exc:
            logger.exception("Command %s failed unexpectedly", command.name)
            outcome = CommandResult(status=1, stderr=f"{command.name}: {exc}\n")
        if not outcome.streamed:
            ctx.write_output(outcome.stdout)
        outcome.stdout = prefix + outcome.stdout
        self._record(text, outcome, command=command.name)
        return outcome

    def _script_command(self, name: str) -> Optional[Command]:
        if not name.endswith(SCRIPT_SUFFIX):
            return None
        return self.context.registry.get(SCRIPT_COMMAND)

    def _record(self, line: str, outcome: CommandResult, *, command: str = "") -> None:
        transcript = self.context.transcript
        if transcript is None:
            return
        transcript.log(
            {
                "command": command,
                "line": line,
                "status": outcome.status,
                "stdout": outcome.stdout,
                "stderr": outcome.stderr,
            }
        )


__all__ = ["BoundaryFrame", "ECHO_PREFIX", "Executor", "ExecutorState", "UNKNOWN_COMMAND_STATUS"]
