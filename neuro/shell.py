#!/usr/bin/env python3
"""Interactive neuro shell and command-line entry point."""

from __future__ import annotations

import argparse
import logging
import readline
import shlex
import sys
from pathlib import Path
from typing import Optional, Sequence, TextIO

from neuro.builtins import register_builtins
from neuro.config import VERSION, ShellConfig, configure_logging
from neuro.context import ShellContext
from neuro.executor import Executor, ExecutorState
from neuro.registry import CommandRegistry, CommandResult

HISTORY_FILENAME = ".neuro_history"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

logger = logging.getLogger("neuro.shell")


def build_context(
    config: Optional[ShellConfig] = None,
    *,
    cwd: Optional[Path] = None,
    output: Optional[TextIO] = None,
    errors: Optional[TextIO] = None,
) -> ShellContext:
    registry = register_builtins(CommandRegistry())
    return ShellContext(
        config or ShellConfig.from_env(),
        registry=registry,
        cwd=cwd,
        output=output,
        errors=errors,
    )


def _emit(result: CommandResult) -> None:
    if result.stdout and not result.streamed:
        print(result.stdout, end="")
    if result.stderr and not result.streamed:
        print(result.stderr, end="", file=sys.stderr)


class Completer:
    def __init__(self, registry: CommandRegistry) -> None:
        self.registry = registry

    def complete(self, text: str, state: int) -> Optional[str]:
        buffer = readline.get_line_buffer().lstrip()
        options = []
        # readline treats the backslash as a delimiter, so ``text`` is the bare name
        if buffer.startswith("\\") and not any(ch.isspace() or ch == "[" for ch in buffer):
            options = [name for name in self.registry.names() if name.startswith(text)]
        if state < len(options):
            return options[state]
        return None


class Shell:
    def __init__(self, context: ShellContext, *, history_path: Optional[Path] = None) -> None:
        self.context = context
        self.executor = Executor(context)
        self.history_path = history_path or Path.home() / HISTORY_FILENAME
        self.completer = Completer(context.registry)

    def execute(self, line: str) -> CommandResult:
        return self.executor.run(line)

    def run_script(self, path: Path) -> CommandResult:
        return self.executor.run(f"\\run {shlex.quote(str(path))}")

    def load_rc(self, rc_file: Optional[Path]) -> Optional[CommandResult]:
        if rc_file is None:
            return None
        logger.info("Loading rc file %s", rc_file)
        result = self.run_script(rc_file)
        if self.executor.state is ExecutorState.HALTED:
            logger.warning("rc file %s stopped with an error", rc_file)
        return result

    def prompt(self) -> str:
        if self.context.store.value("_status", "0") not in ("", "0"):
            return "neuro!> "
        return "neuro> "

    def _enable_readline(self) -> None:
        readline.set_completer(self.completer.complete)
        readline.parse_and_bind("tab: complete")
        try:
            readline.read_history_file(self.history_path)
        except (FileNotFoundError, OSError):
            pass

    def run(self) -> int:
        self._enable_readline()
        try:
            while self.context.exit_code is None:
                try:
                    line = input(self.prompt())
                except EOFError:
                    print()
                    break
                except KeyboardInterrupt:
                    print()
                    continue
                if not line.strip():
                    continue
                _emit(self.execute(line))
        finally:
            try:
                readline.write_history_file(self.history_path)
            except OSError as exc:
                logger.warning("Failed to write history file: %s", exc)
            self.context.close()
        return self.context.exit_code or 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[Sequence[str]] = None) -> int:
    args_list = list(sys.argv[1:] if argv is None else argv)
    parser = argparse.ArgumentParser(prog="neuro", description="Interactive neuro command shell")
    parser.add_argument("-c", "--command", dest="command_text", metavar="TEXT", help="Execute a single line and exit")
    parser.add_argument("--script", dest="script", metavar="PATH", help="Run commands from a script file")
    parser.add_argument("--no-rc", action="store_true", help="Skip the .neurorc startup script")
    parser.add_argument("--rc-file", type=Path, metavar="PATH", help="Startup script to use instead of ~/.neurorc")
    parser.add_argument("--log-level", choices=LOG_LEVELS, type=str.upper, help="Logging verbosity")
    parser.add_argument("--log-file", type=Path, metavar="PATH", help="Write logs to a file")
    parser.add_argument("--test-mode", action="store_true", help="Use fixed session id, date and time values")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Line to execute, or 'batch PATH'")
    parsed = parser.parse_args(args_list)

    script: Optional[str] = parsed.script
    words = list(parsed.command)
    if words and words[0] == "batch":
        if len(words) != 2:
            parser.error("batch expects exactly one script path")
        script = words[1]
        words = []

    config = ShellConfig.from_env()
    config = config.with_overrides(
        rc_file=parsed.rc_file,
        log_level=parsed.log_level,
        test_mode=True if parsed.test_mode else None,
    )
    configure_logging(config.log_level, parsed.log_file)
    shell = Shell(build_context(config, output=sys.stdout, errors=sys.stderr))
    context = shell.context

    if not parsed.no_rc:
        rc_result = shell.load_rc(config.find_rc_file(context.cwd))
        if rc_result is not None:
            _emit(rc_result)
        if context.exit_code is not None:
            context.close()
            return context.exit_code

    line = parsed.command_text or " ".join(words)
    if script or line:
        try:
            result = shell.run_script(Path(script)) if script else shell.execute(line)
            _emit(result)
            return result.status
        finally:
            context.close()

    return shell.run()


if __name__ == "__main__":
    sys.exit(main())
