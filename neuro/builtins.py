"""Built-in commands registered into every interactive session."""

from __future__ import annotations

import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any, Dict, List

from neuro.chat import ChatBackendError, ChatSession, ChatSessionError
from neuro.config import VERSION
from neuro.context import ShellContext
from neuro.execution_stack import BoundaryKind, wrap
from neuro.parser import ParseMode, unquote
from neuro.registry import (
    CommandInvocation,
    CommandRegistry,
    CommandResult,
    collect_commands,
    command,
)
from neuro.stringprocessing import interpret_escape_sequences, is_truthy, script_commands
from neuro.variables import VariableError, validate_user_name

MAX_CONDITION_LENGTH = 200
SCRIPT_SUFFIX = ".neuro"


class ScriptError(RuntimeError):
    """Raised when a script path cannot be resolved or is not allowed."""


def _usage_error(message: str) -> CommandResult:
    return CommandResult(status=1, stderr=message + "\n")


def _flag(invocation: CommandInvocation, key: str) -> bool:
    if not invocation.has_option(key):
        return False
    value = invocation.option(key)
    return value == "" or is_truthy(value)


def _assign(ctx: ShellContext, name: str, value: str) -> None:
    """Store ``value`` under ``name``; ``_`` targets bypass user validation."""

    if name.startswith("_"):
        ctx.store.set_system(name, value)
    else:
        ctx.store.set(name, value)


def _assignments(invocation: CommandInvocation) -> Dict[str, str]:
    """Collect ``[a=1, b=2]``, ``[name] value`` or ``name value`` assignments."""

    options = dict(invocation.options)
    message = invocation.message.strip()
    if len(options) == 1 and message:
        name, value = next(iter(options.items()))
        if value == "":
            return {name: message}
    if options:
        return options
    if not message:
        return {}
    name, _, value = message.partition(" ")
    return {name: value.strip()}


# -------------------- chat commands -----------------------


@command(
    name="send",
    summary="Send a message to the chat backend",
    usage="\\send <message>",
    parse_mode=ParseMode.RAW,
    long_help="Plain text typed without a leading backslash is routed here.",
)
def send_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    text = invocation.message.strip()
    if not text:
        return _usage_error("Usage: \\send <message>")
    session = ctx.chat
    session.add("user", text)
    streamed = ctx.streaming
    try:
        response = ctx.backend.complete(session.messages, on_chunk=ctx.write_output if streamed else None)
    except ChatBackendError as exc:
        session.messages.pop()
        return CommandResult(status=1, stderr=f"send: {exc}\n")
    if streamed:
        ctx.write_output("\n")
    session.add("assistant", response.completion)
    ctx.sync_session_variables()
    ctx.store.set_system("_output", response.completion)
    audit: Dict[str, Any] = {"model": ctx.backend.model, "session": session.name}
    audit.update(response.to_metadata())
    return CommandResult(stdout=response.completion + "\n", audit=audit, streamed=streamed)


@command(
    name="session-reset",
    summary="Clear variables, chat history and pending commands",
    usage="\\session-reset",
    parse_mode=ParseMode.RAW,
)
def session_reset_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    ctx.reset_session()
    return CommandResult(stdout="Session reset\n")


def _session_line(session: ChatSession, active: bool) -> str:
    count = len(session.messages)
    noun = "message" if count == 1 else "messages"
    status = ", active" if active else ""
    created = session.created_at.strftime("%Y-%m-%d %H:%M")
    return f"  {session.name}    (ID: {session.short_id}{status}, {count} {noun}, created: {created})"


def _find_session(ctx: ShellContext, invocation: CommandInvocation, text: str) -> ChatSession:
    return ctx.sessions.find(text, by_id=_flag(invocation, "id"))


def _report(ctx: ShellContext, message: str) -> CommandResult:
    ctx.store.set_system("_output", message)
    return CommandResult(stdout=message + "\n")


@command(
    name="session-new",
    summary="Create a chat session and make it active",
    usage="\\session-new[system=prompt] [name]",
    long_help="Without a name the session is called 'Session N' with the first free N.",
    examples=["\\session-new work", "\\session-new[system=You are terse] review"],
)
def session_new_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    try:
        name = unquote(invocation.message.strip())
        session = ctx.sessions.create(name, system_prompt=invocation.option("system"))
    except ChatSessionError as exc:
        return _usage_error(f"session-new: {exc}")
    ctx.sync_session_variables()
    return _report(ctx, f"Created session '{session.name}' (ID: {session.short_id})")


@command(
    name="session-list",
    summary="List chat sessions",
    usage="\\session-list[sort=created|name|updated, filter=all|active]",
)
def session_list_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    filter_by = invocation.option("filter", "all") or "all"
    if filter_by not in ("all", "active"):
        return _usage_error(f"session-list: invalid filter option '{filter_by}'; expected all or active")
    try:
        sessions = ctx.sessions.list(invocation.option("sort", "created") or "created")
    except ChatSessionError as exc:
        return _usage_error(f"session-list: {exc}")
    active = ctx.sessions.active
    if filter_by == "active":
        sessions = [session for session in sessions if session is active]
    if not sessions:
        return _report(ctx, "No sessions found")
    lines = [f"Sessions ({len(sessions)} total):"]
    lines.extend(_session_line(session, session is active) for session in sessions)
    return _report(ctx, "\n".join(lines))


@command(
    name="session-activate",
    summary="Make a chat session active",
    usage="\\session-activate[id] [name or id prefix]",
    long_help=(
        "Names match exactly first, then by substring; with [id] the text is an id prefix. "
        "Without text the active session is shown, or the most recently updated one is activated."
    ),
)
def session_activate_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    text = invocation.message.strip()
    if not text:
        active = ctx.sessions.active
        if active is not None:
            return _report(ctx, f"Active session: {active.name} (ID: {active.short_id})")
        recent = ctx.sessions.list("updated")
        if not recent:
            return _usage_error("session-activate: no sessions found; create one with \\session-new")
        session = recent[0]
    else:
        try:
            session = _find_session(ctx, invocation, text)
        except ChatSessionError as exc:
            return _usage_error(f"session-activate: {exc}")
    ctx.sessions.activate(session)
    ctx.sync_session_variables()
    return _report(ctx, f"Activated session '{session.name}' (ID: {session.short_id})")


@command(
    name="session-show",
    summary="Show a chat session and its messages",
    usage="\\session-show[id] [name or id prefix]",
)
def session_show_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    text = invocation.message.strip()
    try:
        if text:
            session = _find_session(ctx, invocation, text)
        else:
            active = ctx.sessions.active
            if active is None:
                return _usage_error("session-show: no active session; use \\session-activate")
            session = active
    except ChatSessionError as exc:
        return _usage_error(f"session-show: {exc}")
    lines = [
        f"Session: {session.name} (ID: {session.short_id})",
        f"System: {session.system_prompt or '(none)'}",
        f"Created: {session.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Messages: {len(session.messages)} total",
    ]
    for index, message in enumerate(session.messages, start=1):
        lines.append(f"  {index}. [{message.role}] {message.content}")
    return _report(ctx, "\n".join(lines))


@command(
    name="session-delete",
    summary="Delete a chat session",
    usage="\\session-delete[name=session, id] [name or id prefix]",
    long_help="Deleting the active session activates the most recently updated remaining one.",
)
def session_delete_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    name_option = invocation.option("name")
    text = invocation.message.strip()
    if name_option and text:
        return _usage_error("session-delete: cannot combine the name option with a session argument")
    target = name_option or text
    if not target:
        return _usage_error("Usage: \\session-delete[name=session] or \\session-delete <name>")
    try:
        session = _find_session(ctx, invocation, target)
    except ChatSessionError as exc:
        return _usage_error(f"session-delete: {exc}")
    ctx.sessions.delete(session)
    ctx.sync_session_variables()
    return _report(ctx, f"Deleted session '{session.name}' (ID: {session.short_id})")


# -------------------- variable commands -------------------


@command(
    name="echo",
    summary="Print text and store it in a variable",
    usage="\\echo[to=var, silent, raw] <text>",
    long_help="Escape sequences such as \\n and \\t are interpreted unless raw is given.",
    examples=["\\echo Hello ${name}", "\\echo[to=greeting, silent] Hi"],
)
def echo_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    target = invocation.option("to") or "_output"
    text = invocation.message
    if not _flag(invocation, "raw"):
        text = interpret_escape_sequences(text)
    try:
        _assign(ctx, target, text)
    except VariableError as exc:
        return _usage_error(f"echo: {exc}")
    if _flag(invocation, "silent"):
        return CommandResult()
    return CommandResult(stdout=text + "\n")


@command(
    name="set",
    summary="Assign user variables",
    usage="\\set[name=value, ...] or \\set name value",
    examples=["\\set[name=Alice, greeting=Hello]", "\\set city Paris"],
)
def set_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    assignments = _assignments(invocation)
    if not assignments:
        return _usage_error("Usage: \\set[name=value] or \\set name value")
    lines = []
    for name, value in assignments.items():
        try:
            ctx.store.set(name, value)
        except VariableError as exc:
            return _usage_error(f"set: {exc}")
        lines.append(f"Setting {name} = {value}")
    return CommandResult(stdout="\n".join(lines) + "\n")


@command(
    name="get",
    summary="Print a variable",
    usage="\\get <name> or \\get[name]",
)
def get_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    name = invocation.message.strip() or next(iter(invocation.options), "")
    if not name:
        return _usage_error("Usage: \\get <name>")
    value = ctx.store.value(name)
    ctx.store.set_system("_output", value)
    return CommandResult(stdout=f"{name} = {value}\n")


@command(
    name="vars",
    summary="List variables",
    usage="\\vars[pattern=regex, type=user|system|all]",
)
def vars_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    kind = invocation.option("type", "all") or "all"
    if kind == "user":
        variables = ctx.store.user_variables()
    elif kind == "system":
        variables = ctx.store.system_variables()
    elif kind == "all":
        variables = ctx.store.all()
    else:
        return _usage_error("vars: type must be one of user, system, all")
    pattern = invocation.option("pattern")
    if pattern:
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            return _usage_error(f"vars: invalid pattern: {exc}")
        variables = {name: value for name, value in variables.items() if regex.search(name)}
    if not variables:
        return CommandResult(stdout="No variables found\n")
    lines = [f"{name} = {value}" for name, value in variables.items()]
    return CommandResult(stdout="\n".join(lines) + "\n")


@command(
    name="set-env",
    summary="Set a process environment variable",
    usage="\\set-env[NAME=value] or \\set-env NAME value",
)
def set_env_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    assignments = _assignments(invocation)
    if not assignments:
        return _usage_error("Usage: \\set-env[NAME=value]")
    lines = []
    for name, value in assignments.items():
        os.environ[name] = value
        lines.append(f"Setting environment variable {name} = {value}")
    return CommandResult(stdout="\n".join(lines) + "\n")


@command(
    name="get-env",
    summary="Read a process environment variable",
    usage="\\get-env <NAME>",
    long_help="The value is also stored in #os.<NAME> and _output.",
)
def get_env_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    name = invocation.message.strip() or next(iter(invocation.options), "")
    if not name:
        return _usage_error("Usage: \\get-env <NAME>")
    value = os.environ.get(name, "")
    ctx.store.set_system(f"#os.{name}", value)
    ctx.store.set_system("_output", value)
    return CommandResult(stdout=f"{name} = {value}\n")


# -------------------- shell commands ----------------------


@command(
    name="bash",
    summary="Run a command with bash",
    usage="\\bash <command>",
    parse_mode=ParseMode.RAW,
    long_help="Sets _output to stdout, _error to stderr and _status to the exit code.",
)
def bash_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    script = invocation.message.strip() or (invocation.bracket_content or "").strip()
    if not script:
        return _usage_error("Usage: \\bash <command>")
    try:
        completed = subprocess.run(
            ["bash", "-c", script],
            capture_output=True,
            text=True,
            timeout=ctx.config.bash_timeout,
            cwd=str(ctx.cwd),
        )
    except subprocess.TimeoutExpired:
        return CommandResult(status=124, stderr=f"bash: timed out after {ctx.config.bash_timeout:g}s\n")
    except OSError as exc:
        return CommandResult(status=127, stderr=f"bash: {exc}\n")
    ctx.store.set_system("_output", completed.stdout.rstrip("\n"))
    ctx.store.set_system("_error", completed.stderr.rstrip("\n"))
    ctx.store.set_system("_status", str(completed.returncode))
    if completed.returncode != 0:
        stderr = completed.stderr if completed.stderr.strip() else f"bash: exit status {completed.returncode}\n"
        return CommandResult(stdout=completed.stdout, stderr=stderr, status=completed.returncode)
    return CommandResult(stdout=completed.stdout, stderr=completed.stderr)


@command(
    name="exit",
    summary="Leave the shell",
    usage="\\exit[code=N, message=text]",
)
def exit_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    try:
        code = int(invocation.option("code", "0") or "0")
    except ValueError:
        return _usage_error("exit: code must be an integer")
    message = invocation.option("message") or invocation.message
    ctx.request_exit(code)
    return CommandResult(stdout=message + "\n" if message else "")


# -------------------- control flow ------------------------


def _condition(invocation: CommandInvocation, name: str) -> bool:
    if not invocation.has_option("condition"):
        raise ValueError(f"{name}: condition option is required")
    condition = invocation.option("condition")
    if len(condition) > MAX_CONDITION_LENGTH:
        raise ValueError(f"{name}: condition exceeds {MAX_CONDITION_LENGTH} characters")
    return is_truthy(condition)


@command(
    name="try",
    summary="Run a command, capturing failure in _status and _error",
    usage="\\try <command>",
    parse_mode=ParseMode.RAW,
    interpolate_message=False,
    examples=["\\try \\bash exit 1", "\\get _error"],
)
def try_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    body = invocation.message.strip()
    if not body:
        ctx.store.set_system("_status", "0")
        ctx.store.set_system("_error", "")
        ctx.store.set_system("_output", "")
        return CommandResult()
    ctx.stack.push_many(wrap(BoundaryKind.ERROR, ctx.ids.next_id("try"), [body]))
    return CommandResult()


@command(
    name="silent",
    summary="Run a command without printing its output",
    usage="\\silent <command>",
    parse_mode=ParseMode.RAW,
    interpolate_message=False,
)
def silent_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    body = invocation.message.strip()
    if not body:
        return CommandResult()
    ctx.stack.push_many(wrap(BoundaryKind.SILENT, ctx.ids.next_id("silent"), [body]))
    return CommandResult()


@command(
    name="if",
    summary="Run a command when a condition is true",
    usage="\\if[condition=value] <command>",
    interpolate_message=False,
    long_help=(
        "true, 1, yes, on and enabled are true; false, 0, no, off, disabled and the "
        "empty string are false; any other text is true. The result is stored in #if_result."
    ),
    examples=["\\if[condition=${debug}] \\echo debugging"],
)
def if_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    try:
        value = _condition(invocation, "if")
    except ValueError as exc:
        return _usage_error(str(exc))
    ctx.store.set_system("#if_result", "true" if value else "false")
    body = invocation.message.strip()
    if value and body:
        ctx.queue.enqueue(body)
    return CommandResult()


@command(
    name="if-not",
    summary="Run a command when a condition is false",
    usage="\\if-not[condition=value] <command>",
    interpolate_message=False,
)
def if_not_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    try:
        value = not _condition(invocation, "if-not")
    except ValueError as exc:
        return _usage_error(str(exc))
    ctx.store.set_system("#if_not_result", "true" if value else "false")
    body = invocation.message.strip()
    if value and body:
        ctx.queue.enqueue(body)
    return CommandResult()


@command(
    name="while",
    summary="Repeat a command while a condition is true",
    usage="\\while[condition=value] <command>",
    interpolate_message=False,
    long_help="The condition is re-evaluated after each run of the body.",
    examples=["\\while[condition=${running}] \\run step.neuro"],
)
def while_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    try:
        value = _condition(invocation, "while")
    except ValueError as exc:
        return _usage_error(str(exc))
    ctx.store.set_system("#while_result", "true" if value else "false")
    body = invocation.message.strip()
    if value and body:
        ctx.stack.push_many([body, invocation.line])
    return CommandResult()


@command(
    name="assert-equal",
    summary="Fail unless two values are equal",
    usage="\\assert-equal[expect=value, actual=value]",
)
def assert_equal_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    if not invocation.has_option("expect") or not invocation.has_option("actual"):
        return _usage_error("Usage: \\assert-equal[expect=value, actual=value]")
    expected = invocation.option("expect")
    actual = invocation.option("actual")
    if expected != actual:
        ctx.store.set_system("#assert_result", "fail")
        return CommandResult(status=1, stderr=f"assertion failed: expected {expected!r}, got {actual!r}\n")
    ctx.store.set_system("#assert_result", "pass")
    return CommandResult()


# -------------------- scripts -----------------------------


def resolve_script(ctx: ShellContext, raw: str) -> Path:
    candidate = Path(raw).expanduser()
    if ".." in candidate.parts:
        raise ScriptError(f"path traversal is not allowed: {raw}")
    if not candidate.is_absolute():
        candidate = ctx.cwd / candidate
    if not candidate.exists() and not candidate.suffix:
        candidate = candidate.with_suffix(SCRIPT_SUFFIX)
    if not candidate.is_file():
        raise ScriptError(f"script not found: {raw}")
    return candidate


def _set_script_parameters(ctx: ShellContext, path: Path, args: List[str], named: Dict[str, str]) -> None:
    for key in named:
        validate_user_name(key)
    ctx.store.set_script_parameters(str(path), args, named)
    for key, value in named.items():
        ctx.store.set(key, value)


@command(
    name="run",
    summary="Run a script file",
    usage="\\run[name=value, ...] <path> [args...]",
    long_help=(
        "Lines ending in ... continue on the next line; blank lines and lines starting "
        "with %% are skipped. The script path is available as ${_0}, positional "
        "arguments as ${_1}, ${_2}, ..., all of them as ${_*} and named options as ${_@}."
    ),
    examples=["\\run setup.neuro", "\\run[user=alice] greet.neuro morning"],
)
def run_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    try:
        tokens = shlex.split(invocation.message)
    except ValueError as exc:
        return _usage_error(f"run: {exc}")
    if not tokens:
        return _usage_error("Usage: \\run <path> [args...]")
    try:
        path = resolve_script(ctx, tokens[0])
        lines = script_commands(path.read_text(encoding="utf-8").splitlines())
    except ScriptError as exc:
        return _usage_error(f"run: {exc}")
    except OSError as exc:
        return _usage_error(f"run: cannot read {tokens[0]}: {exc}")
    try:
        _set_script_parameters(ctx, path, tokens[1:], invocation.options)
    except VariableError as exc:
        return _usage_error(f"run: {exc}")
    boundary_id = ctx.ids.next_id("script")
    ctx.script_labels[boundary_id] = str(path)
    ctx.stack.push_many(wrap(BoundaryKind.SCRIPT, boundary_id, lines))
    return CommandResult(audit={"script": str(path), "lines": len(lines)})


# -------------------- introspection -----------------------


@command(
    name="help",
    summary="List commands or describe one",
    usage="\\help [command]",
)
def help_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    name = invocation.message.strip() or next(iter(invocation.options), "")
    if name:
        definition = ctx.registry.get(name.lstrip("\\"))
        if definition is None:
            return _usage_error(f"help: unknown command: {name}")
        return CommandResult(stdout=definition.help_text() + "\n")
    names = ctx.registry.names()
    width = max((len(entry) for entry in names), default=0) + 1
    lines = ["Available commands:"]
    for entry in names:
        definition = ctx.registry.get(entry)
        summary = definition.summary if definition else ""
        lines.append(f"  \\{entry.ljust(width)} {summary}")
    return CommandResult(stdout="\n".join(lines) + "\n")


@command(
    name="show-stack",
    summary="Show pending commands",
    usage="\\show-stack[detailed]",
)
def show_stack_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    detailed = _flag(invocation, "detailed")
    lines = [f"Stack ({len(ctx.stack)} pending, next first):"]
    for index, entry in enumerate(ctx.stack.entries(), start=1):
        kind = f" [{type(entry).__name__}]" if detailed else ""
        lines.append(f"  {index}. {entry.render()}{kind}")
    lines.append(f"Queue ({len(ctx.queue)} pending):")
    for index, entry in enumerate(ctx.queue.entries(), start=1):
        lines.append(f"  {index}. {entry.render()}")
    if detailed:
        lines.append(f"Open boundaries ({len(ctx.frames)}, innermost last):")
        for frame in ctx.frames:
            lines.append(f"  - {frame.describe()}")
    return CommandResult(stdout="\n".join(lines) + "\n")


@command(
    name="version",
    summary="Show the shell version",
    usage="\\version",
    long_help="The version string is also stored in #version.",
)
def version_command(ctx: ShellContext, invocation: CommandInvocation) -> CommandResult:
    ctx.store.set_system("#version", VERSION)
    return _report(ctx, f"neuro-shell {VERSION}")


def register_builtins(registry: CommandRegistry) -> CommandRegistry:
    for definition in collect_commands(globals().values()):
        registry.register(definition)
    return registry


__all__ = ["MAX_CONDITION_LENGTH", "ScriptError", "register_builtins", "resolve_script"]
