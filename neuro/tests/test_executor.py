import io
import json
from collections import Counter
from pathlib import Path
from typing import List, Tuple

import pytest

from neuro.builtins import register_builtins
from neuro.config import ShellConfig
from neuro.context import ShellContext
from neuro.execution_stack import BoundaryEnd, BoundaryKind, BoundaryStart, decode_entry, wrap
from neuro.executor import Executor, ExecutorState
from neuro.registry import Command, CommandInvocation, CommandRegistry, CommandResult


def _context(tmp_path: Path, **overrides: object) -> ShellContext:
    config = ShellConfig(test_mode=True, rc_file=tmp_path / "missing-rc")
    for key, value in overrides.items():
        setattr(config, key, value)
    return ShellContext(config, registry=register_builtins(CommandRegistry()), cwd=tmp_path)


def _value(ctx: ShellContext, name: str) -> str:
    return ctx.store.value(name)


def test_error_inside_boundary_is_absorbed(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push(BoundaryEnd(BoundaryKind.ERROR, "t1"))
    ctx.stack.push("\\bash exit 1")
    ctx.stack.push(BoundaryStart(BoundaryKind.ERROR, "t1"))
    executor = Executor(ctx)

    result = executor.run()

    assert executor.state is ExecutorState.IDLE
    assert _value(ctx, "_status") == "1"
    assert _value(ctx, "_error") != ""
    assert result.status == 0
    assert executor.open_boundaries == []


def test_sentinel_text_fixture_decodes_into_boundaries(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many(
        decode_entry(text)
        for text in ["ERROR_BOUNDARY_START:t1", "\\bash exit 1", "ERROR_BOUNDARY_END:t1"]
    )
    executor = Executor(ctx)
    executor.run()
    assert executor.state is ExecutorState.IDLE
    assert _value(ctx, "_status") == "1"


def test_error_outside_boundary_halts(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many(["\\bash exit 1", "\\set[after=yes]"])
    executor = Executor(ctx)

    result = executor.run()

    assert executor.state is ExecutorState.HALTED
    assert _value(ctx, "_status") == "1"
    assert _value(ctx, "_error") == "bash: exit status 1"
    assert result.status == 1
    assert "exit status 1" in result.stderr
    assert _value(ctx, "after") == ""
    assert len(ctx.stack) == 0


def test_next_run_after_halt_starts_fresh(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\bash exit 2")
    assert executor.state is ExecutorState.HALTED
    result = executor.run("\\echo ok")
    assert executor.state is ExecutorState.IDLE
    assert result.stdout == "ok\n"
    assert _value(ctx, "_status") == "0"
    assert _value(ctx, "_error") == ""


def test_try_command_records_failure_and_continues(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many(["\\try \\bash echo broken >&2; exit 3", "\\set[after=yes]"])
    executor = Executor(ctx)

    result = executor.run()

    assert executor.state is ExecutorState.IDLE
    assert _value(ctx, "after") == "yes"
    # the command after the try succeeded, so the live status is clean again
    assert _value(ctx, "_status") == "0"
    assert "broken" not in result.stderr


def test_try_status_is_visible_right_after_the_block(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\try \\bash exit 1")
    assert _value(ctx, "_status") == "1"
    assert _value(ctx, "_error") == "bash: exit status 1"
    result = executor.run("\\echo status=${_status}")
    assert result.stdout == "status=1\n"


def test_error_skips_rest_of_the_boundary_only(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    body = wrap(BoundaryKind.ERROR, "t", ["\\bash exit 1", "\\set[inside=yes]"])
    ctx.stack.push_many([*body, "\\set[later=yes]"])
    executor = Executor(ctx)

    executor.run()

    assert _value(ctx, "inside") == ""
    assert _value(ctx, "later") == "yes"
    assert executor.state is ExecutorState.IDLE


def test_innermost_boundary_absorbs_first(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many(
        [
            BoundaryStart(BoundaryKind.ERROR, "outer"),
            BoundaryStart(BoundaryKind.ERROR, "inner"),
            "\\bash exit 1",
            BoundaryEnd(BoundaryKind.ERROR, "inner"),
            "\\set[between=yes]",
            BoundaryEnd(BoundaryKind.ERROR, "outer"),
        ]
    )
    executor = Executor(ctx)
    executor.run()
    assert _value(ctx, "between") == "yes"
    assert executor.state is ExecutorState.IDLE


def test_error_boundary_snapshots_previous_status(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.store.set_system("_status", "1")
    ctx.store.set_system("_error", "previous failure")
    ctx.stack.push_many(wrap(BoundaryKind.ERROR, "t", ["\\echo fine"]))
    executor = Executor(ctx)
    executor.run()
    assert _value(ctx, "_last_status") == "1"
    assert _value(ctx, "_last_error") == "previous failure"
    assert _value(ctx, "_status") == "0"


def test_failure_leaves_output_untouched(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\echo keep me")
    executor.run("\\try \\assert-equal[expect=a, actual=b]")
    assert _value(ctx, "_output") == "keep me"
    assert "assertion failed" in _value(ctx, "_error")


def test_unknown_command_halts_with_127(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    result = executor.run("\\nope")
    assert executor.state is ExecutorState.HALTED
    assert result.status == 127
    assert _value(ctx, "_error") == "unknown command: nope"

    executor.run("\\try \\nope")
    assert executor.state is ExecutorState.IDLE
    assert _value(ctx, "_error") == "unknown command: nope"


def test_parse_error_is_reported_and_absorbed_by_try(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    result = executor.run("\\echo[to=x hello")
    assert executor.state is ExecutorState.HALTED
    assert result.stderr.startswith("failed to parse command")

    executor.run("\\try \\echo[to=x hello")
    assert executor.state is ExecutorState.IDLE
    assert _value(ctx, "_error").startswith("failed to parse command")


def test_handler_exception_becomes_dispatch_error(tmp_path: Path) -> None:
    ctx = _context(tmp_path)

    def explode(context: ShellContext, invocation: CommandInvocation) -> CommandResult:
        raise RuntimeError("boom")

    ctx.registry.register(Command(name="explode", summary="", usage="\\explode", handler=explode))
    executor = Executor(ctx)
    executor.run("\\try \\explode")
    assert executor.state is ExecutorState.IDLE
    assert _value(ctx, "_error") == "explode: boom"


def test_silent_boundary_hides_stdout_only(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    result = executor.run("\\silent \\echo hidden")
    assert result.stdout == ""
    assert _value(ctx, "_output") == "hidden"

    result = executor.run("\\silent \\bash echo out; echo err >&2; exit 4")
    assert executor.state is ExecutorState.HALTED
    assert result.stdout == ""
    assert "err" in result.stderr


def test_silent_inside_try_stays_balanced(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    result = executor.run("\\try \\silent \\bash exit 1")
    assert executor.state is ExecutorState.IDLE
    assert executor.open_boundaries == []
    assert _value(ctx, "_status") == "1"
    after = executor.run("\\echo visible")
    assert after.stdout == "visible\n"
    assert result.stdout == ""


def test_if_stages_body_on_queue_when_true(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many(["\\if[condition=yes] \\echo one", "\\echo two"])
    executor = Executor(ctx)
    result = executor.run()
    assert result.stdout == "one\ntwo\n"
    assert _value(ctx, "#if_result") == "true"


def test_if_discards_body_when_false(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\set[flag=off]")
    result = executor.run("\\if[condition=${flag}] \\echo never")
    assert result.stdout == ""
    assert _value(ctx, "#if_result") == "false"
    assert len(ctx.queue) == 0


def test_if_body_is_interpolated_when_it_runs(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    result = executor.run("\\if[condition=1] \\echo[to=x, silent] first")
    assert result.stdout == ""
    assert executor.run("\\if[condition=1] \\echo x=${x}").stdout == "x=first\n"


def test_if_not_runs_body_when_false(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    assert executor.run("\\if-not[condition=0] \\echo ran").stdout == "ran\n"
    assert _value(ctx, "#if_not_result") == "true"
    assert executor.run("\\if-not[condition=1] \\echo ran").stdout == ""


def test_if_without_condition_is_an_error(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    result = executor.run("\\if \\echo x")
    assert executor.state is ExecutorState.HALTED
    assert "condition option is required" in result.stderr


def test_while_reevaluates_its_condition(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\set[go=yes]")
    result = executor.run("\\while[condition=${go}] \\set[go=no]")
    assert result.stdout.count("Setting go = no") == 1
    assert _value(ctx, "#while_result") == "false"
    assert executor.state is ExecutorState.IDLE


def test_step_budget_stops_runaway_loops(tmp_path: Path) -> None:
    ctx = _context(tmp_path, step_budget=25)
    executor = Executor(ctx)
    result = executor.run("\\while[condition=true] \\echo[silent] tick")
    assert executor.state is ExecutorState.HALTED
    assert _value(ctx, "_error") == "step budget exceeded"
    assert result.status == 1
    assert len(ctx.stack) == 0


def test_start_without_end_does_not_deadlock(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many([BoundaryStart(BoundaryKind.ERROR, "lonely"), "\\bash exit 1"])
    executor = Executor(ctx)
    executor.run()
    assert executor.state is ExecutorState.IDLE
    assert executor.open_boundaries == []
    assert _value(ctx, "_status") == "1"


def test_end_without_start_is_ignored(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many([BoundaryEnd(BoundaryKind.ERROR, "stray"), "\\echo still here"])
    result = Executor(ctx).run()
    assert result.stdout == "still here\n"


def test_exit_stops_the_run(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many(["\\exit[code=3, message=bye]", "\\set[after=yes]"])
    executor = Executor(ctx)
    result = executor.run()
    assert result.status == 3
    assert result.stdout == "bye\n"
    assert ctx.exit_code == 3
    assert _value(ctx, "after") == ""
    assert executor.state is ExecutorState.IDLE


def test_echo_command_toggle_prefixes_lines(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\set[_echo_command=true]")
    result = executor.run("\\echo hi")
    assert result.stdout == "%%> \\echo hi\nhi\n"


def test_session_reset_drops_pending_work(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.stack.push_many(["\\set[a=1]", "\\session-reset", "\\set[b=2]"])
    executor = Executor(ctx)
    result = executor.run()
    assert _value(ctx, "a") == ""
    assert _value(ctx, "b") == ""
    assert "Session reset" in result.stdout
    assert executor.state is ExecutorState.IDLE


def test_plain_text_goes_to_chat_backend(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\set[name=Alice]")
    result = executor.run("hello ${name}")
    assert result.stdout == "[deterministic] hello Alice\n"
    assert _value(ctx, "1") == "[deterministic] hello Alice"
    assert _value(ctx, "2") == "hello Alice"


def test_transcript_records_each_dispatch(tmp_path: Path) -> None:
    ctx = ShellContext(
        ShellConfig(test_mode=True, transcript_dir=tmp_path / "transcripts"),
        registry=register_builtins(CommandRegistry()),
        cwd=tmp_path,
    )
    executor = Executor(ctx)
    executor.run("\\echo hi")
    executor.run("\\nope")
    assert ctx.transcript is not None
    path = ctx.transcript.path
    ctx.close()
    records = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [record["line"] for record in records] == ["\\echo hi", "\\nope"]
    assert records[0]["command"] == "echo"
    assert records[0]["stdout"] == "hi\n"
    assert records[1]["status"] == 127
    assert "ts" in records[0]


class _RecordingStream(io.StringIO):
    def __init__(self) -> None:
        super().__init__()
        self.writes: List[str] = []

    def write(self, text: str) -> int:
        self.writes.append(text)
        return super().write(text)


def _streaming_context(tmp_path: Path) -> Tuple[ShellContext, _RecordingStream, _RecordingStream]:
    out, err = _RecordingStream(), _RecordingStream()
    ctx = ShellContext(
        ShellConfig(test_mode=True),
        registry=register_builtins(CommandRegistry()),
        cwd=tmp_path,
        output=out,
        errors=err,
    )
    return ctx, out, err


def test_send_streams_chunks_as_they_arrive(tmp_path: Path) -> None:
    ctx, out, _ = _streaming_context(tmp_path)
    result = Executor(ctx).run("hello there")
    assert out.writes == ["[deterministic]", " hello", " there", "\n"]
    assert result.streamed is True
    assert result.stdout == "[deterministic] hello there\n"
    assert result.audit["tokens"] == 2
    assert result.audit["session"] == "Session 1"
    assert len(result.audit["digest"]) == 64


def test_streaming_context_writes_command_output_live(tmp_path: Path) -> None:
    ctx, out, err = _streaming_context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\echo one")
    executor.run("\\silent \\echo hidden")
    executor.run("\\silent \\send quiet")
    executor.run("\\try \\bash echo absorbed >&2; exit 1")
    assert out.getvalue() == "one\n"
    assert err.getvalue() == ""

    result = executor.run("\\bash exit 4")
    assert result.streamed is True
    assert err.getvalue() == "bash: exit status 4\n"


def test_echo_prefix_is_streamed_before_command_output(tmp_path: Path) -> None:
    ctx, out, _ = _streaming_context(tmp_path)
    executor = Executor(ctx)
    executor.run("\\set[_echo_command=true]")
    executor.run("\\echo hi")
    assert out.getvalue().endswith("%%> \\echo hi\nhi\n")


def test_boundary_markers_are_each_popped_exactly_once(tmp_path: Path) -> None:
    (tmp_path / "inner.neuro").write_text(
        "\\try \\bash exit 1\n\\silent \\bash exit 2\n\\echo unreachable\n", encoding="utf-8"
    )
    (tmp_path / "outer.neuro").write_text(
        "\\silent \\echo quiet\n\\try \\run inner.neuro\n\\echo after\n", encoding="utf-8"
    )
    ctx = _context(tmp_path)
    popped: List[object] = []
    original_pop = ctx.stack.pop

    def recording_pop() -> object:
        entry = original_pop()
        if entry is not None:
            popped.append(entry)
        return entry

    ctx.stack.pop = recording_pop  # type: ignore[method-assign]
    executor = Executor(ctx)

    result = executor.run("\\run outer.neuro")

    assert executor.state is ExecutorState.IDLE
    assert "after" in result.stdout
    assert "unreachable" not in result.stdout
    starts = Counter(entry.boundary_id for entry in popped if isinstance(entry, BoundaryStart))
    ends = Counter(entry.boundary_id for entry in popped if isinstance(entry, BoundaryEnd))
    assert len(starts) == 6
    assert starts == ends
    assert set(starts.values()) == {1}
    assert executor.open_boundaries == []


def test_next_entry_on_empty_containers_raises(tmp_path: Path) -> None:
    executor = Executor(_context(tmp_path))
    with pytest.raises(RuntimeError):
        executor._next_entry()
