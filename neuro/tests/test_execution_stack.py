import threading

from neuro.execution_stack import (
    BoundaryEnd,
    BoundaryIdGenerator,
    BoundaryKind,
    BoundaryStart,
    CommandEntry,
    ConditionalQueue,
    ExecutionStack,
    decode_entry,
    wrap,
)


def test_push_many_preserves_run_order() -> None:
    stack = ExecutionStack()
    stack.push_many(["c1", "c2", "c3"])
    assert [entry.render() for entry in stack.entries()] == ["c1", "c2", "c3"]
    assert [stack.pop(), stack.pop(), stack.pop()] == [CommandEntry("c1"), CommandEntry("c2"), CommandEntry("c3")]
    assert stack.pop() is None


def test_manual_reverse_push() -> None:
    stack = ExecutionStack()
    for line in ["c3", "c2", "c1"]:
        stack.push(line)
    assert stack.peek() == CommandEntry("c1")
    assert len(stack) == 3


def test_queue_is_fifo() -> None:
    queue = ConditionalQueue()
    queue.enqueue("first")
    queue.enqueue("second")
    assert queue.dequeue() == CommandEntry("first")
    assert queue.dequeue() == CommandEntry("second")
    assert queue.dequeue() is None


def test_wrap_orders_start_body_end() -> None:
    entries = wrap(BoundaryKind.ERROR, "t1", ["\\bash exit 1"])
    assert [entry.render() for entry in entries] == [
        "ERROR_BOUNDARY_START:t1",
        "\\bash exit 1",
        "ERROR_BOUNDARY_END:t1",
    ]


def test_decode_entry_recognizes_markers_only() -> None:
    assert decode_entry("ERROR_BOUNDARY_START:t1") == BoundaryStart(BoundaryKind.ERROR, "t1")
    assert decode_entry("SILENT_BOUNDARY_END:silent_id_4") == BoundaryEnd(BoundaryKind.SILENT, "silent_id_4")
    assert decode_entry("\\echo ERROR_BOUNDARY_START:t1") == CommandEntry("\\echo ERROR_BOUNDARY_START:t1")
    assert decode_entry("ERROR_BOUNDARY_START:") == CommandEntry("ERROR_BOUNDARY_START:")


def test_plain_strings_pushed_are_never_markers() -> None:
    stack = ExecutionStack()
    stack.push("ERROR_BOUNDARY_START:t1")
    assert stack.pop() == CommandEntry("ERROR_BOUNDARY_START:t1")


def test_boundary_ids_are_unique_across_threads() -> None:
    generator = BoundaryIdGenerator()
    seen = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(200):
            value = generator.next_id("try")
            with lock:
                seen.append(value)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(seen) == 800
    assert len(set(seen)) == 800
    assert generator.next_id("silent") == "silent_id_801"
