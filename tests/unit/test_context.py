from stepflow.context import ExecutionContext


def test_record_output_updates_previous_all_and_steps():
    ctx = ExecutionContext(input={"q": 1}, run_id="run-1")
    ctx.record_output("a", 1)
    ctx.record_output(None, 2)

    assert ctx.steps == {"a": 1}
    assert ctx.previous == 2
    assert ctx.all == [1, 2]


def test_step_ids_are_never_overwritten():
    ctx = ExecutionContext()
    ctx.record_output("a", "first")
    ctx.record_output("a", "second")

    assert ctx.steps["a"] == "first"
    assert ctx.previous == "second"


def test_errors_only_exist_when_collected():
    ctx = ExecutionContext()
    assert ctx.errors is None

    ctx.record_error("0-agent", RuntimeError("boom"))
    ctx.record_error(2, ValueError())
    assert [(e.step, e.error) for e in ctx.errors] == [("0-agent", "boom"), (2, "ValueError")]


def test_fork_and_merge_in_branch_order():
    ctx = ExecutionContext(input="in", errors=[])
    ctx.record_output("seed", 0)

    first, second = ctx.fork(), ctx.fork()
    second.record_output("b", "B")
    first.record_output("a", "A")
    second.record_error("x", "bad")

    assert first.steps == {"seed": 0, "a": "A"}
    assert ctx.steps == {"seed": 0}

    ctx.merge(first)
    ctx.merge(second)
    assert list(ctx.steps) == ["seed", "a", "b"]
    assert ctx.all == [0, "A", "B"]
    assert [e.step for e in ctx.errors] == ["x"]


def test_snapshot_restore():
    ctx = ExecutionContext(input={"q": 1}, run_id="run-1", errors=[])
    ctx.record_output("a", {"nested": [1, 2]})
    ctx.record_error("1-worker", "timeout")

    restored = ExecutionContext.restore(ctx.snapshot())
    assert restored == ctx
