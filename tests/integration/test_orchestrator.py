"""End-to-end runs of the step interpreter against a fake remote."""

import asyncio
import time

import httpx
import pytest
from pydantic import BaseModel

from stepflow.contracts import AgentStep, OrchestrationConfig, create_orchestration, when_step
from stepflow.engine import Orchestrator
from stepflow.errors import (
    ConfigInvalid,
    DispatchError,
    HookTimeout,
    PollTimeout,
    StepFailed,
    UnknownStepType,
)
from stepflow.hosts import InMemoryHost
from stepflow.persistence import InMemoryJobStore, InMemoryStatusStore


def _orchestrator(remote, **kwargs):
    status = kwargs.pop("status_store", None) or InMemoryStatusStore()
    jobs = kwargs.pop("job_store", None) or InMemoryJobStore()
    host = kwargs.pop("host", None) or InMemoryHost()
    return Orchestrator(remote.client(job_store=jobs), status_store=status, host=host, **kwargs)


def _failing(message):
    return lambda body: httpx.Response(500, text=message)


@pytest.mark.asyncio
async def test_sleep_then_agent_result(remote):
    remote.agents["/x"] = lambda body: {"result": 42}
    status = InMemoryStatusStore()
    orchestrator = _orchestrator(remote, status_store=status)

    outcome = await orchestrator.run(
        {"steps": [{"type": "sleep", "duration": 10}, {"type": "agent", "id": "a1", "agent": "/x"}]},
        run_id="run-1",
    )

    assert outcome.result == 42
    assert outcome.status == "completed"
    assert outcome.context.steps == {"a1": 42}
    assert outcome.context.all == [{"slept": 10}, 42]
    assert outcome.context.errors is None

    record = await status.get_status("run-1")
    assert record.status == "completed"
    assert record.result == 42
    assert record.completed_at is not None


@pytest.mark.asyncio
async def test_agent_receives_previous_output_as_default_input(remote):
    bodies = []
    remote.agents["/first"] = lambda body: {"result": {"draft": "v1"}}
    remote.agents["/second"] = lambda body: bodies.append(body) or {"result": "done"}
    orchestrator = _orchestrator(remote)

    await orchestrator.run(
        {
            "input": {"topic": "cats"},
            "messages": [{"role": "user", "content": "hi"}],
            "steps": [{"type": "agent", "agent": "/first"}, {"type": "agent", "agent": "/second"}],
        }
    )

    assert bodies[0]["input"] == {"draft": "v1"}
    assert bodies[0]["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_function_and_join_inputs(remote):
    bodies = {}

    def record(name, reply):
        def handler(body):
            bodies[name] = body["input"]
            return {"result": reply}

        return handler

    remote.agents["/research"] = record("research", {"summary": "cats purr"})
    remote.agents["/draft"] = record("draft", "Cats are great")
    remote.agents["/combine"] = record("combine", "final")

    config = (
        create_orchestration()
        .agent("/research", lambda ctx: {"query": ctx.input["topic"]}, id="research")
        .agent("/draft", id="draft")
        .agent(
            "/combine",
            {"fromSteps": ["research", "draft"], "path": "summary", "join": "\n", "style": "short"},
        )
        .build(input={"topic": "cats"})
    )
    outcome = await _orchestrator(remote).run(config)

    assert bodies["research"] == {"query": "cats"}
    assert bodies["draft"] == {"summary": "cats purr"}
    assert bodies["combine"] == {"style": "short", "data": ["cats purr"], "content": "cats purr"}
    assert outcome.result == "final"


@pytest.mark.asyncio
async def test_awaited_worker_polls_until_timeout(remote):
    remote.worker_states["slow"] = [{"status": "running"}]
    status = InMemoryStatusStore()
    orchestrator = _orchestrator(remote, status_store=status)
    config = {
        "steps": [
            {
                "type": "worker",
                "worker": "slow",
                "await": True,
                "workerPoll": {"intervalMs": 100, "timeoutMs": 300, "maxRetries": 10},
            }
        ]
    }

    started = time.monotonic()
    with pytest.raises(PollTimeout) as exc_info:
        await orchestrator.run(config, run_id="run-1")
    elapsed = time.monotonic() - started

    assert 0.25 <= elapsed < 2.0
    assert exc_info.value.last_status == "running"
    assert 2 <= exc_info.value.attempts <= 5
    record = await status.get_status("run-1")
    assert record.status == "failed"
    assert "did not complete" in record.error.message


@pytest.mark.asyncio
async def test_awaited_worker_completes(remote):
    remote.worker_states["resize"] = [
        {"status": "running"},
        {"status": "completed", "output": {"url": "img.png"}, "metadata": {"ms": 12}},
    ]
    jobs = InMemoryJobStore()
    orchestrator = _orchestrator(remote, job_store=jobs)

    outcome = await orchestrator.run(
        {
            "workerPoll": {"intervalMs": 10, "maxRetries": 5},
            "steps": [{"type": "worker", "id": "resize", "worker": "resize", "await": True, "input": {"w": 10}}],
        }
    )

    output = outcome.context.steps["resize"]
    assert output["status"] == "completed"
    assert output["output"] == {"url": "img.png"}
    assert output["metadata"] == {"ms": 12}
    assert remote.triggers[0]["body"]["input"] == {"w": 10}
    job = await jobs.get_job(output["jobId"])
    assert job.status == "completed"


@pytest.mark.asyncio
async def test_worker_failure_raises_step_failed(remote):
    remote.worker_states["resize"] = [{"status": "failed", "error": {"message": "bad image"}}]
    orchestrator = _orchestrator(remote)

    with pytest.raises(StepFailed, match="bad image"):
        await orchestrator.run(
            {
                "steps": [
                    {"type": "worker", "worker": "resize", "await": True, "workerPoll": {"maxRetries": 3}}
                ]
            }
        )


@pytest.mark.asyncio
async def test_fire_and_forget_worker(remote):
    jobs = InMemoryJobStore()
    orchestrator = _orchestrator(remote, job_store=jobs)

    outcome = await orchestrator.run({"steps": [{"type": "worker", "worker": "email", "input": {"to": "a@b"}}]})

    assert outcome.result["status"] == "queued"
    job = await jobs.get_job(outcome.result["jobId"])
    assert job.worker_id == "email"
    assert job.input == {"to": "a@b"}
    assert remote.count("GET", f"/api/workflows/workers/email/{job.job_id}") == 0


@pytest.mark.asyncio
async def test_nested_workflow_awaited_and_fire_and_forget(remote):
    remote.workflow_states["child"] = [
        {"status": "running"},
        {"status": "completed", "result": {"answer": 7}},
    ]
    orchestrator = _orchestrator(remote)

    outcome = await orchestrator.run(
        {
            "workflowPoll": {"intervalMs": 10},
            "steps": [
                {"type": "workflow", "id": "bg", "workflow": "child", "await": False},
                {"type": "workflow", "id": "child", "workflow": "child", "input": {"n": 1}},
            ],
        },
        run_id="parent",
    )

    assert outcome.context.steps["bg"] == {"runId": "child-run-1", "status": "running"}
    assert outcome.context.steps["child"] == {"answer": 7}
    assert remote.started[1]["input"] == {"n": 1}
    assert remote.started[1]["executionId"] == "parent:1-workflow"


@pytest.mark.asyncio
async def test_hook_resumes_with_event_payload(remote):
    host = InMemoryHost()
    status = InMemoryStatusStore()
    orchestrator = _orchestrator(remote, status_store=status, host=host)
    config = {"hookTimeout": "1h", "steps": [{"type": "hook", "id": "approval", "token": "approve-123"}]}

    task = asyncio.create_task(orchestrator.run(config, run_id="run-1"))
    while not host.is_waiting("approve-123"):
        await asyncio.sleep(0.01)

    paused = await status.get_status("run-1")
    assert paused.status == "paused"
    assert paused.hook_token == "approve-123"

    assert await orchestrator.signal("approve-123", {"approved": True}) is True
    outcome = await task

    assert outcome.result == {"token": "approve-123", "payload": {"approved": True}}
    assert outcome.context.steps["approval"] == outcome.result
    record = await status.get_status("run-1")
    assert record.status == "completed"
    assert record.hook_token is None


@pytest.mark.asyncio
async def test_hook_timeout(remote):
    status = InMemoryStatusStore()
    orchestrator = _orchestrator(remote, status_store=status)

    with pytest.raises(HookTimeout) as exc_info:
        await orchestrator.run(
            {"hookTimeout": "50ms", "steps": [{"type": "hook", "token": "never"}]}, run_id="run-1"
        )

    assert exc_info.value.token == "never"
    record = await status.get_status("run-1")
    assert record.status == "failed"
    assert record.hook_token is None


@pytest.mark.asyncio
async def test_hook_payload_model_validates_event(remote):
    class Approval(BaseModel):
        approved: bool
        reviewer: str = "unknown"

    host = InMemoryHost()
    await host.send_event("approve-9", {"approved": "yes"})
    config = create_orchestration().hook("approve-9", payload_model=Approval).build()

    outcome = await _orchestrator(remote, host=host).run(config)

    assert outcome.result["payload"] == {"approved": True, "reviewer": "unknown"}


@pytest.mark.asyncio
async def test_orchestrator_hook_timeout_setting_applies_to_configs_without_one(remote):
    orchestrator = _orchestrator(remote, hook_timeout="20ms")

    with pytest.raises(HookTimeout) as exc_info:
        await orchestrator.run({"steps": [{"type": "hook", "token": "t"}]})

    assert exc_info.value.timeout_s == pytest.approx(0.02)


@pytest.mark.asyncio
async def test_condition_runs_matching_branch(remote):
    remote.agents["/review"] = lambda body: {"result": {"approved": True}}
    remote.agents["/publish"] = lambda body: {"result": "published"}
    remote.agents["/reject"] = lambda body: {"result": "rejected"}

    config = (
        create_orchestration()
        .agent("/review", id="review")
        .condition(
            when_step("review", "approved", "eq", True),
            [AgentStep(id="publish", agent="/publish")],
            [AgentStep(id="reject", agent="/reject")],
        )
        .build()
    )
    outcome = await _orchestrator(remote).run(config)

    assert outcome.result == "published"
    assert set(outcome.context.steps) == {"review", "publish"}
    assert outcome.context.all == [{"approved": True}, "published"]
    assert remote.count("POST", "/reject") == 0


@pytest.mark.asyncio
async def test_condition_function_predicate_and_missing_else(remote):
    remote.agents["/x"] = lambda body: {"result": 1}
    config = create_orchestration().condition(lambda ctx: False, [AgentStep(agent="/x")]).build(input="in")

    outcome = await _orchestrator(remote).run(config)

    assert outcome.result is None
    assert outcome.context.all == []
    assert remote.calls == []


@pytest.mark.asyncio
async def test_continue_on_error_inside_condition_branch(remote):
    remote.agents["/bad"] = _failing("nope")
    remote.agents["/skipped"] = lambda body: {"result": "never"}
    remote.agents["/good"] = lambda body: {"result": "ok"}

    def broken_predicate(ctx):
        raise KeyError("missing flag")

    outcome = await _orchestrator(remote).run(
        {
            "continueOnError": True,
            "steps": [
                {
                    "type": "condition",
                    "id": "outer",
                    "if": True,
                    "then": [
                        {"type": "agent", "id": "bad", "agent": "/bad"},
                        {
                            "type": "condition",
                            "id": "broken",
                            "if": broken_predicate,
                            "then": [{"type": "agent", "id": "skipped", "agent": "/skipped"}],
                        },
                        {"type": "agent", "id": "good", "agent": "/good"},
                    ],
                }
            ],
        }
    )

    assert outcome.status == "completed"
    assert outcome.result == "ok"
    assert [e.step for e in outcome.context.errors] == ["bad", "broken"]
    assert "nope" in outcome.context.errors[0].error
    assert "missing flag" in outcome.context.errors[1].error
    assert outcome.context.steps == {"good": "ok"}
    assert remote.count("POST", "/skipped") == 0
    assert remote.count("POST", "/good") == 1


@pytest.mark.asyncio
async def test_partial_nested_workflow_returns_its_result(remote):
    remote.workflow_states["child"] = [
        {"status": "running"},
        {"status": "partial", "result": {"processed": 3, "skipped": 1}},
    ]

    outcome = await _orchestrator(remote).run(
        {
            "workflowPoll": {"intervalMs": 10},
            "steps": [{"type": "workflow", "id": "child", "workflow": "child"}],
        }
    )

    assert outcome.status == "completed"
    assert outcome.context.steps["child"] == {"processed": 3, "skipped": 1}
    assert remote.count("GET", "/api/workflows/child/child-run-1") == 2


def _parallel_config(continue_on_error):
    return {
        "continueOnError": continue_on_error,
        "steps": [
            {
                "type": "parallel",
                "id": "fanout",
                "steps": [
                    {"type": "agent", "id": "a", "agent": "/a"},
                    {"type": "agent", "id": "b", "agent": "/b"},
                    {"type": "agent", "id": "c", "agent": "/c"},
                ],
            }
        ],
    }


@pytest.mark.asyncio
async def test_parallel_continue_on_error_leaves_gap(remote):
    remote.agents["/a"] = lambda body: {"result": "A"}
    remote.agents["/b"] = _failing("b exploded")
    remote.agents["/c"] = lambda body: {"result": "C"}

    outcome = await _orchestrator(remote).run(_parallel_config(True))

    assert outcome.result == {"results": ["A", None, "C"]}
    assert outcome.context.steps["fanout"] == {"results": ["A", None, "C"]}
    assert outcome.context.steps["a"] == "A"
    assert outcome.context.steps["c"] == "C"
    assert "b" not in outcome.context.steps
    assert len(outcome.context.errors) == 1
    assert outcome.context.errors[0].step == 1
    assert "b exploded" in outcome.context.errors[0].error


@pytest.mark.asyncio
async def test_parallel_fail_fast_raises_after_all_branches_settle(remote):
    remote.agents["/a"] = lambda body: {"result": "A"}
    remote.agents["/b"] = _failing("b exploded")
    remote.agents["/c"] = lambda body: {"result": "C"}
    status = InMemoryStatusStore()

    with pytest.raises(DispatchError, match="b exploded"):
        await _orchestrator(remote, status_store=status).run(_parallel_config(False), run_id="run-1")

    for path in ("/a", "/b", "/c"):
        assert remote.count("POST", path) == 1
    record = await status.get_status("run-1")
    assert record.status == "failed"
    assert record.metadata["checkpoint"]["context"]["steps"] == {}


@pytest.mark.asyncio
async def test_parallel_merges_in_branch_order(remote):
    remote.workflow_states["slow"] = [{"status": "running"}, {"status": "completed", "result": "W"}]
    remote.agents["/fast"] = lambda body: {"result": "F"}

    outcome = await _orchestrator(remote).run(
        {
            "workflowPoll": {"intervalMs": 20},
            "steps": [
                {
                    "type": "parallel",
                    "steps": [
                        {"type": "workflow", "id": "slow", "workflow": "slow"},
                        {"type": "agent", "id": "fast", "agent": "/fast"},
                    ],
                }
            ],
        }
    )

    assert list(outcome.context.steps) == ["slow", "fast"]
    assert outcome.context.all == ["W", "F", {"results": ["W", "F"]}]


@pytest.mark.asyncio
async def test_continue_on_error_records_failure_and_runs_siblings(remote):
    remote.agents["/bad"] = _failing("nope")
    remote.agents["/good"] = lambda body: {"result": "ok"}

    outcome = await _orchestrator(remote).run(
        {
            "continueOnError": True,
            "steps": [
                {"type": "agent", "id": "bad", "agent": "/bad"},
                {"type": "agent", "agent": "/bad"},
                {"type": "agent", "id": "good", "agent": "/good"},
            ],
        }
    )

    assert outcome.status == "completed"
    assert outcome.result == "ok"
    assert [e.step for e in outcome.context.errors] == ["bad", "1-agent"]


@pytest.mark.asyncio
async def test_fail_fast_stops_at_first_error(remote):
    remote.agents["/bad"] = _failing("nope")
    remote.agents["/good"] = lambda body: {"result": "ok"}

    with pytest.raises(DispatchError):
        await _orchestrator(remote).run(
            {"steps": [{"type": "agent", "agent": "/bad"}, {"type": "agent", "agent": "/good"}]}
        )

    assert remote.count("POST", "/good") == 0


class _ForeignStep(AgentStep):
    """An agent step subclass the interpreter has no handler for."""


@pytest.mark.asyncio
async def test_unknown_step_type_is_fatal_even_with_continue_on_error(remote):
    config = OrchestrationConfig.model_construct(
        steps=[_ForeignStep(agent="/x")], continue_on_error=True
    )

    with pytest.raises(UnknownStepType):
        await _orchestrator(remote).run(config)


@pytest.mark.asyncio
async def test_invalid_config_rejected_before_side_effects(remote):
    status = InMemoryStatusStore()

    with pytest.raises(ConfigInvalid) as exc_info:
        await _orchestrator(remote, status_store=status).run(
            {"steps": [{"type": "agent", "id": "a", "agent": "/x"}, {"type": "agent", "id": "a"}]}
        )

    codes = {issue.code for issue in exc_info.value.issues}
    assert codes == {"DUPLICATE_STEP_ID", "INVALID_AGENT_STEP"}
    assert remote.calls == []
    assert await status.list_statuses() == []


@pytest.mark.asyncio
async def test_mistyped_step_field_raises_config_invalid(remote):
    status = InMemoryStatusStore()

    with pytest.raises(ConfigInvalid) as exc_info:
        await _orchestrator(remote, status_store=status).run(
            {"steps": [{"type": "sleep", "duration": "1ms"}, {"type": "hook", "token": 5}]},
            run_id="run-1",
        )

    issues = exc_info.value.issues
    assert issues
    assert {issue.code for issue in issues} == {"INVALID_CONFIG"}
    assert all(issue.step and issue.step.startswith("steps.1") for issue in issues)
    assert await status.list_statuses() == []

@pytest.mark.asyncio
async def test_status_store_failures_do_not_fail_the_run(remote):
    class BrokenStore(InMemoryStatusStore):
        async def set_status(self, run_id, **fields):
            raise RuntimeError("database is down")

    remote.agents["/x"] = lambda body: {"result": 1}

    outcome = await _orchestrator(remote, status_store=BrokenStore()).run(
        {"steps": [{"type": "agent", "agent": "/x"}]}
    )

    assert outcome.result == 1
