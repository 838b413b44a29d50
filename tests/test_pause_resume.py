"""Test pause/resume execution functionality."""

import asyncio
from datetime import timedelta

import pytest

from edgeflow.executions.pause_resume import PauseResumeController
from edgeflow.executor.engine import WorkflowExecutionEngine
from edgeflow.executor.errors import (
    ExecutionNotWaitingError,
    ResumeKeyConflictError,
    ResumeKeyNotFoundError,
    WaitExpiredError,
)
from edgeflow.executor.state import RunState, WaitingNode, utcnow
from edgeflow.workflows.models import ExecutionStatus, NodeExecutionStatus, Workflow


@pytest.fixture
def approval_workflow(make_workflow) -> Workflow:
    """Trigger -> Wait (webhook) -> Set."""
    return make_workflow(
        workflow_id="wf-approval",
        nodes=[
            {"name": "Trigger", "type": "manual.trigger"},
            {"name": "Wait", "type": "wait", "parameters": {"resume": "webhook", "correlation": "approval"}},
            {"name": "Set", "type": "set", "parameters": {"values": {"answered": "{{ $json.answer }}"}}},
        ],
        connections=[("Trigger", "Wait"), ("Wait", "Set")],
    )


@pytest.fixture
def limited_wait_workflow(make_workflow) -> Workflow:
    """Trigger -> Wait with a one second limit -> NoOp."""
    return make_workflow(
        workflow_id="wf-limited",
        nodes=[
            {"name": "Trigger", "type": "manual.trigger"},
            {"name": "Wait", "type": "wait", "parameters": {"correlation": "reply", "limit_seconds": 1}},
            {"name": "After", "type": "noop"},
        ],
        connections=[("Trigger", "Wait"), ("Wait", "After")],
    )


@pytest.mark.integration
class TestWaitAndResume:
    """Runs that suspend on a wait node and resume later."""

    async def test_webhook_wait_then_resume(self, engine, store, approval_workflow, payloads):
        state = await engine.start_run(approval_workflow, [{"request": 1}])

        assert state.status == ExecutionStatus.WAITING
        assert state.resume_keys() == ["Wait:approval"]
        assert state.last_task("Wait").status == NodeExecutionStatus.WAITING
        assert state.last_task("Wait").resume_key == "Wait:approval"
        assert "Set" not in state.run_data
        assert await store.lookup_resume_key("Wait:approval") == state.run_id

        resumed = await engine.resume_run("Wait:approval", [{"answer": "yes"}])

        assert resumed.run_id == state.run_id
        assert resumed.status == ExecutionStatus.SUCCESS
        assert payloads(resumed.result_items()) == [{"answer": "yes", "answered": "yes"}]
        assert resumed.last_task("Wait").status == NodeExecutionStatus.SUCCESS
        assert resumed.waiting == {}
        assert await store.lookup_resume_key("Wait:approval") is None

    async def test_resume_on_fresh_engine(self, engine, store, registry, test_settings, approval_workflow, payloads):
        state = await engine.start_run(approval_workflow)
        assert state.status == ExecutionStatus.WAITING

        restarted = WorkflowExecutionEngine(store, registry=registry, settings=test_settings)
        resumed = await restarted.resume_run("Wait:approval", [{"answer": "no"}])

        assert resumed.status == ExecutionStatus.SUCCESS
        assert payloads(resumed.result_items()) == [{"answer": "no", "answered": "no"}]

    async def test_resume_with_no_items(self, engine, store, approval_workflow):
        state = await engine.start_run(approval_workflow, [{"request": 1}])

        resumed = await engine.resume_run("Wait:approval", [])

        assert resumed.run_id == state.run_id
        assert resumed.status == ExecutionStatus.SUCCESS
        assert resumed.node_output("Wait") == []
        assert "Set" not in resumed.run_data
        assert await store.lookup_resume_key("Wait:approval") is None

    async def test_resume_unknown_key(self, engine):
        with pytest.raises(ResumeKeyNotFoundError):
            await engine.resume_run("Nope:missing", [{}])

    async def test_resume_twice(self, engine, approval_workflow):
        await engine.start_run(approval_workflow)
        await engine.resume_run("Wait:approval", [{"answer": "yes"}])

        with pytest.raises(ResumeKeyNotFoundError):
            await engine.resume_run("Wait:approval", [{"answer": "again"}])

    async def test_conflicting_resume_key_fails_second_run(self, engine, store, approval_workflow):
        first = await engine.start_run(approval_workflow)
        second = await engine.start_run(approval_workflow)

        assert first.status == ExecutionStatus.WAITING
        assert second.status == ExecutionStatus.ERROR
        assert second.error.error_code == "RESUME_KEY_CONFLICT"
        assert second.error.details["holder_run_id"] == first.run_id
        assert await store.lookup_resume_key("Wait:approval") == first.run_id

    async def test_two_waits_in_one_run(self, engine, make_workflow, payloads):
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "WaitA", "type": "wait", "parameters": {"correlation": "a"}},
                {"name": "WaitB", "type": "wait", "parameters": {"correlation": "b"}},
                {"name": "Merge", "type": "merge"},
            ],
            connections=[
                ("Trigger", "WaitA"),
                ("Trigger", "WaitB"),
                ("WaitA", "Merge", "main", "input1"),
                ("WaitB", "Merge", "main", "input2"),
            ],
        )

        state = await engine.start_run(workflow)
        assert sorted(state.resume_keys()) == ["WaitA:a", "WaitB:b"]

        partial = await engine.resume_run("WaitA:a", [{"a": 1}])
        assert partial.status == ExecutionStatus.WAITING
        assert partial.resume_keys() == ["WaitB:b"]
        assert "Merge" not in partial.run_data

        done = await engine.resume_run("WaitB:b", [{"b": 2}])
        assert done.status == ExecutionStatus.SUCCESS
        assert payloads(done.result_items()) == [{"a": 1}, {"b": 2}]

    async def test_short_interval_wait_runs_in_place(self, engine, make_workflow):
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Wait", "type": "wait", "parameters": {
                    "resume": "time_interval", "amount": 10, "unit": "milliseconds",
                }},
            ],
            connections=[("Trigger", "Wait")],
        )

        state = await engine.start_run(workflow, [{"x": 1}])

        assert state.status == ExecutionStatus.SUCCESS
        assert state.result_items()[0].payload == {"x": 1}


@pytest.mark.integration
class TestExpiryAndCancel:
    """Wait limits and cancellation of suspended runs."""

    async def test_expired_wait_rejects_resume(self, engine, limited_wait_workflow):
        await engine.start_run(limited_wait_workflow, [{"x": 1}])

        with pytest.raises(WaitExpiredError):
            await engine.pause.take("Wait:reply", now=utcnow() + timedelta(seconds=5))

    async def test_resume_expired_uses_original_input(self, engine, limited_wait_workflow, payloads):
        state = await engine.start_run(limited_wait_workflow, [{"x": 1}])

        assert await engine.resume_expired(now=utcnow()) == []

        resumed = await engine.resume_expired(now=utcnow() + timedelta(seconds=5))

        assert len(resumed) == 1
        assert resumed[0].run_id == state.run_id
        assert resumed[0].status == ExecutionStatus.SUCCESS
        assert payloads(resumed[0].result_items()) == [{"x": 1}]

    async def test_long_interval_wait_suspends(self, engine, make_workflow):
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Wait", "type": "wait", "parameters": {
                    "resume": "time_interval", "amount": 2, "unit": "hours",
                }},
            ],
            connections=[("Trigger", "Wait")],
        )

        state = await engine.start_run(workflow, [{"x": 1}])

        assert state.status == ExecutionStatus.WAITING
        assert state.resume_keys() == [f"Wait:timer:{state.run_id}"]

        resumed = await engine.resume_expired(now=utcnow() + timedelta(hours=3))
        assert resumed[0].status == ExecutionStatus.SUCCESS

    async def test_cancel_waiting_run(self, engine, store, approval_workflow):
        state = await engine.start_run(approval_workflow)

        canceled = await engine.cancel_run(state.run_id)

        assert canceled.status == ExecutionStatus.CANCELED
        assert canceled.finished_at is not None
        assert await store.lookup_resume_key("Wait:approval") is None
        with pytest.raises(ResumeKeyNotFoundError):
            await engine.resume_run("Wait:approval", [{"answer": "late"}])

    async def test_cancel_finished_run_is_noop(self, engine, approval_workflow):
        state = await engine.start_run(approval_workflow)
        done = await engine.resume_run("Wait:approval", [{"answer": "yes"}])

        result = await engine.cancel_run(state.run_id)

        assert result.status == done.status == ExecutionStatus.SUCCESS


@pytest.mark.unit
class TestPauseResumeController:
    """Resume key ownership."""

    @pytest.fixture
    def controller(self, store) -> PauseResumeController:
        return PauseResumeController(store)

    @pytest.fixture
    def waiting_state(self, make_workflow) -> RunState:
        workflow = make_workflow(nodes=[{"name": "Trigger", "type": "manual.trigger"}])
        return RunState(workflow_id=workflow.id, workflow=workflow, status=ExecutionStatus.WAITING)

    def test_make_resume_key(self):
        assert PauseResumeController.make_resume_key("Wait", "order-42") == "Wait:order-42"

    async def test_register_conflict_between_runs(self, controller, waiting_state, make_workflow):
        other = RunState(workflow_id="wf-other", workflow=make_workflow(nodes=[], workflow_id="wf-other"))

        await controller.register_wait(waiting_state, "Wait:x")

        with pytest.raises(ResumeKeyConflictError) as exc_info:
            await controller.register_wait(other, "Wait:x")
        assert exc_info.value.holder_run_id == waiting_state.run_id

    async def test_take_requires_waiting_status(self, controller, store, waiting_state):
        await controller.register_wait(waiting_state, "Wait:x")
        waiting_state.status = ExecutionStatus.SUCCESS
        await store.save_run_state(waiting_state)

        with pytest.raises(ExecutionNotWaitingError):
            await controller.take("Wait:x")

    async def test_release_all(self, controller, store, waiting_state):
        for correlation in ("x", "y"):
            key = controller.make_resume_key("Wait", correlation)
            await controller.register_wait(waiting_state, key)
            waiting_state.waiting[key] = WaitingNode(
                node_name="Wait", correlation=correlation, resume_key=key, run_index=0
            )

        await controller.release_all(waiting_state)

        assert await store.lookup_resume_key("Wait:x") is None
        assert await store.lookup_resume_key("Wait:y") is None

    async def test_run_lock_is_dropped_after_use(self, controller):
        async with controller.run_lock("run-1"):
            assert "run-1" in controller._run_locks

        assert controller._run_locks == {}
        assert controller._lock_users == {}

    async def test_run_lock_serializes_and_then_drops(self, controller):
        order = []

        async def hold(tag: str) -> None:
            async with controller.run_lock("run-1"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(hold("a"), hold("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert controller._run_locks == {}

    async def test_run_lock_is_dropped_when_body_raises(self, controller):
        with pytest.raises(RuntimeError):
            async with controller.run_lock("run-1"):
                raise RuntimeError("boom")

        assert controller._run_locks == {}


@pytest.mark.integration
class TestResumeLocks:
    """Resumes leave no per-run state behind."""

    async def test_locks_released_after_resume_and_cancel(self, engine, approval_workflow):
        first = await engine.start_run(approval_workflow)
        await engine.resume_run("Wait:approval", [{"answer": "yes"}])

        second = await engine.start_run(approval_workflow)
        await engine.cancel_run(second.run_id)

        assert first.run_id != second.run_id
        assert engine.pause._run_locks == {}
