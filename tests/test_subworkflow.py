"""Test sub-workflow execution."""

import pytest

from edgeflow.executor.engine import WorkflowExecutionEngine
from edgeflow.executor.errors import MaxSubWorkflowDepthExceededError, WorkflowNotFoundError
from edgeflow.workflows.models import ExecutionMode, ExecutionStatus


@pytest.fixture
def child_workflow(make_workflow):
    return make_workflow(
        workflow_id="wf-child",
        nodes=[
            {"name": "Start", "type": "manual.trigger"},
            {"name": "Double", "type": "test.double"},
        ],
        connections=[("Start", "Double")],
    )


@pytest.mark.integration
class TestExecuteWorkflowNode:
    """Sub-workflows started from the execute_workflow node."""

    async def test_inline_sub_workflow(self, engine, make_workflow, child_workflow, payloads):
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Call", "type": "execute_workflow", "parameters": {
                    "workflow": child_workflow.model_dump(mode="json"),
                }},
            ],
            connections=[("Trigger", "Call")],
        )

        state = await engine.start_run(workflow, [{"val": 1}, {"val": 2}])

        assert state.status == ExecutionStatus.SUCCESS
        assert payloads(state.result_items()) == [{"val": 2}, {"val": 4}]

    async def test_sub_workflow_by_id(self, engine, store, make_workflow, child_workflow, payloads):
        await store.save_workflow(child_workflow)
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Call", "type": "execute_workflow", "parameters": {"workflow_id": "wf-child"}},
            ],
            connections=[("Trigger", "Call")],
        )

        state = await engine.start_run(workflow, [{"val": 3}])

        assert payloads(state.result_items()) == [{"val": 6}]
        children = [s for s in await store.list_run_states() if s.mode == ExecutionMode.SUBWORKFLOW]
        assert len(children) == 1
        assert children[0].parent_run_id == state.run_id
        assert children[0].depth == 1

    async def test_each_mode_runs_once_per_item(self, engine, store, make_workflow, child_workflow, payloads):
        await store.save_workflow(child_workflow)
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Call", "type": "execute_workflow", "parameters": {
                    "workflow_id": "wf-child", "mode": "each",
                }},
            ],
            connections=[("Trigger", "Call")],
        )

        state = await engine.start_run(workflow, [{"val": 1}, {"val": 5}])

        assert payloads(state.result_items()) == [{"val": 2}, {"val": 10}]
        children = [s for s in await store.list_run_states() if s.mode == ExecutionMode.SUBWORKFLOW]
        assert len(children) == 2

    async def test_failing_sub_workflow_fails_node(self, engine, make_workflow):
        child = make_workflow(
            workflow_id="wf-broken",
            nodes=[
                {"name": "Start", "type": "manual.trigger"},
                {"name": "Fail", "type": "test.fail", "parameters": {"message": "child broke"}},
            ],
            connections=[("Start", "Fail")],
        )
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Call", "type": "execute_workflow", "parameters": {"workflow": child.model_dump(mode="json")}},
            ],
            connections=[("Trigger", "Call")],
        )

        state = await engine.start_run(workflow)

        assert state.status == ExecutionStatus.ERROR
        assert state.error.node_name == "Call"
        assert "child broke" in state.error.message
        assert state.error.details["child_error"]["node_name"] == "Fail"

    async def test_unknown_sub_workflow_id(self, engine, make_workflow):
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Call", "type": "execute_workflow", "parameters": {"workflow_id": "nope"}},
            ],
            connections=[("Trigger", "Call")],
        )

        state = await engine.start_run(workflow)

        assert state.status == ExecutionStatus.ERROR
        assert state.error.error_code == "WORKFLOW_NOT_FOUND"

    async def test_waiting_sub_workflow_is_canceled(self, engine, store, make_workflow):
        child = make_workflow(
            workflow_id="wf-waits",
            nodes=[
                {"name": "Start", "type": "manual.trigger"},
                {"name": "Wait", "type": "wait", "parameters": {"correlation": "child"}},
            ],
            connections=[("Start", "Wait")],
        )
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Call", "type": "execute_workflow", "parameters": {"workflow": child.model_dump(mode="json")}},
            ],
            connections=[("Trigger", "Call")],
        )

        state = await engine.start_run(workflow)

        assert state.status == ExecutionStatus.ERROR
        children = [s for s in await store.list_run_states() if s.mode == ExecutionMode.SUBWORKFLOW]
        assert children[0].status == ExecutionStatus.CANCELED
        assert await store.lookup_resume_key("Wait:child") is None


@pytest.mark.integration
class TestDepthLimit:
    """Nesting depth of sub-workflows is bounded."""

    async def test_recursive_workflow_hits_depth_limit(self, store, registry, test_settings, make_workflow):
        settings = test_settings.model_copy(update={"max_subworkflow_depth": 2})
        engine = WorkflowExecutionEngine(store, registry=registry, settings=settings)
        recursive = make_workflow(
            workflow_id="wf-recursive",
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Call", "type": "execute_workflow", "parameters": {"workflow_id": "wf-recursive"}},
            ],
            connections=[("Trigger", "Call")],
        )
        await store.save_workflow(recursive)

        state = await engine.run_workflow("wf-recursive")

        assert state.status == ExecutionStatus.ERROR
        depths = sorted(s.depth for s in await store.list_run_states())
        assert depths == [0, 1, 2]

        # The innermost run reports the limit; each parent wraps its child's error
        innermost = max(await store.list_run_states(), key=lambda s: s.depth)
        assert innermost.error.error_code == "MAX_SUBWORKFLOW_DEPTH"

    async def test_depth_check_before_loading(self, engine, make_workflow):
        settings = engine.settings.model_copy(update={"max_subworkflow_depth": 0})
        engine.settings = settings
        workflow = make_workflow(
            nodes=[
                {"name": "Trigger", "type": "manual.trigger"},
                {"name": "Call", "type": "execute_workflow", "parameters": {"workflow_id": "nope"}},
            ],
            connections=[("Trigger", "Call")],
        )

        state = await engine.start_run(workflow)

        assert state.error.error_code == "MAX_SUBWORKFLOW_DEPTH"
        assert state.error.type == MaxSubWorkflowDepthExceededError.__name__


@pytest.mark.unit
async def test_run_workflow_unknown_id(engine):
    with pytest.raises(WorkflowNotFoundError):
        await engine.run_workflow("missing")
