"""Sub-workflow execution: runs a child workflow on behalf of a node."""

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Union

import structlog

from edgeflow.executor.context import ExecutionContext
from edgeflow.executor.data import ErrorInfo, Item
from edgeflow.executor.errors import (
    ExecutionCancelledError,
    MaxSubWorkflowDepthExceededError,
    NodeExecutionError,
)
from edgeflow.executor.state import RunState, utcnow
from edgeflow.workflows.models import ExecutionMode, ExecutionStatus, Workflow

if TYPE_CHECKING:
    from edgeflow.executor.engine import WorkflowExecutionEngine

logger = structlog.get_logger()


@dataclass
class SubWorkflowResult:
    """Outcome of a child run."""
    run_id: str
    workflow_id: str
    status: ExecutionStatus
    items: List[Item]
    error: Optional[ErrorInfo] = None


class SubWorkflowInvoker:
    """Starts child runs for nodes and for error workflows.

    A child run shares the parent's engine, store and settings, runs one
    level deeper and sees cancellation of its parent.
    """

    def __init__(self, engine: "WorkflowExecutionEngine"):
        self.engine = engine
        self.logger = logger.bind(component="subworkflow_invoker")

    async def invoke(
        self,
        workflow: Union[Workflow, str],
        items: List[Item],
        parent: ExecutionContext,
        node_name: Optional[str] = None
    ) -> List[Item]:
        """
        Run a child workflow to completion and return its final items.

        Raises:
            MaxSubWorkflowDepthExceededError: If the child would run too deep
            WorkflowNotFoundError: If a workflow id is unknown to the store
            GraphError: If the child workflow is invalid
            NodeExecutionError: If the child run does not succeed
            ExecutionCancelledError: If the parent run was cancelled
        """
        result = await self.run(workflow, items, parent)

        if result.status == ExecutionStatus.SUCCESS:
            return result.items

        if result.status == ExecutionStatus.CANCELED and parent.cancelled:
            raise ExecutionCancelledError()

        reason = result.error.message if result.error else f"ended with status {result.status.value}"
        raise NodeExecutionError(
            f"Sub-workflow '{result.workflow_id}' failed: {reason}",
            node_name=node_name or parent.run_state.last_node_executed or "",
            details={
                "child_run_id": result.run_id,
                "child_status": result.status.value,
                "child_error": result.error.model_dump() if result.error else None,
            },
        )

    async def run(
        self,
        workflow: Union[Workflow, str],
        items: List[Item],
        parent: ExecutionContext
    ) -> SubWorkflowResult:
        """Run a child workflow and report how it ended."""
        depth = parent.depth + 1
        max_depth = self.engine.settings.max_subworkflow_depth
        if depth > max_depth:
            raise MaxSubWorkflowDepthExceededError(depth, max_depth)

        if isinstance(workflow, str):
            workflow = await self.engine.store.load_workflow(workflow)

        self.logger.info(
            "Starting sub-workflow",
            parent_run_id=parent.run_id,
            workflow_id=workflow.id,
            depth=depth,
            items=len(items),
        )

        state = await self.engine.execute(
            workflow,
            items,
            mode=ExecutionMode.SUBWORKFLOW,
            parent=parent,
        )

        if state.status == ExecutionStatus.WAITING:
            # Child runs cannot outlive the node that started them
            await self._abandon(state)

        return SubWorkflowResult(
            run_id=state.run_id,
            workflow_id=workflow.id,
            status=state.status,
            items=state.result_items() if state.status == ExecutionStatus.SUCCESS else [],
            error=state.error,
        )

    async def _abandon(self, state: RunState) -> None:
        self.logger.warning(
            "Sub-workflow tried to wait, canceling it",
            run_id=state.run_id,
            resume_keys=state.resume_keys(),
        )
        await self.engine.pause.release_all(state)
        state.status = ExecutionStatus.CANCELED
        state.finished_at = utcnow()
        state.error = ErrorInfo(
            type="SubWorkflowWaitError",
            message="Sub-workflows cannot wait for external events",
            error_code="SUBWORKFLOW_WAITING",
        )
        await self.engine.store.save_run_state(state)

    async def trigger_error_workflow(self, failed: RunState) -> Optional[RunState]:
        """Run the failed run's error workflow, if one is configured.

        Failures of the error workflow itself are logged, never raised.
        """
        error_workflow_id = failed.workflow.settings.error_workflow_id
        if not error_workflow_id or failed.mode == ExecutionMode.ERROR:
            return None

        item = Item(json={
            "execution": {
                "id": failed.run_id,
                "mode": failed.mode.value,
                "error": failed.error.model_dump() if failed.error else None,
                "last_node_executed": failed.last_node_executed,
            },
            "workflow": {
                "id": failed.workflow_id,
                "name": failed.workflow.name,
            },
        })

        try:
            workflow = await self.engine.store.load_workflow(error_workflow_id)
            state = await self.engine.execute(
                workflow,
                [item],
                mode=ExecutionMode.ERROR,
                parent_run_id=failed.run_id,
            )
        except Exception as e:
            self.logger.error(
                "Error workflow could not run",
                run_id=failed.run_id,
                error_workflow_id=error_workflow_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        self.logger.info(
            "Error workflow finished",
            run_id=failed.run_id,
            error_run_id=state.run_id,
            status=state.status.value,
        )
        return state
