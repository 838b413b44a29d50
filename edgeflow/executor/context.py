"""Execution context classes."""

import copy
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import structlog

from edgeflow.config import Settings
from edgeflow.workflows.models import ExecutionMode, Workflow, WorkflowNode

from .data import Item, WaitRequest
from .errors import CredentialNotFoundError, ExecutionCancelledError, ExecutionTimeoutError
from .graph import ExecutionGraph
from .state import RunState

if TYPE_CHECKING:
    from edgeflow.credentials.service import CredentialLookup
    from edgeflow.executions.subworkflow import SubWorkflowInvoker

logger = structlog.get_logger()


class ExecutionContext:
    """Context for one run while a scheduler drives it.

    Holds the run state, the graph and the collaborators nodes reach
    through their helpers. Cancellation requested on a parent context is
    seen by every child run started from it.
    """

    def __init__(
        self,
        run_state: RunState,
        graph: ExecutionGraph,
        settings: Settings,
        credentials: Optional["CredentialLookup"] = None,
        invoker: Optional["SubWorkflowInvoker"] = None,
        parent: Optional["ExecutionContext"] = None,
    ):
        self.run_state = run_state
        self.graph = graph
        self.settings = settings
        self.credentials = credentials
        self.invoker = invoker
        self.parent = parent

        self._cancelled = False
        self._started = time.monotonic()
        self._credential_cache: Dict[str, Dict[str, Any]] = {}

        workflow_settings = run_state.workflow.settings
        self.timeout_seconds = workflow_settings.execution_timeout or settings.execution_timeout_seconds
        if workflow_settings.save_execution_progress is not None:
            self.save_progress = workflow_settings.save_execution_progress
        else:
            self.save_progress = settings.save_execution_progress

        # Logger with context
        self.logger = logger.bind(
            workflow_id=run_state.workflow_id,
            run_id=run_state.run_id,
            depth=run_state.depth,
        )

    @property
    def run_id(self) -> str:
        return self.run_state.run_id

    @property
    def depth(self) -> int:
        return self.run_state.depth

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self.parent.cancelled if self.parent is not None else False

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        self._cancelled = True
        self.logger.info("Execution cancellation requested")

    def check_cancelled(self) -> None:
        """Check if execution was cancelled and raise if so."""
        if self.cancelled:
            raise ExecutionCancelledError()

    def check_timeout(self) -> None:
        """Raise if the run used up its time budget."""
        if self.timeout_seconds is None:
            return
        if time.monotonic() - self._started > self.timeout_seconds:
            raise ExecutionTimeoutError(
                f"Run exceeded its time budget of {self.timeout_seconds}s",
                timeout_seconds=self.timeout_seconds,
            )

    def node_timeout(self, node: WorkflowNode) -> float:
        return node.timeout_seconds or self.settings.node_timeout_seconds

    def run_context(self, node_name: Optional[str] = None) -> Dict[str, Any]:
        """Description of the run handed to the credential lookup."""
        return {
            "run_id": self.run_id,
            "workflow_id": self.run_state.workflow_id,
            "node_name": node_name,
            "mode": self.run_state.mode.value,
        }

    async def load_credential(self, name: str, node_name: Optional[str] = None) -> Dict[str, Any]:
        """Resolve a credential by name, at most once per run context.

        Callers get their own copy, so a node changing it affects nobody else.
        """
        if self.credentials is None:
            raise CredentialNotFoundError(name)
        if name not in self._credential_cache:
            self._credential_cache[name] = await self.credentials.resolve_credential(
                name, self.run_context(node_name)
            )
        return copy.deepcopy(self._credential_cache[name])

    def create_helpers(self, node_name: str, run_index: int) -> "NodeHelpers":
        """Create runtime helpers for a node invocation."""
        return NodeHelpers(self, node_name, run_index)


class NodeHelpers:
    """Runtime helpers handed to a node's ``execute``."""

    def __init__(self, context: ExecutionContext, node_name: str, run_index: int):
        self._context = context
        self.node_name = node_name
        self.run_index = run_index
        self.logger = context.logger.bind(node_name=node_name)

    @property
    def run_id(self) -> str:
        return self._context.run_id

    @property
    def workflow(self) -> Workflow:
        return self._context.run_state.workflow

    @property
    def node(self) -> WorkflowNode:
        return self._context.graph.node(self.node_name)

    @property
    def mode(self) -> ExecutionMode:
        return self._context.run_state.mode

    @property
    def depth(self) -> int:
        return self._context.depth

    @property
    def static_data(self) -> Dict[str, Any]:
        """Run-scoped static data shared by all nodes of the run."""
        return self._context.run_state.static_data

    @property
    def node_state(self) -> Dict[str, Any]:
        """Private state of this node, kept across its invocations and suspensions."""
        return self._context.run_state.node_state.setdefault(self.node_name, {})

    async def get_credentials(self, slot: str) -> Dict[str, Any]:
        """Resolve the credential assigned to one of this node's slots."""
        name = self.node.credentials.get(slot)
        if name is None:
            raise CredentialNotFoundError(slot, details={"node_name": self.node_name, "slot": slot})
        return await self._context.load_credential(name, self.node_name)

    async def execute_workflow(
        self,
        workflow: Union[Workflow, str],
        items: List[Item],
    ) -> List[Item]:
        """Run a workflow (object or id) to completion and return its final items."""
        if self._context.invoker is None:
            raise RuntimeError("Sub-workflow execution is not available in this context")
        return await self._context.invoker.invoke(workflow, items, self._context, node_name=self.node_name)

    def wait(
        self,
        correlation: str,
        timeout_seconds: Optional[float] = None,
        output: Optional[str] = None
    ) -> WaitRequest:
        """Build a wait request to return from ``execute``."""
        return WaitRequest(correlation=correlation, timeout_seconds=timeout_seconds, output=output)
