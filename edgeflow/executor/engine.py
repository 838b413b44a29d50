"""Main workflow execution engine."""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from edgeflow.config import Settings, get_settings
from edgeflow.credentials.service import CachingCredentialLookup, CredentialLookup
from edgeflow.executions.pause_resume import PauseResumeController
from edgeflow.executions.store import RunStore
from edgeflow.executions.subworkflow import SubWorkflowInvoker
from edgeflow.nodes.registry import NodeRegistry, get_default_registry
from edgeflow.workflows.models import ExecutionMode, ExecutionStatus, Workflow

from .context import ExecutionContext
from .data import Item, coerce_items
from .errors import ExecutionNotWaitingError, ResumeKeyNotFoundError
from .expression_engine import ExpressionEngine
from .graph import ExecutionGraph
from .runner import NodeRunner
from .scheduler import RunScheduler
from .state import RunState, utcnow

logger = structlog.get_logger()


class WorkflowExecutionEngine:
    """
    Entry point for starting, resuming, cancelling and inspecting runs.

    One engine serves any number of concurrent runs. Runs share the node
    registry, the expression cache and the store; everything else lives in
    the run's own state.
    """

    def __init__(
        self,
        store: RunStore,
        registry: Optional[NodeRegistry] = None,
        credentials: Optional[CredentialLookup] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.registry = registry or get_default_registry()
        self.settings = settings or get_settings()

        if credentials is not None and self.settings.credential_cache_ttl_seconds > 0:
            credentials = CachingCredentialLookup(credentials, self.settings.credential_cache_ttl_seconds)
        self.credentials = credentials

        self.expressions = ExpressionEngine(cache_size=self.settings.expression_cache_size)
        self.runner = NodeRunner(self.expressions)
        self.pause = PauseResumeController(store)
        self.invoker = SubWorkflowInvoker(self)

        self._active: Dict[str, ExecutionContext] = {}
        self.logger = logger.bind(component="execution_engine")

    # Public API

    async def start_run(
        self,
        workflow: Workflow,
        initial_items: Optional[List[Any]] = None,
        mode: ExecutionMode = ExecutionMode.MANUAL,
        start_node: Optional[str] = None,
    ) -> RunState:
        """
        Start a run and drive it until it finishes or suspends.

        ``initial_items`` are handed to the start node; when omitted the
        start node receives a single empty item. An empty list starts the
        run with no items, so nothing after the start node runs.

        Raises:
            GraphError: If the workflow is structurally invalid. Nothing is
                persisted in that case.
        """
        items = coerce_items(initial_items) if initial_items is not None else [Item(json={})]
        state = await self.execute(workflow, items, mode=mode, start_node=start_node)
        await self._after_run(state)
        return state

    async def run_workflow(
        self,
        workflow_id: str,
        initial_items: Optional[List[Any]] = None,
        mode: ExecutionMode = ExecutionMode.TRIGGER,
        start_node: Optional[str] = None,
    ) -> RunState:
        """Start a run of a workflow kept in the store."""
        workflow = await self.store.load_workflow(workflow_id)
        return await self.start_run(workflow, initial_items, mode=mode, start_node=start_node)

    async def resume_run(self, resume_key: str, new_items: Optional[List[Any]] = None) -> RunState:
        """
        Resume the run waiting on ``resume_key``.

        ``new_items`` become the output of the waiting node; when omitted it
        emits a single empty item. An empty list resumes with no items.

        Raises:
            ResumeKeyNotFoundError: If no waiting run holds the key
            ExecutionNotWaitingError: If the holding run is not waiting
            WaitExpiredError: If the wait's time limit has passed
        """
        items = coerce_items(new_items) if new_items is not None else [Item(json={})]
        return await self._resume(resume_key, items)

    async def resume_expired(self, now: Optional[datetime] = None) -> List[RunState]:
        """Resume every wait whose time limit passed, with the node's original input."""
        resumed = []
        for resume_key in await self.pause.expired(now):
            try:
                resumed.append(await self._resume(resume_key, None, now=now, allow_expired=True))
            except (ResumeKeyNotFoundError, ExecutionNotWaitingError) as e:
                # An earlier resume of the same run already settled this wait
                self.logger.debug("Skipping expired wait", resume_key=resume_key, reason=str(e))
        return resumed

    async def cancel_run(self, run_id: str) -> RunState:
        """
        Cancel a run.

        A run driven by this engine stops before its next node. A suspended
        run is marked canceled and gives up its resume keys. Finished runs
        are returned unchanged.

        Raises:
            RunNotFoundError: If the run is unknown
        """
        context = self._active.get(run_id)
        if context is not None:
            context.cancel()
            return context.run_state

        state = await self.store.load_run_state(run_id)
        if state.is_finished:
            return state

        async with self.pause.run_lock(run_id):
            await self.pause.release_all(state)
            state.status = ExecutionStatus.CANCELED
            state.finished_at = utcnow()
            await self.store.save_run_state(state)

        self.logger.info("Run canceled", run_id=run_id)
        return state

    async def get_run_state(self, run_id: str) -> RunState:
        """
        Snapshot of a run's state.

        Raises:
            RunNotFoundError: If the run is unknown
        """
        context = self._active.get(run_id)
        if context is not None:
            return context.run_state.model_copy(deep=True)
        return await self.store.load_run_state(run_id)

    def active_run_ids(self) -> List[str]:
        """Runs currently driven by this engine."""
        return list(self._active)

    # Internals

    async def execute(
        self,
        workflow: Workflow,
        items: List[Item],
        mode: ExecutionMode = ExecutionMode.MANUAL,
        start_node: Optional[str] = None,
        parent: Optional[ExecutionContext] = None,
        parent_run_id: Optional[str] = None,
    ) -> RunState:
        """Build the graph and drive a new run; used for top-level and child runs."""
        graph = ExecutionGraph.build(workflow, self.registry)

        state = RunState(
            workflow_id=workflow.id,
            workflow=workflow,
            mode=mode,
            static_data=copy.deepcopy(workflow.static_data),
            parent_run_id=parent.run_id if parent is not None else parent_run_id,
            depth=parent.depth + 1 if parent is not None else 0,
        )
        context = self._create_context(state, graph, parent)

        self._active[state.run_id] = context
        try:
            return await self._scheduler(context).start(items, start_node)
        finally:
            self._active.pop(state.run_id, None)

    async def _resume(
        self,
        resume_key: str,
        items: Optional[List[Item]],
        now: Optional[datetime] = None,
        allow_expired: bool = False,
    ) -> RunState:
        run_id = await self.pause.lookup(resume_key)

        async with self.pause.run_lock(run_id):
            state, waiting = await self.pause.take(resume_key, now=now, allow_expired=allow_expired)
            if items is None:
                items = list(waiting.input.get("main", []))

            graph = ExecutionGraph.build(state.workflow, self.registry)
            context = self._create_context(state, graph)

            self._active[run_id] = context
            try:
                state = await self._scheduler(context).resume(waiting, items)
            finally:
                self._active.pop(run_id, None)

        await self._after_run(state)
        return state

    def _create_context(
        self,
        state: RunState,
        graph: ExecutionGraph,
        parent: Optional[ExecutionContext] = None
    ) -> ExecutionContext:
        return ExecutionContext(
            state,
            graph,
            self.settings,
            credentials=self.credentials,
            invoker=self.invoker,
            parent=parent,
        )

    def _scheduler(self, context: ExecutionContext) -> RunScheduler:
        return RunScheduler(context, self.runner, self.pause, self.store)

    async def _after_run(self, state: RunState) -> None:
        if state.status == ExecutionStatus.ERROR and state.parent_run_id is None:
            await self.invoker.trigger_error_workflow(state)
