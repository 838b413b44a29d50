"""
Run scheduler.

Drives one run through its execution graph. Every connection carries a FIFO
of batches; a node becomes runnable once its input policy is satisfied:

- ``all_settled`` nodes take one batch from every incoming connection and
  concatenate them per input port in connection declaration order. They run
  when every connected required port got items, otherwise they are skipped
  and their outputs settle empty so downstream nodes are not left hanging.
- ``per_arrival`` nodes run once per non-empty batch.

Nodes made runnable by the same event are queued in declaration order.
Failed nodes with retries left are re-queued after their delay without
holding up other runnable nodes.
"""

import asyncio
import heapq
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Deque, Dict, Iterable, List, Optional

import structlog

from edgeflow.nodes.base import InputPolicy
from edgeflow.workflows.models import ExecutionStatus, NodeExecutionStatus

from .context import ExecutionContext
from .data import ErrorInfo, Item, TaskData, WaitRequest
from .errors import (
    ExecutionCancelledError,
    ExecutionError,
    ExecutionTimeoutError,
    NodeExecutionError,
    ResumeKeyConflictError,
    SchedulingLimitError,
)
from .expression_engine import ExpressionError
from .runner import NodeRunner
from .state import RunState, WaitingNode, utcnow

if TYPE_CHECKING:
    from edgeflow.executions.pause_resume import PauseResumeController
    from edgeflow.executions.store import RunStore

logger = structlog.get_logger()


@dataclass
class Job:
    """A node invocation waiting in the ready queue."""
    node_name: str
    inputs: Dict[str, List[Item]]
    attempt: int = 1
    first_started: Optional[datetime] = None


@dataclass(order=True)
class _DelayedJob:
    due: float
    sequence: int
    job: Job = field(compare=False)


class RunScheduler:
    """Advances a run from ``new`` or ``waiting`` to a terminal or ``waiting`` status."""

    def __init__(
        self,
        context: ExecutionContext,
        runner: NodeRunner,
        pause: "PauseResumeController",
        store: "RunStore",
    ):
        self.context = context
        self.state: RunState = context.run_state
        self.graph = context.graph
        self.runner = runner
        self.pause = pause
        self.store = store

        self._queue: Deque[Job] = deque()
        self._delayed: List[_DelayedJob] = []
        self._sequence = 0
        self._halted = False

        self.logger = context.logger.bind(component="run_scheduler")

    # Entry points

    async def start(self, initial_items: List[Item], start_node: Optional[str] = None) -> RunState:
        """Run from the start node with the trigger items."""
        start = self.graph.start_node(start_node)
        self.state.start_node = start

        reachable = self.graph.reachable_from(start)
        for node in self.graph.workflow.nodes:
            if node.name in reachable:
                continue
            # Connections from nodes this run never reaches settle empty
            for index in self.graph.outgoing_connections(node.name):
                target = self.graph.connection(index).target_node
                if target in reachable and target != start:
                    self._push(index, [])

        self.state.status = ExecutionStatus.RUNNING
        self.state.started_at = self.state.started_at or utcnow()
        await self.store.save_run_state(self.state)

        self.logger.info("Run started", start_node=start, items=len(initial_items))
        self._queue.append(Job(start, {"main": list(initial_items)}))
        return await self._run()

    async def resume(self, waiting: WaitingNode, items: List[Item]) -> RunState:
        """Continue a suspended run, using ``items`` as the waiting node's output."""
        name = waiting.node_name
        ports = self.graph.output_ports(name)
        outputs: Dict[str, List[Item]] = {port: [] for port in ports}
        outputs[waiting.output or self.graph.definition(name).main_output] = list(items)

        tasks = self.state.run_data.get(name, [])
        if waiting.run_index < len(tasks):
            task = tasks[waiting.run_index]
            finished = utcnow()
            task.status = NodeExecutionStatus.SUCCESS
            task.output = outputs
            task.finished_at = finished
            task.execution_time_ms = (finished - task.started_at).total_seconds() * 1000

        self.state.status = ExecutionStatus.RUNNING
        self.state.last_node_executed = name
        self.state.metrics.items_produced += len(items)
        await self.store.save_run_state(self.state)

        self.logger.info("Run resumed", node_name=name, resume_key=waiting.resume_key, items=len(items))
        self._schedule(self._route(name, outputs))
        return await self._run()

    # Main loop

    async def _run(self) -> RunState:
        try:
            while not self._halted:
                self.context.check_cancelled()
                job = await self._next_job()
                if job is None:
                    break
                # Retry delays may have slept through a cancel request
                self.context.check_cancelled()
                self.context.check_timeout()
                self.state.metrics.scheduling_steps += 1
                if self.state.metrics.scheduling_steps > self.context.settings.max_scheduling_steps:
                    raise SchedulingLimitError(self.context.settings.max_scheduling_steps)
                await self._process(job)

        except ExecutionCancelledError:
            self.logger.info("Run canceled")
            await self._finish(ExecutionStatus.CANCELED)
            return self.state

        except asyncio.CancelledError:
            # The driving task was cancelled, e.g. by a calling node's timeout
            self.logger.warning("Run task cancelled", node_name=self.state.last_node_executed)
            self.state.error = ErrorInfo.from_exception(ExecutionCancelledError("Run task was cancelled"))
            await self._finish(ExecutionStatus.CANCELED)
            raise

        except (ExecutionTimeoutError, SchedulingLimitError) as e:
            self.logger.error("Run aborted", error=str(e), error_type=type(e).__name__)
            self.state.error = ErrorInfo.from_exception(e)
            await self._finish(ExecutionStatus.ERROR)
            return self.state

        if self._halted:
            await self._finish(ExecutionStatus.ERROR)
        elif self.state.waiting:
            await self._finish(ExecutionStatus.WAITING)
        else:
            await self._finish(ExecutionStatus.SUCCESS)
        return self.state

    async def _next_job(self) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        now = loop.time()
        while self._delayed and self._delayed[0].due <= now:
            self._queue.append(heapq.heappop(self._delayed).job)

        if self._queue:
            return self._queue.popleft()

        if self._delayed:
            delay = self._delayed[0].due - now
            if delay > 0:
                await asyncio.sleep(delay)
            return heapq.heappop(self._delayed).job

        return None

    async def _process(self, job: Job) -> None:
        name = job.node_name
        node = self.graph.node(name)
        started = job.first_started or utcnow()
        run_index = self.state.next_run_index(name)

        if node.disabled:
            outputs = self.runner.passthrough(self.context, name, job.inputs)
            self._record(name, job, NodeExecutionStatus.DISABLED, started, outputs=outputs)
            await self._complete(name, outputs)
            return

        pinned = self.runner.pinned_output(self.context, name)
        if pinned is not None:
            self._record(name, job, NodeExecutionStatus.SUCCESS, started, outputs=pinned)
            await self._complete(name, pinned)
            return

        node_logger = self.logger.bind(node_name=name, node_type=node.type, attempt=job.attempt)
        node_logger.debug("Starting node execution", run_index=run_index)

        try:
            result = await self.runner.run_node(self.context, name, job.inputs, run_index)
        except ExecutionCancelledError:
            raise
        except (ExecutionError, ExpressionError) as e:
            await self._handle_failure(job, e, started)
            return
        except Exception as e:
            wrapped = NodeExecutionError(str(e) or type(e).__name__, node_name=name, node_type=node.type, cause=e)
            await self._handle_failure(job, wrapped, started)
            return

        if isinstance(result, WaitRequest):
            await self._register_wait(job, result, started, run_index)
            return

        self.state.metrics.nodes_executed += 1
        self._record(name, job, NodeExecutionStatus.SUCCESS, started, outputs=result)
        node_logger.debug(
            "Node execution completed",
            outputs={port: len(items) for port, items in result.items()},
        )
        await self._complete(name, result)

    async def _complete(self, name: str, outputs: Dict[str, List[Item]]) -> None:
        self.state.last_node_executed = name
        self.state.metrics.items_produced += sum(len(items) for items in outputs.values())
        self._schedule(self._route(name, outputs))
        await self._save_progress()

    async def _handle_failure(self, job: Job, error: Exception, started) -> None:
        name = job.node_name
        node = self.graph.node(name)
        recoverable = not isinstance(error, ResumeKeyConflictError)

        if recoverable and job.attempt <= node.max_retries:
            self.state.metrics.retries += 1
            delay = node.wait_between_tries / 1000.0
            self.logger.warning(
                "Node failed, will retry",
                node_name=name,
                attempt=job.attempt,
                max_retries=node.max_retries,
                retry_in_seconds=delay,
                error=str(error),
            )
            self._sequence += 1
            due = asyncio.get_running_loop().time() + delay
            heapq.heappush(self._delayed, _DelayedJob(
                due, self._sequence,
                Job(name, job.inputs, attempt=job.attempt + 1, first_started=started),
            ))
            return

        info = ErrorInfo.from_exception(error, node_name=name)
        self.state.metrics.nodes_failed += 1

        if recoverable and node.continue_on_fail:
            self.logger.warning(
                "Node failed, continuing",
                node_name=name,
                attempts=job.attempt,
                error=str(error),
                error_type=type(error).__name__,
            )
            outputs: Dict[str, List[Item]] = {port: [] for port in self.graph.output_ports(name)}
            if outputs:
                main = self.graph.definition(name).main_output
                outputs[main] = [Item(json={"error": info.message, "node": name}, error=info.model_dump())]
            self._record(name, job, NodeExecutionStatus.ERROR, started, outputs=outputs, error=info)
            await self._complete(name, outputs)
            return

        self.logger.error(
            "Node execution failed",
            node_name=name,
            attempts=job.attempt,
            error=str(error),
            error_type=type(error).__name__,
        )
        self._record(name, job, NodeExecutionStatus.ERROR, started, error=info)
        self.state.error = info
        self.state.last_node_executed = name
        self._halted = True

    async def _register_wait(self, job: Job, request: WaitRequest, started, run_index: int) -> None:
        name = job.node_name
        resume_key = self.pause.make_resume_key(name, request.correlation)
        try:
            await self.pause.register_wait(self.state, resume_key)
        except ResumeKeyConflictError as e:
            await self._handle_failure(job, e, started)
            return

        expires_at = None
        if request.timeout_seconds is not None:
            expires_at = utcnow() + timedelta(seconds=request.timeout_seconds)

        self.state.waiting[resume_key] = WaitingNode(
            node_name=name,
            correlation=request.correlation,
            resume_key=resume_key,
            run_index=run_index,
            output=request.output or self.graph.definition(name).main_output,
            input=job.inputs,
            expires_at=expires_at,
        )
        self._record(
            name, job, NodeExecutionStatus.WAITING, started, resume_key=resume_key, finished=False
        )
        self.logger.info("Node is waiting", node_name=name, resume_key=resume_key, expires_at=expires_at)
        await self._save_progress()

    # Data routing

    def _route(self, name: str, outputs: Dict[str, List[Item]]) -> List[str]:
        """Push outputs along outgoing connections; returns the touched targets."""
        controller = self.graph.definition(name).is_loop_controller
        touched = []
        for index in self.graph.outgoing_connections(name):
            connection = self.graph.connection(index)
            items = outputs.get(connection.source_output, [])
            if controller and not items:
                # Loop controllers only signal the ports they actually emit on
                continue
            self._push(index, items)
            touched.append(connection.target_node)
        return touched

    def _push(self, index: int, items: List[Item]) -> None:
        self.state.scheduler.inboxes.setdefault(index, []).append(list(items))

    def _pending(self, name: str) -> Dict[int, int]:
        inboxes = self.state.scheduler.inboxes
        return {index: len(inboxes.get(index, [])) for index in self.graph.incoming_connections(name)}

    def _schedule(self, touched: Iterable[str]) -> None:
        """Queue every touched node that became runnable, in declaration order."""
        worklist = deque(self.graph.sort_by_declaration(touched))
        while worklist:
            name = worklist.popleft()
            if self.graph.definition(name).input_policy == InputPolicy.PER_ARRIVAL:
                settled = self._collect_per_arrival(name)
            else:
                settled = self._collect_all_settled(name)
            for target in self.graph.sort_by_declaration(settled):
                if target not in worklist:
                    worklist.append(target)

    def _collect_all_settled(self, name: str) -> List[str]:
        definition = self.graph.definition(name)
        inboxes = self.state.scheduler.inboxes
        incoming = self.graph.incoming_connections(name)
        touched: List[str] = []

        while self.graph.is_ready(name, self._pending(name)):
            inputs: Dict[str, List[Item]] = {port.name: [] for port in definition.inputs}
            for index in incoming:
                batch = inboxes[index].pop(0)
                inputs.setdefault(self.graph.target_port(index), []).extend(batch)

            connected = {self.graph.target_port(index) for index in incoming}
            missing_required = any(
                port.required and port.name in connected and not inputs.get(port.name)
                for port in definition.inputs
            )
            if missing_required or not any(inputs.values()):
                touched.extend(self._skip(name))
            else:
                self._queue.append(Job(name, inputs))

        return touched

    def _collect_per_arrival(self, name: str) -> List[str]:
        definition = self.graph.definition(name)
        snapshot = self.state.scheduler
        inboxes = snapshot.inboxes
        arrived = snapshot.arrived.setdefault(name, [])

        for index in self.graph.incoming_connections(name):
            batches = inboxes.get(index, [])
            while batches:
                batch = batches.pop(0)
                if index not in arrived:
                    arrived.append(index)
                port = self.graph.target_port(index)
                if batch or (definition.is_loop_controller and index in self.graph.back_edges):
                    inputs: Dict[str, List[Item]] = {p.name: [] for p in definition.inputs}
                    inputs[port] = batch
                    self._queue.append(Job(name, inputs))

        forward = self.graph.forward_incoming(name)
        if (
            name not in snapshot.settled
            and forward
            and all(index in arrived for index in forward)
            and not self.state.tasks(name)
            and not self._has_job(name)
        ):
            snapshot.settled.append(name)
            return self._skip(name)
        return []

    def _has_job(self, name: str) -> bool:
        return any(job.node_name == name for job in self._queue) or any(
            delayed.job.node_name == name for delayed in self._delayed
        )

    def _skip(self, name: str) -> List[str]:
        """Settle a node that will not run: all its outputs go out empty."""
        self.state.metrics.nodes_skipped += 1
        self.logger.debug("Node skipped, no input items", node_name=name)
        outputs = {port: [] for port in self.graph.output_ports(name)}
        return self._route(name, outputs)

    # Bookkeeping

    def _record(
        self,
        name: str,
        job: Job,
        status: NodeExecutionStatus,
        started,
        outputs: Optional[Dict[str, List[Item]]] = None,
        error: Optional[ErrorInfo] = None,
        resume_key: Optional[str] = None,
        finished: bool = True,
    ) -> TaskData:
        finished_at = utcnow() if finished else None
        task = TaskData(
            run_index=self.state.next_run_index(name),
            status=status,
            started_at=started,
            finished_at=finished_at,
            execution_time_ms=(finished_at - started).total_seconds() * 1000 if finished_at else None,
            attempts=job.attempt,
            input=job.inputs,
            output=outputs or {},
            parameters=dict(self.graph.node(name).parameters),
            error=error,
            resume_key=resume_key,
        )
        self.state.add_task(name, task)
        return task

    async def _save_progress(self) -> None:
        if self.context.save_progress:
            await self.store.save_run_state(self.state)

    async def _finish(self, status: ExecutionStatus) -> None:
        self.state.status = status
        if status == ExecutionStatus.WAITING:
            await self.pause.suspend(self.state)
            self.logger.info("Run suspended", resume_keys=self.state.resume_keys())
            return

        self.state.finished_at = utcnow()
        if self.state.waiting:
            await self.pause.release_all(self.state)
        await self.store.save_run_state(self.state)
        self.logger.info(
            "Run finished",
            status=status.value,
            nodes_executed=self.state.metrics.nodes_executed,
            error=self.state.error.message if self.state.error else None,
        )
