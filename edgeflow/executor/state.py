"""Run state records persisted between scheduling steps."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from edgeflow.workflows.models import ExecutionMode, ExecutionStatus, NodeExecutionStatus, Workflow

from .data import ErrorInfo, ExecutionMetrics, Item, TaskData


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerSnapshot(BaseModel):
    """Continuation point of a run scheduler.

    ``inboxes`` maps a connection index to the batches pushed along it and
    not yet consumed. An empty batch means the source settled without
    producing items on that port.
    """

    inboxes: Dict[int, List[List[Item]]] = Field(default_factory=dict)
    arrived: Dict[str, List[int]] = Field(
        default_factory=dict, description="Connections that delivered to per-arrival nodes"
    )
    settled: List[str] = Field(
        default_factory=list, description="Per-arrival nodes that already propagated empty output"
    )


class WaitingNode(BaseModel):
    """A node of a run waiting for an external event."""

    node_name: str
    correlation: str
    resume_key: str
    run_index: int
    output: Optional[str] = None
    input: Dict[str, List[Item]] = Field(default_factory=dict)
    registered_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


class RunState(BaseModel):
    """Per-run record, mutated only by the scheduler and the pause/resume controller."""

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    workflow: Workflow
    mode: ExecutionMode = ExecutionMode.MANUAL
    status: ExecutionStatus = ExecutionStatus.NEW
    start_node: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    run_data: Dict[str, List[TaskData]] = Field(default_factory=dict)
    static_data: Dict[str, Any] = Field(default_factory=dict)
    node_state: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    scheduler: SchedulerSnapshot = Field(default_factory=SchedulerSnapshot)
    waiting: Dict[str, WaitingNode] = Field(default_factory=dict)

    error: Optional[ErrorInfo] = None
    last_node_executed: Optional[str] = None
    parent_run_id: Optional[str] = None
    depth: int = 0
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    def tasks(self, node_name: str) -> List[TaskData]:
        return self.run_data.get(node_name, [])

    def last_task(self, node_name: str) -> Optional[TaskData]:
        tasks = self.run_data.get(node_name)
        return tasks[-1] if tasks else None

    def add_task(self, node_name: str, task: TaskData) -> None:
        self.run_data.setdefault(node_name, []).append(task)

    def next_run_index(self, node_name: str) -> int:
        return len(self.run_data.get(node_name, []))

    def node_output(self, node_name: str, port: Optional[str] = None, run_index: int = -1) -> List[Item]:
        """Items a node produced in one of its runs (the latest by default)."""
        tasks = [
            task for task in self.run_data.get(node_name, [])
            if task.status in (NodeExecutionStatus.SUCCESS, NodeExecutionStatus.DISABLED)
            or task.error is not None
        ]
        if not tasks:
            return []
        try:
            task = tasks[run_index]
        except IndexError:
            return []
        return task.output_items(port)

    def result_items(self) -> List[Item]:
        """Final output: first non-empty port of the last executed node."""
        if not self.last_node_executed:
            return []
        task = self.last_task(self.last_node_executed)
        return task.output_items() if task else []

    def resume_keys(self) -> List[str]:
        return list(self.waiting)
