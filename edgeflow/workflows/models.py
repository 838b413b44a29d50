"""Workflow data models."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecutionMode(str, Enum):
    """Execution mode enumeration."""
    MANUAL = "manual"
    TRIGGER = "trigger"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    SUBWORKFLOW = "subworkflow"
    ERROR = "error"


class ExecutionStatus(str, Enum):
    """Execution status enumeration."""
    NEW = "new"
    RUNNING = "running"
    WAITING = "waiting"
    SUCCESS = "success"
    ERROR = "error"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.ERROR, ExecutionStatus.CANCELED)


class NodeExecutionStatus(str, Enum):
    """Node execution status enumeration."""
    SUCCESS = "success"
    ERROR = "error"
    WAITING = "waiting"
    DISABLED = "disabled"
    SKIPPED = "skipped"


class WorkflowNode(BaseModel):
    """A node placed in a workflow."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique node name within the workflow")
    type: str = Field(..., description="Registered node type key")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Raw parameter expressions")
    credentials: Dict[str, str] = Field(
        default_factory=dict, description="Credential slot to credential name"
    )

    # Node settings
    disabled: bool = Field(default=False, description="Skip execution and pass input through")
    continue_on_fail: bool = Field(default=False, description="Convert failures into error items")
    max_retries: int = Field(default=0, ge=0, description="Number of retries after a failure")
    wait_between_tries: int = Field(default=1000, ge=0, description="Retry delay in milliseconds")
    timeout_seconds: Optional[float] = Field(default=None, gt=0, description="Invocation timeout")
    pinned_data: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Fixed output items used instead of executing"
    )

    position: Optional[List[float]] = Field(default=None, description="Editor position")
    notes: Optional[str] = Field(default=None, description="Node notes")


class Connection(BaseModel):
    """Directed edge from a node output port to a node input port."""

    model_config = ConfigDict(frozen=True)

    source_node: str = Field(..., description="Source node name")
    source_output: str = Field(default="main", description="Source output port")
    target_node: str = Field(..., description="Target node name")
    target_input: Optional[str] = Field(default=None, description="Target input port")
    input_index: int = Field(default=0, ge=0, description="Index into the target's inputs")


class WorkflowSettings(BaseModel):
    """Per-workflow execution settings."""

    error_workflow_id: Optional[str] = Field(default=None, description="Workflow run on failure")
    timezone: str = Field(default="UTC", description="Workflow timezone")
    execution_timeout: Optional[float] = Field(
        default=None, gt=0, description="Whole-run time budget in seconds"
    )
    save_execution_progress: Optional[bool] = Field(
        default=None, description="Override for persisting progress after every node"
    )


class Workflow(BaseModel):
    """Workflow definition. Never mutated while a run uses it."""

    id: str = Field(..., description="Workflow id")
    name: str = Field(default="", description="Workflow name")
    nodes: List[WorkflowNode] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    static_data: Dict[str, Any] = Field(default_factory=dict, description="Initial static data")

    def get_node(self, name: str) -> Optional[WorkflowNode]:
        """Get node by name."""
        for node in self.nodes:
            if node.name == name:
                return node
        return None
