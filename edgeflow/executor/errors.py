"""Execution engine error classes."""

from typing import Any, Dict, List, Optional


class ExecutionError(Exception):
    """Base class for all execution errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class GraphError(ExecutionError):
    """Structural workflow problem detected before any node runs."""

    def __init__(self, message: str, error_code: str = "GRAPH_ERROR", **kwargs):
        super().__init__(message, error_code=error_code, **kwargs)


class CycleDetectedError(GraphError):
    """Raised when a cycle has no loop controller node on it."""

    def __init__(self, cycle_path: List[str], **kwargs):
        super().__init__(
            f"Cycle detected without a loop controller: {' -> '.join(cycle_path)}",
            error_code="CYCLE_DETECTED",
            **kwargs
        )
        self.cycle_path = cycle_path
        self.details["cycle_path"] = cycle_path


class DanglingConnectionError(GraphError):
    """Raised when a connection references a node that does not exist."""

    def __init__(self, source_node: str, target_node: str, missing_node: str, **kwargs):
        super().__init__(
            f"Connection {source_node} -> {target_node} references unknown node '{missing_node}'",
            error_code="DANGLING_CONNECTION",
            **kwargs
        )
        self.missing_node = missing_node
        self.details.update({
            "source_node": source_node,
            "target_node": target_node,
            "missing_node": missing_node,
        })


class UnknownNodeTypeError(GraphError):
    """Raised when a node type has no registered implementation."""

    def __init__(self, node_name: str, node_type: str, **kwargs):
        super().__init__(
            f"Node '{node_name}' has unknown type '{node_type}'",
            error_code="UNKNOWN_NODE_TYPE",
            **kwargs
        )
        self.node_name = node_name
        self.node_type = node_type
        self.details.update({"node_name": node_name, "node_type": node_type})


class PortMismatchError(GraphError):
    """Raised when a connection uses an undeclared port or joins incompatible ports."""

    def __init__(self, message: str, node_name: str, port: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="PORT_MISMATCH", **kwargs)
        self.node_name = node_name
        self.port = port
        self.details.update({"node_name": node_name, "port": port})


class DuplicateNodeError(GraphError):
    """Raised when two nodes share a name."""

    def __init__(self, node_name: str, **kwargs):
        super().__init__(
            f"Duplicate node name '{node_name}'",
            error_code="DUPLICATE_NODE",
            **kwargs
        )
        self.node_name = node_name
        self.details["node_name"] = node_name


class NoStartNodeError(GraphError):
    """Raised when no node can start the run."""

    def __init__(self, message: str = "Workflow has no start node", **kwargs):
        super().__init__(message, error_code="NO_START_NODE", **kwargs)


class NodeExecutionError(ExecutionError):
    """Raised when a node fails during invocation."""

    def __init__(
        self,
        message: str,
        node_name: str,
        node_type: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs
    ):
        super().__init__(message, error_code=kwargs.pop("error_code", "NODE_ERROR"), **kwargs)
        self.node_name = node_name
        self.node_type = node_type
        self.cause = cause
        self.details.update({
            "node_name": node_name,
            "node_type": node_type,
        })
        if cause is not None:
            self.details["cause"] = {
                "type": type(cause).__name__,
                "message": str(cause),
            }


class NodeTimeoutError(NodeExecutionError):
    """Raised when a node invocation exceeds its timeout."""

    def __init__(self, node_name: str, timeout_seconds: float, node_type: Optional[str] = None):
        super().__init__(
            f"Node '{node_name}' timed out after {timeout_seconds}s",
            node_name=node_name,
            node_type=node_type,
            error_code="NODE_TIMEOUT",
        )
        self.timeout_seconds = timeout_seconds
        self.details["timeout_seconds"] = timeout_seconds


class ResumeKeyConflictError(ExecutionError):
    """Raised when a resume key is already held by another waiting run."""

    def __init__(self, resume_key: str, holder_run_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Resume key '{resume_key}' is already in use",
            error_code="RESUME_KEY_CONFLICT",
            **kwargs
        )
        self.resume_key = resume_key
        self.holder_run_id = holder_run_id
        self.details.update({"resume_key": resume_key, "holder_run_id": holder_run_id})


class ResumeKeyNotFoundError(ExecutionError):
    """Raised when no waiting run holds a resume key."""

    def __init__(self, resume_key: str, **kwargs):
        super().__init__(
            f"No waiting run for resume key '{resume_key}'",
            error_code="RESUME_KEY_NOT_FOUND",
            **kwargs
        )
        self.resume_key = resume_key
        self.details["resume_key"] = resume_key


class ExecutionNotWaitingError(ExecutionError):
    """Raised when resuming a run that is not waiting."""

    def __init__(self, run_id: str, status: str, **kwargs):
        super().__init__(
            f"Run '{run_id}' is not waiting (status: {status})",
            error_code="NOT_WAITING",
            **kwargs
        )
        self.run_id = run_id
        self.details.update({"run_id": run_id, "status": status})


class WaitExpiredError(ExecutionError):
    """Raised when resuming a wait after its deadline."""

    def __init__(self, resume_key: str, **kwargs):
        super().__init__(
            f"Wait for resume key '{resume_key}' has expired",
            error_code="WAIT_EXPIRED",
            **kwargs
        )
        self.resume_key = resume_key
        self.details["resume_key"] = resume_key


class MaxSubWorkflowDepthExceededError(ExecutionError):
    """Raised when sub-workflow nesting exceeds the configured maximum."""

    def __init__(self, depth: int, max_depth: int, **kwargs):
        super().__init__(
            f"Maximum sub-workflow depth {max_depth} exceeded (requested depth {depth})",
            error_code="MAX_SUBWORKFLOW_DEPTH",
            **kwargs
        )
        self.depth = depth
        self.max_depth = max_depth
        self.details.update({"depth": depth, "max_depth": max_depth})


class CredentialNotFoundError(ExecutionError):
    """Raised when a credential cannot be resolved."""

    def __init__(self, credential_name: str, **kwargs):
        super().__init__(
            f"Credential '{credential_name}' not found",
            error_code="CREDENTIAL_NOT_FOUND",
            **kwargs
        )
        self.credential_name = credential_name
        self.details["credential_name"] = credential_name


class ExecutionTimeoutError(ExecutionError):
    """Raised when a run exceeds its time budget."""

    def __init__(self, message: str, timeout_seconds: float, **kwargs):
        super().__init__(message, error_code="TIMEOUT", **kwargs)
        self.timeout_seconds = timeout_seconds
        self.details["timeout_seconds"] = timeout_seconds


class ExecutionCancelledError(ExecutionError):
    """Raised when execution is cancelled."""

    def __init__(self, message: str = "Execution was cancelled", **kwargs):
        super().__init__(message, error_code="CANCELLED", **kwargs)


class SchedulingLimitError(ExecutionError):
    """Raised when a run exceeds the scheduling step bound."""

    def __init__(self, max_steps: int, **kwargs):
        super().__init__(
            f"Run exceeded {max_steps} scheduling steps",
            error_code="SCHEDULING_LIMIT",
            **kwargs
        )
        self.details["max_steps"] = max_steps


class WorkflowNotFoundError(ExecutionError):
    """Raised when a workflow id cannot be loaded."""

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow '{workflow_id}' not found",
            error_code="WORKFLOW_NOT_FOUND",
            **kwargs
        )
        self.workflow_id = workflow_id
        self.details["workflow_id"] = workflow_id


class RunNotFoundError(ExecutionError):
    """Raised when a run id is unknown."""

    def __init__(self, run_id: str, **kwargs):
        super().__init__(
            f"Run '{run_id}' not found",
            error_code="RUN_NOT_FOUND",
            **kwargs
        )
        self.run_id = run_id
        self.details["run_id"] = run_id
