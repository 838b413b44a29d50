"""Workflow execution engine module.

The engine itself lives in ``edgeflow.executor.engine``; this package root
only exposes the data types and errors shared with node implementations.
"""

from .data import BinaryData, ErrorInfo, Item, NodeParameters, PairedItem, TaskData, WaitRequest
from .errors import (
    CredentialNotFoundError,
    CycleDetectedError,
    DanglingConnectionError,
    ExecutionCancelledError,
    ExecutionError,
    ExecutionTimeoutError,
    GraphError,
    MaxSubWorkflowDepthExceededError,
    NodeExecutionError,
    NodeTimeoutError,
    ResumeKeyConflictError,
    UnknownNodeTypeError,
)
from .state import RunState

__all__ = [
    "BinaryData",
    "CredentialNotFoundError",
    "CycleDetectedError",
    "DanglingConnectionError",
    "ErrorInfo",
    "ExecutionCancelledError",
    "ExecutionError",
    "ExecutionTimeoutError",
    "GraphError",
    "Item",
    "MaxSubWorkflowDepthExceededError",
    "NodeExecutionError",
    "NodeParameters",
    "NodeTimeoutError",
    "PairedItem",
    "ResumeKeyConflictError",
    "RunState",
    "TaskData",
    "UnknownNodeTypeError",
    "WaitRequest",
]
