"""Workflow definition models."""

from .models import (
    Connection,
    ExecutionMode,
    ExecutionStatus,
    NodeExecutionStatus,
    Workflow,
    WorkflowNode,
    WorkflowSettings,
)

__all__ = [
    "Connection",
    "ExecutionMode",
    "ExecutionStatus",
    "NodeExecutionStatus",
    "Workflow",
    "WorkflowNode",
    "WorkflowSettings",
]
