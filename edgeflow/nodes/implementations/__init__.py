"""Workflow composition nodes."""

from .subworkflow import ExecuteWorkflowNode

__all__ = ["ExecuteWorkflowNode"]
