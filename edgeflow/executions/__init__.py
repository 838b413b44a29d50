"""Run persistence, pause/resume and sub-workflow execution."""

from .pause_resume import PauseResumeController
from .store import InMemoryRunStore, RunStore, SQLAlchemyRunStore
from .subworkflow import SubWorkflowInvoker, SubWorkflowResult

__all__ = [
    "InMemoryRunStore",
    "PauseResumeController",
    "RunStore",
    "SQLAlchemyRunStore",
    "SubWorkflowInvoker",
    "SubWorkflowResult",
]
