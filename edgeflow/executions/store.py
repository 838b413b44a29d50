"""
Run state persistence.

The scheduler and the pause/resume controller only talk to the ``RunStore``
protocol. Two implementations ship: an in-memory store for tests and
single-process use, and a SQLAlchemy store backed by any async database
URL the ``DatabaseManager`` accepts.
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from edgeflow.database import DatabaseManager
from edgeflow.executor.errors import RunNotFoundError, WorkflowNotFoundError
from edgeflow.executor.state import RunState
from edgeflow.workflows.models import ExecutionStatus, Workflow

from .models import ResumeKeyRecord, RunStateRecord, WorkflowRecord

logger = structlog.get_logger()


@runtime_checkable
class RunStore(Protocol):
    """Storage used by the engine for workflows, run states and resume keys."""

    async def load_workflow(self, workflow_id: str) -> Workflow:
        ...

    async def save_workflow(self, workflow: Workflow) -> None:
        ...

    async def save_run_state(self, state: RunState) -> None:
        ...

    async def load_run_state(self, run_id: str) -> RunState:
        ...

    async def list_run_states(self, status: Optional[ExecutionStatus] = None) -> List[RunState]:
        ...

    async def claim_resume_key(self, key: str, run_id: str) -> bool:
        """Claim a key for a run. False if another run holds it."""
        ...

    async def lookup_resume_key(self, key: str) -> Optional[str]:
        ...

    async def take_resume_key(self, key: str, run_id: str) -> bool:
        """Atomically remove a key held by ``run_id``. False if it was not held."""
        ...

    async def release_resume_key(self, key: str, run_id: str) -> None:
        ...


class InMemoryRunStore:
    """Process-local store.

    States are kept as JSON documents so a loaded state never shares
    objects with the run that saved it.
    """

    def __init__(self):
        self._workflows: Dict[str, Dict[str, Any]] = {}
        self._states: Dict[str, Dict[str, Any]] = {}
        self._resume_keys: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def load_workflow(self, workflow_id: str) -> Workflow:
        data = self._workflows.get(workflow_id)
        if data is None:
            raise WorkflowNotFoundError(workflow_id)
        return Workflow.model_validate(data)

    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_dump(mode="json")

    async def save_run_state(self, state: RunState) -> None:
        self._states[state.run_id] = state.model_dump(mode="json")

    async def load_run_state(self, run_id: str) -> RunState:
        data = self._states.get(run_id)
        if data is None:
            raise RunNotFoundError(run_id)
        return RunState.model_validate(data)

    async def list_run_states(self, status: Optional[ExecutionStatus] = None) -> List[RunState]:
        return [
            RunState.model_validate(data)
            for data in self._states.values()
            if status is None or data["status"] == status.value
        ]

    async def claim_resume_key(self, key: str, run_id: str) -> bool:
        async with self._lock:
            holder = self._resume_keys.get(key)
            if holder is not None and holder != run_id:
                return False
            self._resume_keys[key] = run_id
            return True

    async def lookup_resume_key(self, key: str) -> Optional[str]:
        return self._resume_keys.get(key)

    async def take_resume_key(self, key: str, run_id: str) -> bool:
        async with self._lock:
            if self._resume_keys.get(key) != run_id:
                return False
            del self._resume_keys[key]
            return True

    async def release_resume_key(self, key: str, run_id: str) -> None:
        async with self._lock:
            if self._resume_keys.get(key) == run_id:
                del self._resume_keys[key]


class SQLAlchemyRunStore:
    """Store backed by the ``workflows``, ``run_states`` and ``resume_keys`` tables."""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.logger = logger.bind(component="run_store")

    async def load_workflow(self, workflow_id: str) -> Workflow:
        async with self.db.get_session() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            if record is None:
                raise WorkflowNotFoundError(workflow_id)
            return Workflow.model_validate(record.definition)

    async def save_workflow(self, workflow: Workflow) -> None:
        async with self.db.get_session() as session:
            record = await session.get(WorkflowRecord, workflow.id)
            definition = workflow.model_dump(mode="json")
            if record is None:
                session.add(WorkflowRecord(id=workflow.id, name=workflow.name, definition=definition))
            else:
                record.name = workflow.name
                record.definition = definition
            await session.commit()

    async def save_run_state(self, state: RunState) -> None:
        data = state.model_dump(mode="json")
        async with self.db.get_session() as session:
            record = await session.get(RunStateRecord, state.run_id)
            if record is None:
                session.add(RunStateRecord(
                    run_id=state.run_id,
                    workflow_id=state.workflow_id,
                    status=state.status.value,
                    mode=state.mode.value,
                    parent_run_id=state.parent_run_id,
                    depth=state.depth,
                    data=data,
                ))
            else:
                record.status = state.status.value
                record.data = data
            await session.commit()

    async def load_run_state(self, run_id: str) -> RunState:
        async with self.db.get_session() as session:
            record = await session.get(RunStateRecord, run_id)
            if record is None:
                raise RunNotFoundError(run_id)
            return RunState.model_validate(record.data)

    async def list_run_states(self, status: Optional[ExecutionStatus] = None) -> List[RunState]:
        async with self.db.get_session() as session:
            query = select(RunStateRecord).order_by(RunStateRecord.created_at)
            if status is not None:
                query = query.where(RunStateRecord.status == status.value)
            result = await session.execute(query)
            return [RunState.model_validate(record.data) for record in result.scalars()]

    async def claim_resume_key(self, key: str, run_id: str) -> bool:
        try:
            async with self.db.get_session() as session:
                session.add(ResumeKeyRecord(key=key, run_id=run_id))
                await session.commit()
            return True
        except IntegrityError:
            holder = await self.lookup_resume_key(key)
            if holder == run_id:
                return True
            self.logger.warning("Resume key already claimed", resume_key=key, holder_run_id=holder)
            return False

    async def lookup_resume_key(self, key: str) -> Optional[str]:
        async with self.db.get_session() as session:
            record = await session.get(ResumeKeyRecord, key)
            return record.run_id if record else None

    async def take_resume_key(self, key: str, run_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ResumeKeyRecord).where(
                    ResumeKeyRecord.key == key,
                    ResumeKeyRecord.run_id == run_id,
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def release_resume_key(self, key: str, run_id: str) -> None:
        await self.take_resume_key(key, run_id)
