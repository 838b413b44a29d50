"""Pause/resume of runs waiting for external events."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

import structlog

from edgeflow.executor.errors import (
    ExecutionNotWaitingError,
    ResumeKeyConflictError,
    ResumeKeyNotFoundError,
    WaitExpiredError,
)
from edgeflow.executor.state import RunState, WaitingNode, utcnow
from edgeflow.workflows.models import ExecutionStatus

from .store import RunStore

logger = structlog.get_logger()


class PauseResumeController:
    """
    Owns resume keys.

    A key is ``"<node name>:<correlation>"`` and belongs to at most one
    waiting run at a time. Claims and releases go through the store, so
    ownership survives a restart of the process.
    """

    def __init__(self, store: RunStore):
        self.store = store
        self._run_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self.logger = logger.bind(component="pause_resume")

    @staticmethod
    def make_resume_key(node_name: str, correlation: str) -> str:
        return f"{node_name}:{correlation}"

    @asynccontextmanager
    async def run_lock(self, run_id: str) -> AsyncIterator[None]:
        """Serialize resumes of one run within this process.

        The lock is dropped once no task holds or awaits it.
        """
        lock = self._run_locks.setdefault(run_id, asyncio.Lock())
        self._lock_users[run_id] = self._lock_users.get(run_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[run_id] -= 1
            if not self._lock_users[run_id]:
                del self._lock_users[run_id]
                del self._run_locks[run_id]

    async def register_wait(self, state: RunState, resume_key: str) -> None:
        """
        Claim a resume key for a run.

        Raises:
            ResumeKeyConflictError: If another run, or another wait of the
                same run, already holds the key
        """
        if resume_key in state.waiting:
            raise ResumeKeyConflictError(resume_key, holder_run_id=state.run_id)

        claimed = await self.store.claim_resume_key(resume_key, state.run_id)
        if not claimed:
            holder = await self.store.lookup_resume_key(resume_key)
            raise ResumeKeyConflictError(resume_key, holder_run_id=holder)

        self.logger.debug("Resume key registered", run_id=state.run_id, resume_key=resume_key)

    async def suspend(self, state: RunState) -> None:
        """Persist a run that has no runnable work left but pending waits."""
        await self.store.save_run_state(state)
        self.logger.info("Run suspended", run_id=state.run_id, resume_keys=state.resume_keys())

    async def lookup(self, resume_key: str) -> str:
        run_id = await self.store.lookup_resume_key(resume_key)
        if run_id is None:
            raise ResumeKeyNotFoundError(resume_key)
        return run_id

    async def take(
        self,
        resume_key: str,
        now: Optional[datetime] = None,
        allow_expired: bool = False
    ) -> Tuple[RunState, WaitingNode]:
        """
        Consume a resume key and return the suspended run and its waiting node.

        Raises:
            ResumeKeyNotFoundError: If no run holds the key
            ExecutionNotWaitingError: If the holding run is not waiting
            WaitExpiredError: If the wait ran past its time limit
        """
        run_id = await self.lookup(resume_key)
        state = await self.store.load_run_state(run_id)

        if state.status != ExecutionStatus.WAITING:
            raise ExecutionNotWaitingError(run_id, state.status.value)

        waiting = state.waiting.get(resume_key)
        if waiting is None:
            raise ResumeKeyNotFoundError(resume_key, details={"run_id": run_id})

        if waiting.is_expired(now) and not allow_expired:
            raise WaitExpiredError(resume_key, details={"expires_at": waiting.expires_at.isoformat()})

        # Two resumes racing on one key: only the one that removes it proceeds
        if not await self.store.take_resume_key(resume_key, run_id):
            raise ResumeKeyNotFoundError(resume_key)

        del state.waiting[resume_key]
        self.logger.info("Resume key consumed", run_id=run_id, resume_key=resume_key)
        return state, waiting

    async def release_all(self, state: RunState) -> None:
        """Give up every key a run still holds."""
        for resume_key in list(state.waiting):
            await self.store.release_resume_key(resume_key, state.run_id)
        if state.waiting:
            self.logger.debug("Resume keys released", run_id=state.run_id, resume_keys=state.resume_keys())
        state.waiting.clear()

    async def expired(self, now: Optional[datetime] = None) -> List[str]:
        """Resume keys of waiting runs whose time limit has passed."""
        now = now or utcnow()
        keys = []
        for state in await self.store.list_run_states(ExecutionStatus.WAITING):
            for resume_key, waiting in state.waiting.items():
                if waiting.is_expired(now):
                    keys.append(resume_key)
        return keys
