"""Credential lookup used while resolving node parameters."""

import asyncio
import copy
import time
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable

import structlog

from edgeflow.executor.errors import CredentialNotFoundError

logger = structlog.get_logger()


@runtime_checkable
class CredentialLookup(Protocol):
    """Source of decrypted credential data.

    ``run_context`` describes the requesting run (run id, workflow id,
    node name and mode) so implementations can enforce access rules.
    """

    async def resolve_credential(self, name: str, run_context: Dict[str, Any]) -> Dict[str, Any]:
        ...


class StaticCredentialLookup:
    """Lookup over a fixed mapping of credential name to data."""

    def __init__(self, credentials: Optional[Mapping[str, Dict[str, Any]]] = None):
        self._credentials: Dict[str, Dict[str, Any]] = dict(credentials or {})

    def add(self, name: str, data: Dict[str, Any]) -> None:
        self._credentials[name] = data

    async def resolve_credential(self, name: str, run_context: Dict[str, Any]) -> Dict[str, Any]:
        if name not in self._credentials:
            raise CredentialNotFoundError(name, details={"run_id": run_context.get("run_id")})
        return copy.deepcopy(self._credentials[name])


class CachingCredentialLookup:
    """Caches another lookup's results for a limited time."""

    def __init__(self, inner: CredentialLookup, ttl_seconds: float = 300.0):
        self.inner = inner
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def resolve_credential(self, name: str, run_context: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            cached = self._cache.get(name)
            if cached is not None and cached[0] > time.monotonic():
                return copy.deepcopy(cached[1])

            data = await self.inner.resolve_credential(name, run_context)
            self._cache[name] = (time.monotonic() + self.ttl_seconds, data)
            logger.debug("Credential cached", credential_name=name, ttl_seconds=self.ttl_seconds)
            return copy.deepcopy(data)

    def invalidate(self, name: Optional[str] = None) -> None:
        """Drop one cached credential, or all of them."""
        if name is None:
            self._cache.clear()
        else:
            self._cache.pop(name, None)
