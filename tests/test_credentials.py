"""Test credential lookups."""

from unittest.mock import patch

import pytest

from edgeflow.credentials import CachingCredentialLookup, CredentialLookup, StaticCredentialLookup
from edgeflow.executor.errors import CredentialNotFoundError

RUN_CONTEXT = {"run_id": "run-1", "workflow_id": "wf-1", "node_name": "Call"}


class CountingLookup:

    def __init__(self):
        self.calls = 0

    async def resolve_credential(self, name, run_context):
        self.calls += 1
        return {"token": f"{name}-{self.calls}"}


@pytest.mark.unit
class TestStaticCredentialLookup:

    async def test_resolve(self, credentials):
        data = await credentials.resolve_credential("api", RUN_CONTEXT)
        assert data == {"user": "alice", "token": "s3cret"}

    async def test_returns_copies(self, credentials):
        data = await credentials.resolve_credential("api", RUN_CONTEXT)
        data["token"] = "changed"

        assert (await credentials.resolve_credential("api", RUN_CONTEXT))["token"] == "s3cret"

    async def test_missing(self):
        lookup = StaticCredentialLookup()

        with pytest.raises(CredentialNotFoundError) as exc_info:
            await lookup.resolve_credential("nope", RUN_CONTEXT)
        assert exc_info.value.error_code == "CREDENTIAL_NOT_FOUND"
        assert exc_info.value.details["run_id"] == "run-1"

    async def test_add(self):
        lookup = StaticCredentialLookup()
        lookup.add("smtp", {"password": "x"})

        assert await lookup.resolve_credential("smtp", RUN_CONTEXT) == {"password": "x"}

    def test_satisfies_protocol(self, credentials):
        assert isinstance(credentials, CredentialLookup)


@pytest.mark.unit
class TestCachingCredentialLookup:

    async def test_caches_within_ttl(self):
        inner = CountingLookup()
        lookup = CachingCredentialLookup(inner, ttl_seconds=60)

        first = await lookup.resolve_credential("api", RUN_CONTEXT)
        second = await lookup.resolve_credential("api", RUN_CONTEXT)

        assert first == second == {"token": "api-1"}
        assert inner.calls == 1

    async def test_expires_after_ttl(self):
        inner = CountingLookup()
        lookup = CachingCredentialLookup(inner, ttl_seconds=10)

        with patch("edgeflow.credentials.service.time.monotonic", return_value=100.0):
            await lookup.resolve_credential("api", RUN_CONTEXT)
        with patch("edgeflow.credentials.service.time.monotonic", return_value=111.0):
            data = await lookup.resolve_credential("api", RUN_CONTEXT)

        assert data == {"token": "api-2"}
        assert inner.calls == 2

    async def test_invalidate(self):
        inner = CountingLookup()
        lookup = CachingCredentialLookup(inner, ttl_seconds=60)
        await lookup.resolve_credential("api", RUN_CONTEXT)
        await lookup.resolve_credential("db", RUN_CONTEXT)

        lookup.invalidate("api")
        await lookup.resolve_credential("api", RUN_CONTEXT)
        await lookup.resolve_credential("db", RUN_CONTEXT)
        assert inner.calls == 3

        lookup.invalidate()
        await lookup.resolve_credential("db", RUN_CONTEXT)
        assert inner.calls == 4

    async def test_errors_are_not_cached(self):
        lookup = CachingCredentialLookup(StaticCredentialLookup(), ttl_seconds=60)

        with pytest.raises(CredentialNotFoundError):
            await lookup.resolve_credential("api", RUN_CONTEXT)
        assert lookup._cache == {}

    async def test_engine_wraps_lookup_when_ttl_set(self, store, registry, credentials, test_settings):
        from edgeflow.executor.engine import WorkflowExecutionEngine

        settings = test_settings.model_copy(update={"credential_cache_ttl_seconds": 30})
        engine = WorkflowExecutionEngine(store, registry=registry, credentials=credentials, settings=settings)

        assert isinstance(engine.credentials, CachingCredentialLookup)
        assert engine.credentials.inner is credentials
