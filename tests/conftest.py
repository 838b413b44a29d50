"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Sequence, Union

import pytest
import pytest_asyncio

from edgeflow.config import Settings
from edgeflow.credentials.service import StaticCredentialLookup
from edgeflow.database import DatabaseManager
from edgeflow.executions.store import InMemoryRunStore, SQLAlchemyRunStore
from edgeflow.executor.data import Item, NodeParameters
from edgeflow.executor.engine import WorkflowExecutionEngine
from edgeflow.logging_config import setup_logging
from edgeflow.nodes.base import BaseNode, NodeCategory, NodeDefinition, NodeOutput, NodeParameter, ParameterType
from edgeflow.nodes.registry import NodeRegistry
from edgeflow.workflows.models import Connection, Workflow, WorkflowNode


class DoubleNode(BaseNode):
    """Doubles the ``val`` field of every item."""

    async def execute(self, parameters: NodeParameters, inputs: Dict[str, List[Item]], helpers) -> NodeOutput:
        return [
            item.with_payload({**item.payload, "val": item.payload["val"] * 2})
            for item in inputs.get("main", [])
        ]

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(type="test.double", name="Double", category=NodeCategory.TRANSFORM)


class FlakyNode(BaseNode):
    """Fails its first ``fail_times`` invocations within a run."""

    async def execute(self, parameters: NodeParameters, inputs: Dict[str, List[Item]], helpers) -> NodeOutput:
        calls = helpers.static_data.get("flaky_calls", 0) + 1
        helpers.static_data["flaky_calls"] = calls
        if calls <= int(parameters.get("fail_times", 0)):
            raise RuntimeError(f"flaky failure {calls}")
        return list(inputs.get("main", []))

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(
            type="test.flaky",
            name="Flaky",
            parameters=[NodeParameter(name="fail_times", type=ParameterType.NUMBER, default=0)],
        )


class FailNode(BaseNode):
    """Always raises."""

    async def execute(self, parameters: NodeParameters, inputs: Dict[str, List[Item]], helpers) -> NodeOutput:
        raise RuntimeError(parameters.get("message", "boom"))

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(type="test.fail", name="Fail")


class SlowNode(BaseNode):
    """Sleeps before passing items through."""

    async def execute(self, parameters: NodeParameters, inputs: Dict[str, List[Item]], helpers) -> NodeOutput:
        await asyncio.sleep(float(parameters.get("seconds", 0.1)))
        return list(inputs.get("main", []))

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(type="test.slow", name="Slow")


class SecretNode(BaseNode):
    """Emits the credential assigned to its ``api`` slot."""

    async def execute(self, parameters: NodeParameters, inputs: Dict[str, List[Item]], helpers) -> NodeOutput:
        credential = await helpers.get_credentials("api")
        return [Item(json={"user": credential["user"]})]

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(type="test.secret", name="Secret")


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    setup_logging(Settings(environment="testing", log_level="DEBUG"))


@pytest.fixture
def registry() -> NodeRegistry:
    """Registry with built-in nodes plus test nodes."""
    registry = NodeRegistry()
    registry.register("test.double", DoubleNode)
    registry.register("test.flaky", FlakyNode)
    registry.register("test.fail", FailNode)
    registry.register("test.slow", SlowNode)
    registry.register("test.secret", SecretNode)
    return registry


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment's defaults."""
    return Settings(
        environment="testing",
        database_url="sqlite+aiosqlite:///:memory:",
        node_timeout_seconds=5.0,
        credential_cache_ttl_seconds=0,
    )


@pytest.fixture
def store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def credentials() -> StaticCredentialLookup:
    return StaticCredentialLookup({"api": {"user": "alice", "token": "s3cret"}})


@pytest.fixture
def engine(store, registry, credentials, test_settings) -> WorkflowExecutionEngine:
    return WorkflowExecutionEngine(store, registry=registry, credentials=credentials, settings=test_settings)


@pytest_asyncio.fixture
async def db_manager(test_settings):
    """In-memory SQLite database with all tables created."""
    manager = DatabaseManager(test_settings.database_url)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def sql_store(db_manager) -> SQLAlchemyRunStore:
    return SQLAlchemyRunStore(db_manager)


ConnectionLike = Union[Connection, Sequence[str]]


@pytest.fixture
def make_workflow():
    """
    Factory for workflows.

    Nodes are dicts or ``WorkflowNode``s. Connections are ``Connection``s or
    tuples of ``(source, target[, source_output[, target_input]])``.
    """
    def _make(
        nodes: List[Union[Dict[str, Any], WorkflowNode]],
        connections: Sequence[ConnectionLike] = (),
        workflow_id: str = "wf-test",
        **kwargs
    ) -> Workflow:
        built = []
        for entry in connections:
            if isinstance(entry, Connection):
                built.append(entry)
                continue
            source, target, *rest = entry
            built.append(Connection(
                source_node=source,
                target_node=target,
                source_output=rest[0] if rest else "main",
                target_input=rest[1] if len(rest) > 1 else None,
            ))
        return Workflow(
            id=workflow_id,
            name=kwargs.pop("name", workflow_id),
            nodes=[node if isinstance(node, WorkflowNode) else WorkflowNode(**node) for node in nodes],
            connections=built,
            **kwargs
        )
    return _make


def payloads_of(items: List[Item]) -> List[Dict[str, Any]]:
    return [item.payload for item in items]


@pytest.fixture
def payloads():
    """Extract payloads from a list of items."""
    return payloads_of
