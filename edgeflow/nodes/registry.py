"""Node type registry.

Maps a type key to a node implementation. The execution graph resolves
every node through the registry once per run and the scheduler only ever
talks to the resulting ``BaseNode`` instances.
"""

from typing import Callable, Dict, List, Optional, Type

import structlog

from .base import BaseNode, NodeCategory, NodeDefinition

logger = structlog.get_logger()


class NodeRegistry:
    """Registry for node types."""

    def __init__(self, register_builtins: bool = True):
        self._nodes: Dict[str, Type[BaseNode]] = {}
        self._definitions: Dict[str, NodeDefinition] = {}
        self._instances: Dict[str, BaseNode] = {}
        self.logger = logger.bind(component="node_registry")

        if register_builtins:
            self._register_builtin_nodes()

    def _register_builtin_nodes(self):
        """Register built-in node types."""
        # Import here to avoid circular imports
        from .actions import NoOpNode, SetNode
        from .control import IfNode, LoopNode, MergeNode, StopNode, WaitNode
        from .implementations import ExecuteWorkflowNode
        from .triggers import ErrorTriggerNode, ManualTriggerNode, WebhookTriggerNode

        # Register trigger nodes
        self._register_node("manual.trigger", ManualTriggerNode)
        self._register_node("webhook.trigger", WebhookTriggerNode)
        self._register_node("error.trigger", ErrorTriggerNode)

        # Register action nodes
        self._register_node("set", SetNode)
        self._register_node("noop", NoOpNode)

        # Register control nodes
        self._register_node("if", IfNode)
        self._register_node("merge", MergeNode)
        self._register_node("loop", LoopNode)
        self._register_node("wait", WaitNode)
        self._register_node("stop", StopNode)

        # Register workflow composition node
        self._register_node("execute_workflow", ExecuteWorkflowNode)

    def _register_node(self, type_key: str, node_class: Type[BaseNode]):
        """Internal method to register a node."""
        definition = node_class.get_definition()
        if definition.type != type_key:
            definition = definition.model_copy(update={"type": type_key})
        self._nodes[type_key] = node_class
        self._definitions[type_key] = definition
        self._instances.pop(type_key, None)
        self.logger.debug("Registered node type", type_key=type_key, node_class=node_class.__name__)

    def register(self, type_key: str, node_class: Optional[Type[BaseNode]] = None) -> Callable:
        """Register a node type; usable directly or as a decorator."""
        if node_class is not None:
            self._register_node(type_key, node_class)
            return node_class

        def decorator(cls: Type[BaseNode]) -> Type[BaseNode]:
            self._register_node(type_key, cls)
            return cls
        return decorator

    def unregister(self, type_key: str) -> bool:
        """Remove a node type."""
        if type_key not in self._nodes:
            return False
        del self._nodes[type_key]
        del self._definitions[type_key]
        self._instances.pop(type_key, None)
        return True

    def has_node(self, type_key: str) -> bool:
        """Check if a node type is registered."""
        return type_key in self._nodes

    def get_node_class(self, type_key: str) -> Optional[Type[BaseNode]]:
        """Get node class by type key."""
        return self._nodes.get(type_key)

    def get_node_definition(self, type_key: str) -> Optional[NodeDefinition]:
        """Get node definition by type key."""
        return self._definitions.get(type_key)

    def create_node(self, type_key: str) -> Optional[BaseNode]:
        """Get the shared instance for a node type."""
        if type_key not in self._nodes:
            return None
        instance = self._instances.get(type_key)
        if instance is None:
            instance = self._nodes[type_key]()
            instance.definition = self._definitions[type_key]
            self._instances[type_key] = instance
        return instance

    def get_all_nodes(self) -> Dict[str, Type[BaseNode]]:
        """Get all registered nodes."""
        return self._nodes.copy()

    def get_nodes_by_category(self, category: NodeCategory) -> Dict[str, Type[BaseNode]]:
        """Get all nodes in a specific category."""
        return {
            type_key: node_class
            for type_key, node_class in self._nodes.items()
            if self._definitions[type_key].category == category
        }

    def list_definitions(self) -> List[NodeDefinition]:
        return [self._definitions[type_key] for type_key in sorted(self._definitions)]


# Global registry instance
default_registry: Optional[NodeRegistry] = None


def get_default_registry() -> NodeRegistry:
    """Get the process-wide registry with built-in nodes."""
    global default_registry
    if default_registry is None:
        default_registry = NodeRegistry()
    return default_registry
