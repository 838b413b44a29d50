"""
Execution graph built once per run from a workflow definition.

Validates the workflow structure and indexes connections so the scheduler
can look up incoming and outgoing edges of a node in constant time.
"""

from typing import Dict, List, Mapping, Optional, Set

import networkx as nx
import structlog

from edgeflow.nodes.base import BaseNode, InputPolicy, NodeDefinition
from edgeflow.nodes.registry import NodeRegistry
from edgeflow.workflows.models import Connection, Workflow, WorkflowNode

from .errors import (
    CycleDetectedError,
    DanglingConnectionError,
    DuplicateNodeError,
    NoStartNodeError,
    PortMismatchError,
    UnknownNodeTypeError,
)

logger = structlog.get_logger()


class ExecutionGraph:
    """Read-only view of a workflow's nodes, ports and connections.

    Connections are addressed by their index in the workflow's connection
    list, which is also their declaration order.
    """

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        self.nodes: Dict[str, WorkflowNode] = {}
        self.order: Dict[str, int] = {}
        self.adapters: Dict[str, BaseNode] = {}
        self.definitions: Dict[str, NodeDefinition] = {}
        self.connections: List[Connection] = list(workflow.connections)
        self.target_ports: Dict[int, str] = {}
        self.incoming: Dict[str, List[int]] = {}
        self.outgoing: Dict[str, List[int]] = {}
        self.back_edges: Set[int] = set()
        self.digraph = nx.DiGraph()

    @classmethod
    def build(cls, workflow: Workflow, registry: NodeRegistry) -> "ExecutionGraph":
        """
        Build and validate the graph.

        Raises:
            GraphError: On duplicate names, unknown node types, dangling
                connections, port mismatches or cycles without a loop
                controller.
        """
        graph = cls(workflow)
        graph._index_nodes(registry)
        graph._index_connections()
        graph._check_cycles()
        logger.debug(
            "Execution graph built",
            workflow_id=workflow.id,
            nodes=len(graph.nodes),
            connections=len(graph.connections),
        )
        return graph

    def _index_nodes(self, registry: NodeRegistry) -> None:
        for position, node in enumerate(self.workflow.nodes):
            if node.name in self.nodes:
                raise DuplicateNodeError(node.name)

            adapter = registry.create_node(node.type)
            if adapter is None:
                raise UnknownNodeTypeError(node.name, node.type)

            self.nodes[node.name] = node
            self.order[node.name] = position
            self.adapters[node.name] = adapter
            self.definitions[node.name] = registry.get_node_definition(node.type)
            self.incoming[node.name] = []
            self.outgoing[node.name] = []
            self.digraph.add_node(node.name)

    def _index_connections(self) -> None:
        for index, connection in enumerate(self.connections):
            for endpoint in (connection.source_node, connection.target_node):
                if endpoint not in self.nodes:
                    raise DanglingConnectionError(
                        connection.source_node, connection.target_node, endpoint
                    )

            source_def = self.definitions[connection.source_node]
            target_def = self.definitions[connection.target_node]

            source_port = source_def.get_output(connection.source_output)
            if source_port is None and not source_def.dynamic_outputs:
                raise PortMismatchError(
                    f"Node '{connection.source_node}' has no output '{connection.source_output}'",
                    node_name=connection.source_node,
                    port=connection.source_output,
                )

            if connection.target_input is not None:
                target_port = target_def.get_input(connection.target_input)
            elif connection.input_index < len(target_def.inputs):
                target_port = target_def.inputs[connection.input_index]
            else:
                target_port = None
            if target_port is None:
                raise PortMismatchError(
                    f"Node '{connection.target_node}' has no input "
                    f"'{connection.target_input or connection.input_index}'",
                    node_name=connection.target_node,
                    port=connection.target_input,
                )

            source_type = source_port.type if source_port is not None else "main"
            if source_type != target_port.type:
                raise PortMismatchError(
                    f"Cannot connect {source_type} output of '{connection.source_node}' "
                    f"to {target_port.type} input of '{connection.target_node}'",
                    node_name=connection.target_node,
                    port=target_port.name,
                )

            self.target_ports[index] = target_port.name
            self.outgoing[connection.source_node].append(index)
            self.incoming[connection.target_node].append(index)
            self.digraph.add_edge(connection.source_node, connection.target_node)

    def _check_cycles(self) -> None:
        controllers = [name for name in self.nodes if self.definitions[name].is_loop_controller]

        # Any cycle left once loop controllers are removed is a plain cycle
        plain = self.digraph.subgraph(
            name for name in self.nodes if name not in controllers
        )
        try:
            cycle_edges = nx.find_cycle(plain)
        except nx.NetworkXNoCycle:
            cycle_edges = []
        if cycle_edges:
            path = [edge[0] for edge in cycle_edges] + [cycle_edges[0][0]]
            raise CycleDetectedError(path)

        for name in controllers:
            downstream = nx.descendants(self.digraph, name)
            for index in self.incoming[name]:
                source = self.connections[index].source_node
                if source == name or source in downstream:
                    self.back_edges.add(index)

    # Lookups

    def node(self, name: str) -> WorkflowNode:
        return self.nodes[name]

    def definition(self, name: str) -> NodeDefinition:
        return self.definitions[name]

    def adapter(self, name: str) -> BaseNode:
        return self.adapters[name]

    def connection(self, index: int) -> Connection:
        return self.connections[index]

    def incoming_connections(self, name: str) -> List[int]:
        """Incoming connection indices in declaration order."""
        return self.incoming[name]

    def forward_incoming(self, name: str) -> List[int]:
        """Incoming connections that are not loop back edges."""
        return [index for index in self.incoming[name] if index not in self.back_edges]

    def outgoing_connections(self, name: str, port: Optional[str] = None) -> List[int]:
        """Outgoing connection indices in declaration order, optionally for one port."""
        indices = self.outgoing[name]
        if port is None:
            return indices
        return [index for index in indices if self.connections[index].source_output == port]

    def downstream(self, name: str, port: str) -> List[str]:
        """Target nodes of one output port in declaration order."""
        return [self.connections[index].target_node for index in self.outgoing_connections(name, port)]

    def output_ports(self, name: str) -> List[str]:
        """Declared output ports followed by any extra ports used by connections."""
        names = list(self.definitions[name].output_names)
        for index in self.outgoing[name]:
            port = self.connections[index].source_output
            if port not in names:
                names.append(port)
        return names

    def target_port(self, index: int) -> str:
        return self.target_ports[index]

    def input_position(self, index: int) -> int:
        """Position of a connection's target port among the target's inputs."""
        connection = self.connections[index]
        names = self.definitions[connection.target_node].input_names
        port = self.target_ports[index]
        return names.index(port) if port in names else 0

    def sort_by_declaration(self, names) -> List[str]:
        return sorted(set(names), key=lambda name: self.order[name])

    # Traversal

    def start_node(self, name: Optional[str] = None) -> str:
        """
        Choose the node a run starts from.

        An explicit name wins; otherwise the first enabled trigger node in
        declaration order, otherwise the first node without incoming
        connections.
        """
        if name is not None:
            if name not in self.nodes:
                raise NoStartNodeError(f"Start node '{name}' does not exist")
            return name

        for node in self.workflow.nodes:
            if self.definitions[node.name].is_trigger and not node.disabled:
                return node.name

        for node in self.workflow.nodes:
            if not self.incoming[node.name]:
                return node.name

        raise NoStartNodeError()

    def reachable_from(self, name: str) -> Set[str]:
        return {name} | nx.descendants(self.digraph, name)

    def is_ready(self, name: str, pending: Mapping[int, int]) -> bool:
        """
        Whether a node can be scheduled given the number of pending batches
        per incoming connection.

        Nodes that wait for all inputs need a batch on every incoming
        connection; per-arrival nodes need a batch on any of them.
        """
        incoming = self.incoming[name]
        if not incoming:
            return False
        if self.definitions[name].input_policy == InputPolicy.PER_ARRIVAL:
            return any(pending.get(index, 0) > 0 for index in incoming)
        return all(pending.get(index, 0) > 0 for index in incoming)
