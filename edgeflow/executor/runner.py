"""Node runner for invoking individual nodes."""

import asyncio
import os
from typing import Any, Dict, List, Optional, Union

import structlog

from edgeflow.nodes.base import ItemMode

from .context import ExecutionContext
from .data import Item, NodeParameters, WaitRequest, coerce_items
from .errors import ExecutionError, NodeExecutionError, NodeTimeoutError
from .expression_engine import ExpressionContext, ExpressionEngine, ExpressionError

logger = structlog.get_logger()

NodeResult = Union[Dict[str, List[Item]], WaitRequest]


class NodeRunner:
    """Runs a single node invocation.

    Resolves parameters, calls the node adapter under the node's timeout
    and normalizes what it returns into items per output port.
    """

    def __init__(self, expressions: ExpressionEngine):
        self.expressions = expressions
        self.logger = logger.bind(component="node_runner")

    async def run_node(
        self,
        context: ExecutionContext,
        node_name: str,
        inputs: Dict[str, List[Item]],
        run_index: int
    ) -> NodeResult:
        """
        Invoke a node once.

        Raises:
            ExpressionError: If a parameter expression fails
            NodeTimeoutError: If the node exceeds its timeout
            NodeExecutionError: If the node raises
        """
        graph = context.graph
        node = graph.node(node_name)
        adapter = graph.adapter(node_name)
        timeout = context.node_timeout(node)

        # Nodes get private copies so recorded history is never mutated
        node_inputs = {
            port: [item.model_copy(deep=True) for item in items]
            for port, items in inputs.items()
        }

        parameters = await self.resolve_parameters(context, node_name, node_inputs)
        helpers = context.create_helpers(node_name, run_index)

        try:
            result = await asyncio.wait_for(
                adapter.execute(parameters, node_inputs, helpers),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise NodeTimeoutError(node_name, timeout, node_type=node.type)
        except (ExecutionError, ExpressionError):
            raise
        except Exception as e:
            raise NodeExecutionError(
                str(e) or type(e).__name__,
                node_name=node_name,
                node_type=node.type,
                cause=e,
                details=dict(getattr(e, "details", None) or {}),
            ) from e

        if isinstance(result, WaitRequest):
            if result.output is not None and result.output not in graph.output_ports(node_name):
                raise NodeExecutionError(
                    f"Wait request names unknown output '{result.output}'",
                    node_name=node_name,
                    node_type=node.type,
                )
            return result

        return self.normalize_output(context, node_name, result, node_inputs)

    async def resolve_parameters(
        self,
        context: ExecutionContext,
        node_name: str,
        inputs: Dict[str, List[Item]]
    ) -> NodeParameters:
        """Resolve raw parameters once, or once per item of the first input."""
        graph = context.graph
        node = graph.node(node_name)
        definition = graph.definition(node_name)

        first_input = definition.inputs[0].name if definition.inputs else "main"
        items = inputs.get(first_input) or inputs.get("main") or []

        base = ExpressionContext(
            run_state=context.run_state,
            node_name=node_name,
            items=items,
            item_index=0,
            now=context.run_state.started_at,
            env=dict(os.environ) if context.settings.expressions_expose_env else None,
        )

        async def load(name: str) -> Dict[str, Any]:
            return await context.load_credential(name, node_name)

        try:
            shared = await self.expressions.resolve(node.parameters, base, credential_loader=load)
        except ExpressionError as e:
            raise e.located(node_name, 0 if items else None)

        per_item: List[Dict[str, Any]] = []
        if definition.item_mode == ItemMode.EACH_ITEM and items:
            per_item.append(shared)
            for index in range(1, len(items)):
                try:
                    per_item.append(self.expressions.resolve_sync(node.parameters, base.for_item(index)))
                except ExpressionError as e:
                    raise e.located(node_name, index)

        for index, resolved in enumerate(per_item or [shared]):
            self.validate_parameters(context, node_name, resolved, index if per_item else None)

        return NodeParameters(shared, per_item)

    @staticmethod
    def validate_parameters(
        context: ExecutionContext,
        node_name: str,
        resolved: Dict[str, Any],
        item_index: Optional[int] = None
    ) -> None:
        """Check resolved values against the node type's parameter descriptors."""
        node = context.graph.node(node_name)
        for descriptor in context.graph.definition(node_name).parameters:
            value = resolved.get(descriptor.name, descriptor.default)
            if descriptor.validate_value(value):
                continue
            if value is None:
                message = f"Missing required parameter '{descriptor.name}'"
            else:
                message = (
                    f"Invalid value for parameter '{descriptor.name}': "
                    f"expected {descriptor.type.value}, got {type(value).__name__}"
                )
            raise NodeExecutionError(
                message,
                node_name=node_name,
                node_type=node.type,
                details={"parameter": descriptor.name, "item_index": item_index},
            )

    def normalize_output(
        self,
        context: ExecutionContext,
        node_name: str,
        result: Any,
        inputs: Dict[str, List[Item]]
    ) -> Dict[str, List[Item]]:
        """Map a node's return value onto its output ports."""
        graph = context.graph
        definition = graph.definition(node_name)
        node = graph.node(node_name)
        known_ports = graph.output_ports(node_name)

        if result is None:
            result = {}
        elif isinstance(result, list):
            result = {definition.main_output: result}
        elif not isinstance(result, dict):
            raise NodeExecutionError(
                f"Node returned unsupported output type {type(result).__name__}",
                node_name=node_name,
                node_type=node.type,
            )

        outputs: Dict[str, List[Item]] = {port: [] for port in known_ports}
        for port, items in result.items():
            if port not in outputs:
                if not definition.dynamic_outputs:
                    raise NodeExecutionError(
                        f"Node returned items for unknown output '{port}'",
                        node_name=node_name,
                        node_type=node.type,
                    )
                outputs[port] = []
            try:
                outputs[port] = coerce_items(items)
            except TypeError as e:
                raise NodeExecutionError(str(e), node_name=node_name, node_type=node.type) from e

        source_items = self._main_input(definition, inputs)
        return {port: self.fill_paired_items(items, source_items) for port, items in outputs.items()}

    @staticmethod
    def _main_input(definition, inputs: Dict[str, List[Item]]) -> List[Item]:
        first_input = definition.inputs[0].name if definition.inputs else "main"
        return inputs.get(first_input) or inputs.get("main") or []

    @staticmethod
    def fill_paired_items(items: List[Item], source_items: List[Item]) -> List[Item]:
        """Link output items without provenance to the input they came from."""
        if not source_items:
            return items
        filled = []
        for index, item in enumerate(items):
            if item.paired_item:
                filled.append(item)
            elif len(source_items) == 1:
                filled.append(item.with_paired_item(0))
            elif len(items) == len(source_items):
                filled.append(item.with_paired_item(index))
            else:
                filled.append(item)
        return filled

    def passthrough(self, context: ExecutionContext, node_name: str, inputs: Dict[str, List[Item]]) -> Dict[str, List[Item]]:
        """Output of a disabled node: its first input goes out on its first output."""
        definition = context.graph.definition(node_name)
        items = self._main_input(definition, inputs)
        outputs = {port: [] for port in context.graph.output_ports(node_name)}
        if outputs:
            outputs[definition.main_output] = self.fill_paired_items(list(items), items)
        return outputs

    def pinned_output(self, context: ExecutionContext, node_name: str) -> Optional[Dict[str, List[Item]]]:
        """Output fixed on the node definition, if any."""
        node = context.graph.node(node_name)
        if node.pinned_data is None:
            return None
        definition = context.graph.definition(node_name)
        outputs = {port: [] for port in context.graph.output_ports(node_name)}
        outputs[definition.main_output] = coerce_items(node.pinned_data)
        return outputs
