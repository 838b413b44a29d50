"""Data manipulation node implementations."""

from typing import Dict, List

from edgeflow.executor.data import Item, NodeParameters

from .base import BaseNode, NodeCategory, NodeDefinition, NodeOutput, NodeParameter, ParameterType


class SetNode(BaseNode):
    """Node for setting fields on every item."""

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        output_items = []

        # Process each input item
        for index, item in enumerate(inputs.get("main", [])):
            values = parameters.get("values", {}, item_index=index) or {}
            if not isinstance(values, dict):
                raise TypeError("Parameter 'values' must resolve to an object")

            if parameters.get("keep_only_set", False, item_index=index):
                payload = dict(values)
            else:
                payload = {**item.payload, **values}

            output_items.append(item.with_payload(payload).with_paired_item(index))

        return {"main": output_items}

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="set",
            name="Set",
            category=NodeCategory.TRANSFORM,
            description="Set field values on items",
            parameters=[
                NodeParameter(
                    name="values",
                    type=ParameterType.JSON,
                    required=True,
                    description="Fields to set; values may be expressions",
                ),
                NodeParameter(
                    name="keep_only_set",
                    type=ParameterType.BOOLEAN,
                    default=False,
                    description="Drop fields that were not set",
                ),
            ],
        )


class NoOpNode(BaseNode):
    """Passes items through unchanged."""

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        return {"main": [item.with_paired_item(i) for i, item in enumerate(inputs.get("main", []))]}

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="noop",
            name="No Operation",
            category=NodeCategory.UTILITY,
            description="Pass items through unchanged",
        )
