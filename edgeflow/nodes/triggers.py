"""Trigger node implementations."""

from typing import Dict, List

from edgeflow.executor.data import Item, NodeParameters

from .base import (
    NodeCategory,
    NodeDefinition,
    NodeOutput,
    NodeParameter,
    ParameterType,
    TriggerNode,
)


class ManualTriggerNode(TriggerNode):
    """Manual trigger node - triggered by user action."""

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="manual.trigger",
            name="Manual Trigger",
            category=NodeCategory.TRIGGER,
            description="Manually trigger workflow execution",
            inputs=[],
            is_trigger=True,
        )


class WebhookTriggerNode(TriggerNode):
    """Webhook trigger node - started with the request payload as items."""

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        items = list(inputs.get("main", []))
        if parameters.get("response_mode", "last_node") == "on_received":
            helpers.logger.debug("Webhook acknowledged on receipt", items=len(items))
        return {"main": items}

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="webhook.trigger",
            name="Webhook Trigger",
            category=NodeCategory.TRIGGER,
            description="Start a workflow from an inbound webhook call",
            parameters=[
                NodeParameter(
                    name="path",
                    type=ParameterType.STRING,
                    required=True,
                    description="Webhook path",
                ),
                NodeParameter(
                    name="method",
                    type=ParameterType.OPTIONS,
                    default="POST",
                    options=["GET", "POST", "PUT", "PATCH", "DELETE"],
                ),
                NodeParameter(
                    name="response_mode",
                    type=ParameterType.OPTIONS,
                    default="last_node",
                    options=["on_received", "last_node"],
                ),
            ],
            inputs=[],
            is_trigger=True,
        )


class ErrorTriggerNode(TriggerNode):
    """Starts an error workflow with the failed run's context."""

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="error.trigger",
            name="Error Trigger",
            category=NodeCategory.TRIGGER,
            description="Triggered when another workflow's run fails",
            inputs=[],
            is_trigger=True,
        )
