"""Execute Workflow node implementation for workflow composition."""

from typing import Dict, List

import structlog

from edgeflow.executor.data import Item, NodeParameters
from edgeflow.nodes.base import (
    BaseNode,
    ItemMode,
    NodeCategory,
    NodeDefinition,
    NodeOutput,
    NodeParameter,
    ParameterType,
)
from edgeflow.workflows.models import Workflow

logger = structlog.get_logger()


class ExecuteWorkflowNode(BaseNode):
    """Node that executes another workflow as a sub-workflow.

    The sub-run receives this node's input items as trigger data and this
    node completes only once the sub-run finished. In ``each`` mode one
    sub-run is started per input item.
    """

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        items = list(inputs.get("main", []))
        workflow_id = parameters.get("workflow_id")
        inline = parameters.get("workflow")

        if not workflow_id and not inline:
            raise ValueError("Either 'workflow_id' or 'workflow' parameter is required")

        workflow = Workflow.model_validate(inline) if inline else None
        target = workflow if workflow is not None else str(workflow_id)

        if parameters.get("mode", "once") == "each":
            output: List[Item] = []
            for index, item in enumerate(items):
                result = await helpers.execute_workflow(target, [item])
                output.extend(r.with_paired_item(index) for r in result)
            return {"main": output}

        result = await helpers.execute_workflow(target, items)
        return {"main": result}

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="execute_workflow",
            name="Execute Workflow",
            category=NodeCategory.FLOW,
            description="Run another workflow and return its final output",
            parameters=[
                NodeParameter(
                    name="workflow_id",
                    type=ParameterType.STRING,
                    description="Id of the workflow to run",
                ),
                NodeParameter(
                    name="workflow",
                    type=ParameterType.JSON,
                    description="Inline workflow definition",
                ),
                NodeParameter(
                    name="mode",
                    type=ParameterType.OPTIONS,
                    default="once",
                    options=["once", "each"],
                    description="One sub-run for all items or one per item",
                ),
            ],
            item_mode=ItemMode.ONCE,
        )
