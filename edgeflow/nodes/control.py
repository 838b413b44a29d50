"""Control flow node implementations."""

import asyncio
from typing import Any, Dict, List

from edgeflow.executor.data import Item, NodeParameters, WaitRequest

from .base import (
    BaseNode,
    InputPolicy,
    ItemMode,
    NodeCategory,
    NodeDefinition,
    NodeOutput,
    NodeParameter,
    ParameterType,
    PortDefinition,
    ports,
)

# Time-interval waits up to this long sleep in place; longer ones suspend the run
IN_PROCESS_WAIT_LIMIT_SECONDS = 65.0


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


class StopAndErrorException(Exception):
    """Raised by the stop node to fail the run on purpose."""

    def __init__(self, message: str, error_details: Dict[str, Any] = None):
        self.message = message
        self.details = error_details or {}
        super().__init__(message)


class IfNode(BaseNode):
    """IF conditional node: routes each item to ``true`` or ``false``."""

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        routed: Dict[str, List[Item]] = {"true": [], "false": []}

        for index, item in enumerate(inputs.get("main", [])):
            condition = parameters.get("condition", False, item_index=index)
            port = "true" if to_bool(condition) else "false"
            routed[port].append(item.with_paired_item(index))

        return routed

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="if",
            name="IF",
            category=NodeCategory.FLOW,
            description="Branch execution based on condition",
            parameters=[
                NodeParameter(
                    name="condition",
                    type=ParameterType.EXPRESSION,
                    required=True,
                    description="Condition evaluated for every item",
                ),
            ],
            outputs=ports("true", "false"),
        )


class MergeNode(BaseNode):
    """Node for merging two inputs."""

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        mode = parameters.get("mode", "append")
        first = inputs.get("input1", [])
        second = inputs.get("input2", [])

        if mode == "append":
            return {"main": [
                *(item.with_paired_item(i, 0) for i, item in enumerate(first)),
                *(item.with_paired_item(i, 1) for i, item in enumerate(second)),
            ]}

        elif mode == "merge_by_index":
            merged = []
            for index in range(max(len(first), len(second))):
                payload: Dict[str, Any] = {}
                if index < len(first):
                    payload.update(first[index].payload)
                if index < len(second):
                    payload.update(second[index].payload)
                merged.append(Item(json=payload).with_paired_item(index, 0 if index < len(first) else 1))
            return {"main": merged}

        elif mode == "choose_branch":
            branch = parameters.get("output", "input1")
            chosen = first if branch == "input1" else second
            return {"main": [item.with_paired_item(i) for i, item in enumerate(chosen)]}

        raise ValueError(f"Invalid merge mode: {mode}")

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="merge",
            name="Merge",
            category=NodeCategory.FLOW,
            description="Merge items from two inputs once both settled",
            parameters=[
                NodeParameter(
                    name="mode",
                    type=ParameterType.OPTIONS,
                    default="append",
                    options=["append", "merge_by_index", "choose_branch"],
                ),
                NodeParameter(
                    name="output",
                    type=ParameterType.OPTIONS,
                    default="input1",
                    options=["input1", "input2"],
                    description="Branch to output in choose_branch mode",
                ),
            ],
            inputs=[
                PortDefinition(name="input1", required=False),
                PortDefinition(name="input2", required=False),
            ],
            item_mode=ItemMode.ONCE,
        )


class LoopNode(BaseNode):
    """Split-in-batches loop controller.

    The first arrival starts a loop: items are split into batches and the
    first batch goes out on ``loop``. Every later arrival (the loop body
    feeding back) is collected and the next batch is emitted. Once no
    batches remain, everything collected goes out on ``done``.
    """

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        state = helpers.node_state
        batch_size = int(parameters.get("batch_size", 1) or 1)
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        arrived = [item.model_dump(mode="json", by_alias=True) for item in inputs.get("main", [])]

        if not state.get("active"):
            if not arrived:
                return {}
            state["active"] = True
            state["pending"] = arrived
            state["processed"] = []
            state["iteration"] = 0
        else:
            state["processed"].extend(arrived)

        if state["pending"]:
            batch = state["pending"][:batch_size]
            state["pending"] = state["pending"][batch_size:]
            state["iteration"] += 1
            return {"loop": [Item.model_validate(raw) for raw in batch]}

        done = [Item.model_validate(raw) for raw in state["processed"]]
        state.clear()
        return {"done": done}

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="loop",
            name="Loop Over Items",
            category=NodeCategory.FLOW,
            description="Process items in batches, feeding the loop body back into this node",
            parameters=[
                NodeParameter(
                    name="batch_size",
                    type=ParameterType.NUMBER,
                    default=1,
                    description="Items per batch",
                ),
            ],
            outputs=ports("loop", "done"),
            input_policy=InputPolicy.PER_ARRIVAL,
            item_mode=ItemMode.ONCE,
            is_loop_controller=True,
        )


class WaitNode(BaseNode):
    """WAIT node: pauses the run until resumed or until a time interval passes."""

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        resume = parameters.get("resume", "webhook")
        limit = parameters.get("limit_seconds")

        if resume == "time_interval":
            seconds = self._interval_seconds(parameters.get("amount", 1), parameters.get("unit", "seconds"))
            if seconds <= IN_PROCESS_WAIT_LIMIT_SECONDS:
                await asyncio.sleep(seconds)
                return {"main": list(inputs.get("main", []))}
            return WaitRequest(correlation=f"timer:{helpers.run_id}", timeout_seconds=seconds)

        if resume == "webhook":
            correlation = parameters.get("correlation")
            if not correlation:
                raise ValueError("Wait node needs a correlation value to resume on")
            return WaitRequest(
                correlation=str(correlation),
                timeout_seconds=float(limit) if limit else None,
            )

        raise ValueError(f"Invalid resume mode: {resume}")

    @staticmethod
    def _interval_seconds(amount: Any, unit: str) -> float:
        factors = {"milliseconds": 0.001, "seconds": 1.0, "minutes": 60.0, "hours": 3600.0, "days": 86400.0}
        if unit not in factors:
            raise ValueError(f"Invalid time unit: {unit}")
        return float(amount) * factors[unit]

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="wait",
            name="Wait",
            category=NodeCategory.FLOW,
            description="Pause execution until an external event or a time interval",
            parameters=[
                NodeParameter(
                    name="resume",
                    type=ParameterType.OPTIONS,
                    default="webhook",
                    options=["webhook", "time_interval"],
                ),
                NodeParameter(
                    name="correlation",
                    type=ParameterType.STRING,
                    description="Value identifying the resume call, e.g. a webhook path",
                ),
                NodeParameter(
                    name="limit_seconds",
                    type=ParameterType.NUMBER,
                    description="Resume with the original input after this long",
                ),
                NodeParameter(name="amount", type=ParameterType.NUMBER, default=1),
                NodeParameter(
                    name="unit",
                    type=ParameterType.OPTIONS,
                    default="seconds",
                    options=["milliseconds", "seconds", "minutes", "hours", "days"],
                ),
            ],
            item_mode=ItemMode.ONCE,
        )


class StopNode(BaseNode):
    """Stop and Error node: fails the run with a configured message."""

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers
    ) -> NodeOutput:
        message = parameters.get("message") or "Workflow stopped"
        raise StopAndErrorException(str(message), {"items": len(inputs.get("main", []))})

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type="stop",
            name="Stop and Error",
            category=NodeCategory.FLOW,
            description="Stop workflow execution with an error",
            parameters=[
                NodeParameter(
                    name="message",
                    type=ParameterType.STRING,
                    description="Error message",
                ),
            ],
            outputs=[],
            item_mode=ItemMode.ONCE,
        )
