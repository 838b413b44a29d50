"""Base node classes and definitions."""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, Field

from edgeflow.executor.data import Item, NodeParameters, WaitRequest

if TYPE_CHECKING:
    from edgeflow.executor.context import NodeHelpers

logger = structlog.get_logger()

NodeOutput = Union[Dict[str, List[Item]], List[Item], WaitRequest]


class NodeCategory(str, Enum):
    """Node category enumeration."""
    CORE = "core"
    TRIGGER = "trigger"
    ACTION = "action"
    TRANSFORM = "transform"
    FLOW = "flow"
    UTILITY = "utility"
    CUSTOM = "custom"


class ParameterType(str, Enum):
    """Parameter type enumeration."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    OPTIONS = "options"
    ARRAY = "array"
    DATE = "date"
    EXPRESSION = "expression"


class InputPolicy(str, Enum):
    """When a node with several incoming connections runs."""
    ALL_SETTLED = "all_settled"
    PER_ARRIVAL = "per_arrival"


class ItemMode(str, Enum):
    """How parameters are resolved against input items."""
    EACH_ITEM = "each_item"
    ONCE = "once"


class NodeParameter(BaseModel):
    """Node parameter definition."""
    name: str = Field(..., description="Parameter name")
    display_name: Optional[str] = Field(None, description="Parameter display name")
    type: ParameterType = Field(..., description="Parameter type")
    required: bool = Field(default=False, description="Is parameter required")
    default: Any = Field(default=None, description="Default value")
    description: Optional[str] = Field(None, description="Parameter description")
    options: Optional[List[str]] = Field(None, description="Options for OPTIONS type")

    def validate_value(self, value: Any) -> bool:
        """Validate a resolved parameter value."""
        if value is None:
            return not self.required

        if self.type == ParameterType.STRING:
            return isinstance(value, str)

        elif self.type == ParameterType.NUMBER:
            return isinstance(value, (int, float)) and not isinstance(value, bool)

        elif self.type == ParameterType.BOOLEAN:
            return isinstance(value, bool)

        elif self.type == ParameterType.JSON:
            return isinstance(value, (dict, list))

        elif self.type == ParameterType.OPTIONS:
            return value in (self.options or [])

        elif self.type == ParameterType.ARRAY:
            return isinstance(value, list)

        elif self.type == ParameterType.DATE:
            return isinstance(value, (str, datetime))

        return True


class PortDefinition(BaseModel):
    """Input or output port of a node type."""
    name: str = Field(..., description="Port name")
    type: str = Field(default="main", description="Port data type")
    required: bool = Field(default=True, description="Input must receive items for the node to run")


def ports(*names: str, required: bool = True) -> List[PortDefinition]:
    return [PortDefinition(name=name, required=required) for name in names]


class NodeDefinition(BaseModel):
    """Node type definition."""
    type: str = Field(..., description="Registered type key")
    name: str = Field(..., description="Node display name")
    category: NodeCategory = Field(default=NodeCategory.CORE, description="Node category")
    description: str = Field(default="", description="Node description")

    parameters: List[NodeParameter] = Field(default_factory=list, description="Node parameters")
    inputs: List[PortDefinition] = Field(default_factory=lambda: ports("main"), description="Input ports")
    outputs: List[PortDefinition] = Field(default_factory=lambda: ports("main"), description="Output ports")
    dynamic_outputs: bool = Field(default=False, description="Outputs are defined by parameters")

    input_policy: InputPolicy = Field(default=InputPolicy.ALL_SETTLED)
    item_mode: ItemMode = Field(default=ItemMode.EACH_ITEM)
    is_trigger: bool = Field(default=False, description="Node can start a run")
    is_loop_controller: bool = Field(default=False, description="Node may sit on a cycle")

    version: str = Field(default="1.0", description="Node version")

    def get_input(self, name: str) -> Optional[PortDefinition]:
        for port in self.inputs:
            if port.name == name:
                return port
        return None

    def get_output(self, name: str) -> Optional[PortDefinition]:
        for port in self.outputs:
            if port.name == name:
                return port
        return None

    @property
    def input_names(self) -> List[str]:
        return [port.name for port in self.inputs]

    @property
    def output_names(self) -> List[str]:
        return [port.name for port in self.outputs]

    @property
    def main_output(self) -> str:
        return self.outputs[0].name if self.outputs else "main"


class BaseNode(ABC):
    """Base class for all nodes.

    Instances are shared across runs and must not keep per-run state;
    anything a node needs to remember lives in ``helpers.node_state``.
    """

    def __init__(self):
        definition = self.get_definition()
        self.definition = definition
        self.logger = logger.bind(node_type=definition.type)

    @abstractmethod
    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers: "NodeHelpers"
    ) -> NodeOutput:
        """Execute the node. Must be implemented by subclasses.

        Returns items per output port, a bare list for the first output
        port, or a ``WaitRequest`` to pause the run.
        """
        raise NotImplementedError("Node execution not implemented")

    @classmethod
    @abstractmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        raise NotImplementedError("Node definition not implemented")


class TriggerNode(BaseNode):
    """Base class for trigger nodes: emits the items the run was started with."""

    async def execute(
        self,
        parameters: NodeParameters,
        inputs: Dict[str, List[Item]],
        helpers: "NodeHelpers"
    ) -> NodeOutput:
        return {self.definition.main_output: list(inputs.get("main", []))}
