"""Node contract, registry and built-in engine nodes."""

from .base import (
    BaseNode,
    InputPolicy,
    ItemMode,
    NodeCategory,
    NodeDefinition,
    NodeParameter,
    ParameterType,
    PortDefinition,
    TriggerNode,
)
from .registry import NodeRegistry, get_default_registry

__all__ = [
    "BaseNode",
    "InputPolicy",
    "ItemMode",
    "NodeCategory",
    "NodeDefinition",
    "NodeParameter",
    "NodeRegistry",
    "ParameterType",
    "PortDefinition",
    "TriggerNode",
    "get_default_registry",
]
