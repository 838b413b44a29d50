"""Execution data handling classes."""

import base64
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from edgeflow.workflows.models import NodeExecutionStatus


class BinaryData(BaseModel):
    """Binary attachment carried by an item."""

    model_config = ConfigDict(frozen=True)

    mime_type: str = Field(..., description="MIME type")
    data: str = Field(..., description="Base64 encoded content")
    file_name: Optional[str] = Field(None, description="Original file name")
    file_size: Optional[int] = Field(None, description="Size in bytes")

    @classmethod
    def from_bytes(
        cls,
        content: bytes,
        mime_type: str = "application/octet-stream",
        file_name: Optional[str] = None
    ) -> "BinaryData":
        return cls(
            mime_type=mime_type,
            data=base64.b64encode(content).decode("ascii"),
            file_name=file_name,
            file_size=len(content),
        )

    def content(self) -> bytes:
        """Decode the attachment."""
        return base64.b64decode(self.data)


class PairedItem(BaseModel):
    """Provenance link to the input item an item was derived from."""

    model_config = ConfigDict(frozen=True)

    item: int = Field(..., ge=0, description="Index of the source item")
    input: int = Field(default=0, ge=0, description="Index of the input port")


class Item(BaseModel):
    """One unit of data flowing along a connection.

    Items are immutable once produced. Nodes build new items rather than
    editing the ones they receive.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    payload: Dict[str, Any] = Field(default_factory=dict, alias="json")
    binary: Dict[str, BinaryData] = Field(default_factory=dict)
    paired_item: List[PairedItem] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = Field(
        None, description="Set on items synthesized from a failure"
    )

    @classmethod
    def coerce(cls, value: Union["Item", Dict[str, Any]]) -> "Item":
        """Accept an item or a bare JSON payload."""
        if isinstance(value, Item):
            return value
        if isinstance(value, dict):
            return cls(json=value)
        raise TypeError(f"Cannot convert {type(value).__name__} to Item")

    def with_payload(self, payload: Dict[str, Any]) -> "Item":
        """Derive a new item with a different payload, keeping binary data."""
        return self.model_copy(update={"payload": payload})

    def with_paired_item(self, item_index: int, input_index: int = 0) -> "Item":
        return self.model_copy(
            update={"paired_item": [PairedItem(item=item_index, input=input_index)]}
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None


def coerce_items(values: Optional[Iterable[Union[Item, Dict[str, Any]]]]) -> List[Item]:
    """Normalize a list of items or bare payloads."""
    if values is None:
        return []
    return [Item.coerce(value) for value in values]


def payloads(items: Iterable[Item]) -> List[Dict[str, Any]]:
    """Extract JSON payloads from items."""
    return [item.payload for item in items]


class NodeParameters:
    """Resolved parameters handed to a node.

    ``per_item`` holds one resolved dict per input item for nodes that
    process items individually. ``shared`` is the evaluation against the
    first item and is what "once" nodes read.
    """

    def __init__(self, shared: Dict[str, Any], per_item: Optional[List[Dict[str, Any]]] = None):
        self.shared = shared
        self.per_item = per_item or []

    def get(self, name: str, default: Any = None, item_index: Optional[int] = None) -> Any:
        if item_index is not None and item_index < len(self.per_item):
            return self.per_item[item_index].get(name, default)
        return self.shared.get(name, default)

    def for_item(self, item_index: int) -> Dict[str, Any]:
        if item_index < len(self.per_item):
            return self.per_item[item_index]
        return self.shared

    def __contains__(self, name: str) -> bool:
        return name in self.shared

    def __repr__(self) -> str:
        # Resolved values may contain secrets
        return f"NodeParameters(keys={sorted(self.shared)}, items={len(self.per_item)})"


class WaitRequest(BaseModel):
    """Returned by a node that must pause the run until an external event."""

    correlation: str = Field(..., min_length=1, description="Caller-supplied correlation value")
    output: Optional[str] = Field(None, description="Output port that receives the resume items")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Wait limit")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ErrorInfo(BaseModel):
    """Failure details recorded on a node task or run."""

    type: str = Field(..., description="Exception class name")
    message: str = Field(..., description="Error message")
    error_code: Optional[str] = None
    node_name: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, node_name: Optional[str] = None) -> "ErrorInfo":
        details = getattr(exc, "details", None)
        if not isinstance(details, dict):
            details = {}
        return cls(
            type=type(exc).__name__,
            message=getattr(exc, "message", None) or str(exc) or type(exc).__name__,
            error_code=getattr(exc, "error_code", None),
            node_name=node_name or getattr(exc, "node_name", None),
            details=details,
        )


class TaskData(BaseModel):
    """Record of one node task in a run."""

    run_index: int = Field(..., ge=0)
    status: NodeExecutionStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    execution_time_ms: Optional[float] = None
    attempts: int = Field(default=1, ge=0)
    input: Dict[str, List[Item]] = Field(default_factory=dict)
    output: Dict[str, List[Item]] = Field(default_factory=dict)
    parameters: Dict[str, Any] = Field(
        default_factory=dict, description="Raw parameter expressions, never resolved values"
    )
    error: Optional[ErrorInfo] = None
    resume_key: Optional[str] = None

    def output_items(self, port: Optional[str] = None) -> List[Item]:
        if port is not None:
            return self.output.get(port, [])
        for items in self.output.values():
            if items:
                return items
        return []


class ExecutionMetrics(BaseModel):
    """Counters collected while a run executes."""

    nodes_executed: int = 0
    nodes_failed: int = 0
    nodes_skipped: int = 0
    retries: int = 0
    items_produced: int = 0
    scheduling_steps: int = 0
