"""Expression evaluation context."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from edgeflow.executor.data import Item
from edgeflow.executor.state import RunState

from .errors import ExpressionRuntimeError, UndefinedVariableError


def item_view(item: Item) -> Dict[str, Any]:
    """Detached copy of an item for expressions; history is never exposed directly."""
    return {
        "json": copy.deepcopy(item.payload),
        "binary": {name: data.model_dump() for name, data in item.binary.items()},
        "error": copy.deepcopy(item.error),
    }


class ExpressionContext:
    """
    Context for expression evaluation.

    Exposes the current item, the output history of every node that already
    ran in this run, workflow and execution metadata, run static data and
    credentials resolved before evaluation. Everything is read from the run
    state, so identical state yields identical values.
    """

    def __init__(
        self,
        run_state: Optional[RunState] = None,
        node_name: Optional[str] = None,
        items: Optional[List[Item]] = None,
        item_index: int = 0,
        now: Optional[datetime] = None,
        env: Optional[Dict[str, str]] = None,
        credentials: Optional[Dict[str, Dict[str, Any]]] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        self.run_state = run_state
        self.node_name = node_name
        self.items = items or []
        self.item_index = item_index
        self.now = now or (run_state.started_at if run_state and run_state.started_at else None)
        self.env = env
        self.credentials = dict(credentials or {})
        self.additional_context = additional_context or {}

    def for_item(self, item_index: int) -> "ExpressionContext":
        """Copy of this context pointing at another item."""
        return ExpressionContext(
            run_state=self.run_state,
            node_name=self.node_name,
            items=self.items,
            item_index=item_index,
            now=self.now,
            env=self.env,
            credentials=self.credentials,
            additional_context=self.additional_context,
        )

    @property
    def current_item(self) -> Optional[Item]:
        if 0 <= self.item_index < len(self.items):
            return self.items[self.item_index]
        return None

    def to_jinja_context(self) -> Dict[str, Any]:
        """Convert to Jinja template context."""
        item = self.current_item
        context = {
            "json": copy.deepcopy(item.payload) if item else {},
            "binary": item_view(item)["binary"] if item else {},
            "item_index": self.item_index,
            "itemIndex": self.item_index,
            "input": InputHelper(self),
            "node": NodeHelper(self),
            "workflow": WorkflowHelper(self.run_state),
            "execution": ExecutionHelper(self.run_state),
            "static": copy.deepcopy(self.run_state.static_data) if self.run_state else {},
            "credentials": copy.deepcopy(self.credentials),
            "env": dict(self.env) if self.env is not None else {},
            **self.additional_context,
        }
        if self.now is not None:
            context["now"] = DateTimeHelper(self.now)
        return context


class DateTimeHelper:
    """Date/time helper pinned to a fixed instant."""

    def __init__(self, current_time: datetime):
        if current_time.tzinfo is None:
            current_time = current_time.replace(tzinfo=timezone.utc)
        self._current_time = current_time

    def __str__(self) -> str:
        return self._current_time.isoformat()

    def __repr__(self) -> str:
        return f"DateTimeHelper({self._current_time})"

    def iso(self) -> str:
        return self._current_time.isoformat()

    def timestamp(self) -> float:
        return self._current_time.timestamp()

    def format(self, format_str: str) -> str:
        """Format with n8n-style tokens."""
        return self._current_time.strftime(self._convert_format(format_str))

    def plus(self, amount: int, unit: str) -> "DateTimeHelper":
        units = {
            "day": "days", "days": "days",
            "hour": "hours", "hours": "hours",
            "minute": "minutes", "minutes": "minutes",
            "second": "seconds", "seconds": "seconds",
        }
        if unit not in units:
            raise ExpressionRuntimeError(f"Unsupported time unit: {unit}")
        return DateTimeHelper(self._current_time + timedelta(**{units[unit]: amount}))

    def minus(self, amount: int, unit: str) -> "DateTimeHelper":
        return self.plus(-amount, unit)

    @property
    def year(self) -> int:
        return self._current_time.year

    @property
    def month(self) -> int:
        return self._current_time.month

    @property
    def day(self) -> int:
        return self._current_time.day

    @property
    def hour(self) -> int:
        return self._current_time.hour

    @property
    def minute(self) -> int:
        return self._current_time.minute

    @staticmethod
    def _convert_format(format_str: str) -> str:
        conversions = [
            ("YYYY", "%Y"),
            ("YY", "%y"),
            ("MM", "%m"),
            ("DD", "%d"),
            ("HH", "%H"),
            ("mm", "%M"),
            ("ss", "%S"),
        ]
        result = format_str
        for token, python_format in conversions:
            result = result.replace(token, python_format)
        return result


class InputHelper:
    """Access to the current node's main input items."""

    def __init__(self, context: ExpressionContext):
        self.context = context

    def all(self) -> List[Dict[str, Any]]:
        return [item_view(item) for item in self.context.items]

    def first(self) -> Dict[str, Any]:
        items = self.context.items
        return item_view(items[0]) if items else {}

    def last(self) -> Dict[str, Any]:
        items = self.context.items
        return item_view(items[-1]) if items else {}

    @property
    def item(self) -> Dict[str, Any]:
        current = self.context.current_item
        return item_view(current) if current else {}

    def __len__(self) -> int:
        return len(self.context.items)

    def __iter__(self):
        return iter(self.all())


class NodeHelper:
    """Access to other nodes' output: ``$node["Name"]`` or ``$("Name")``."""

    def __init__(self, context: ExpressionContext):
        self.context = context

    def __getitem__(self, node_name: str) -> "NodeDataHelper":
        return self(node_name)

    def __call__(self, node_name: str) -> "NodeDataHelper":
        run_state = self.context.run_state
        if run_state is None or run_state.workflow.get_node(node_name) is None:
            raise UndefinedVariableError(
                f"Referenced node '{node_name}' does not exist",
                variable_name=node_name,
            )
        return NodeDataHelper(self.context, node_name)


class NodeDataHelper:
    """Output history of one node."""

    def __init__(self, context: ExpressionContext, node_name: str):
        self.context = context
        self.node_name = node_name

    def _items(self, port: Optional[str] = None, run_index: int = -1) -> List[Item]:
        run_state = self.context.run_state
        if not run_state.tasks(self.node_name):
            raise ExpressionRuntimeError(
                f"Referenced node '{self.node_name}' has not been executed",
                node=self.node_name,
            )
        return run_state.node_output(self.node_name, port, run_index)

    @property
    def json(self) -> Dict[str, Any]:
        """Item paired with the current item index, falling back to the first."""
        items = self._items()
        if not items:
            return {}
        index = self.context.item_index
        item = items[index] if index < len(items) else items[0]
        return copy.deepcopy(item.payload)

    @property
    def runs(self) -> int:
        return len(self.context.run_state.tasks(self.node_name))

    def all(self, port: Optional[str] = None, run_index: int = -1) -> List[Dict[str, Any]]:
        return [item_view(item) for item in self._items(port, run_index)]

    def first(self) -> Dict[str, Any]:
        items = self._items()
        return item_view(items[0]) if items else {}

    def last(self) -> Dict[str, Any]:
        items = self._items()
        return item_view(items[-1]) if items else {}

    def item(self, index: int) -> Dict[str, Any]:
        items = self._items()
        return item_view(items[index]) if 0 <= index < len(items) else {}

    def output(self, port: str) -> List[Dict[str, Any]]:
        return [item_view(item) for item in self._items(port)]


class WorkflowHelper:
    """Workflow metadata."""

    def __init__(self, run_state: Optional[RunState]):
        self._run_state = run_state

    @property
    def id(self) -> Optional[str]:
        return self._run_state.workflow_id if self._run_state else None

    @property
    def name(self) -> Optional[str]:
        return self._run_state.workflow.name if self._run_state else None


class ExecutionHelper:
    """Execution metadata."""

    def __init__(self, run_state: Optional[RunState]):
        self._run_state = run_state

    @property
    def id(self) -> Optional[str]:
        return self._run_state.run_id if self._run_state else None

    @property
    def mode(self) -> Optional[str]:
        return self._run_state.mode.value if self._run_state else None

    @property
    def parent_id(self) -> Optional[str]:
        return self._run_state.parent_run_id if self._run_state else None
