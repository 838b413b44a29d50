"""Expression engine error classes."""

from typing import Any, Dict, Optional


class ExpressionError(Exception):
    """
    Base class for parameter expression failures.

    ``details`` is copied into the run's error record, so it only ever holds
    the raw expression and where it was evaluated, never resolved values.
    """

    error_code = "EXPRESSION_ERROR"

    def __init__(self, message: str, expression: Optional[str] = None, **details):
        super().__init__(message)
        self.message = message
        self.expression = expression
        self.node_name: Optional[str] = None
        self.item_index: Optional[int] = None
        self.details: Dict[str, Any] = {"expression": expression, **details}

    def located(self, node_name: str, item_index: Optional[int] = None) -> "ExpressionError":
        """Attach the node and item the expression was evaluated for."""
        self.node_name = node_name
        self.item_index = item_index
        self.details["node_name"] = node_name
        if item_index is not None:
            self.details["item_index"] = item_index
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ExpressionSyntaxError(ExpressionError):
    """The expression does not parse."""

    error_code = "SYNTAX_ERROR"

    def __init__(self, message: str, expression: str, line: Optional[int] = None):
        super().__init__(message, expression, line=line)
        self.line = line


class ExpressionRuntimeError(ExpressionError):
    error_code = "RUNTIME_ERROR"


class ExpressionSecurityError(ExpressionError):
    """The expression touched something the sandbox forbids."""

    error_code = "SECURITY_ERROR"


class ExpressionTypeError(ExpressionError):
    error_code = "TYPE_ERROR"


class UndefinedVariableError(ExpressionError):
    """The expression references a field, node or variable that does not exist."""

    error_code = "UNDEFINED_VARIABLE"

    def __init__(self, message: str, expression: Optional[str] = None, variable_name: Optional[str] = None):
        super().__init__(message, expression, variable_name=variable_name)
        self.variable_name = variable_name
