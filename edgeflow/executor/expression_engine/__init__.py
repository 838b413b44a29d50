"""
Expression evaluation for node parameters.

Supports n8n-style variables ($json, $node, $input, $now, $workflow,
$execution, $static, $env, $credentials) evaluated as sandboxed Jinja2
expressions.
"""

from .context import ExpressionContext
from .engine import ExpressionEngine
from .errors import (
    ExpressionError,
    ExpressionRuntimeError,
    ExpressionSecurityError,
    ExpressionSyntaxError,
    ExpressionTypeError,
    UndefinedVariableError,
)

__all__ = [
    "ExpressionContext",
    "ExpressionEngine",
    "ExpressionError",
    "ExpressionRuntimeError",
    "ExpressionSecurityError",
    "ExpressionSyntaxError",
    "ExpressionTypeError",
    "UndefinedVariableError",
]
