"""
Expression engine for node parameters.

Parameters are plain values unless a string contains ``{{ ... }}``
(optionally prefixed with ``=``). n8n-style variables such as ``$json`` and
``$node["Name"]`` are rewritten to Jinja2 names and evaluated in a sandbox
with strict undefined handling. A string made of exactly one expression
yields the native value; mixed text renders to a string.
"""

import re
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import structlog
from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError
from jinja2.runtime import Undefined
from jinja2.sandbox import ImmutableSandboxedEnvironment, SecurityError

from .context import ExpressionContext
from .errors import (
    ExpressionError,
    ExpressionRuntimeError,
    ExpressionSecurityError,
    ExpressionSyntaxError,
    ExpressionTypeError,
    UndefinedVariableError,
)

logger = structlog.get_logger()

CredentialLoader = Callable[[str], Awaitable[Dict[str, Any]]]

_EXPRESSION_BLOCK = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_SINGLE_EXPRESSION = re.compile(r"^\s*\{\{((?:(?!\{\{|\}\}).)*)\}\}\s*$", re.DOTALL)
_N8N_VARIABLE = re.compile(
    r"\$(json|binary|input|node|workflow|execution|static|now|env|credentials|itemIndex)\b"
)
_NODE_CALL = re.compile(r"\$\(")
_CREDENTIAL_REFERENCE = re.compile(
    r"\$credentials(?:\.([A-Za-z_][\w-]*)|\[\s*['\"]([^'\"]+)['\"]\s*\])"
)


class ExpressionEngine:
    """
    Sandboxed Jinja2 evaluator for n8n-style parameter expressions.

    Compiled expressions are cached by source text. Evaluation has no side
    effects on the context, so repeated evaluation against the same context
    yields the same value.
    """

    def __init__(self, cache_size: int = 1024):
        self.cache_size = cache_size
        self.logger = logger.bind(component="expression_engine")
        self.environment = ImmutableSandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._cache: "OrderedDict[Tuple[str, str], Any]" = OrderedDict()
        self.cache_stats = {"hits": 0, "misses": 0}

    @staticmethod
    def is_expression(value: Any) -> bool:
        return isinstance(value, str) and "{{" in value and "}}" in value

    async def resolve(
        self,
        value: Any,
        context: ExpressionContext,
        credential_loader: Optional[CredentialLoader] = None
    ) -> Any:
        """
        Resolve a parameter value.

        Dicts and lists are resolved recursively. Credentials referenced as
        ``$credentials.<name>`` are fetched through ``credential_loader``
        before evaluation.

        Raises:
            ExpressionError: If evaluation fails
            CredentialNotFoundError: If a referenced credential is unknown
        """
        names = self.referenced_credentials(value) - set(context.credentials)
        if names:
            if credential_loader is None:
                raise UndefinedVariableError(
                    "Credentials referenced but no credential lookup is configured",
                    variable_name="$credentials",
                )
            for name in sorted(names):
                context.credentials[name] = await credential_loader(name)
        return self._resolve_value(value, context)

    def resolve_sync(self, value: Any, context: ExpressionContext) -> Any:
        """Resolve without credential lookup; credentials must already be in the context."""
        return self._resolve_value(value, context)

    def referenced_credentials(self, value: Any) -> Set[str]:
        """Credential names referenced anywhere in a parameter value."""
        names: Set[str] = set()
        if isinstance(value, str):
            if self.is_expression(value):
                for block in _EXPRESSION_BLOCK.findall(value):
                    for dotted, quoted in _CREDENTIAL_REFERENCE.findall(block):
                        names.add(dotted or quoted)
        elif isinstance(value, dict):
            for nested in value.values():
                names |= self.referenced_credentials(nested)
        elif isinstance(value, (list, tuple)):
            for nested in value:
                names |= self.referenced_credentials(nested)
        return names

    def clear_cache(self) -> None:
        self._cache.clear()

    def _resolve_value(self, value: Any, context: ExpressionContext) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value, context)
        if isinstance(value, dict):
            return {key: self._resolve_value(nested, context) for key, nested in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(nested, context) for nested in value]
        return value

    def _resolve_string(self, value: str, context: ExpressionContext) -> Any:
        if not self.is_expression(value):
            return value

        source = value[1:] if value.startswith("=") else value
        single = _SINGLE_EXPRESSION.match(source)

        try:
            if single:
                expression = self._compile("expression", self._rewrite(single.group(1).strip()))
                result = expression(**context.to_jinja_context())
                if isinstance(result, Undefined):
                    # Forces StrictUndefined to raise UndefinedError
                    str(result)
                return result

            template = self._compile("template", _EXPRESSION_BLOCK.sub(
                lambda match: "{{" + self._rewrite(match.group(1)) + "}}", source
            ))
            return template.render(**context.to_jinja_context())

        except ExpressionError as e:
            if e.expression is None:
                e.expression = value
                e.details["expression"] = value
            raise
        except TemplateSyntaxError as e:
            raise ExpressionSyntaxError(
                f"Invalid expression syntax: {e.message}", expression=value, line=e.lineno
            ) from e
        except UndefinedError as e:
            raise UndefinedVariableError(
                f"Unresolved reference: {e.message}", expression=value
            ) from e
        except SecurityError as e:
            raise ExpressionSecurityError(f"Expression not allowed: {e}", expression=value) from e
        except TypeError as e:
            raise ExpressionTypeError(f"Type mismatch in expression: {e}", expression=value) from e
        except Exception as e:
            self.logger.debug(
                "Expression evaluation failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ExpressionRuntimeError(
                f"Expression evaluation failed: {e}", expression=value
            ) from e

    def _compile(self, kind: str, source: str) -> Any:
        key = (kind, source)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            self.cache_stats["hits"] += 1
            return cached

        self.cache_stats["misses"] += 1
        if kind == "expression":
            compiled = self.environment.compile_expression(source, undefined_to_none=False)
        else:
            compiled = self.environment.from_string(source)

        if self.cache_size:
            self._cache[key] = compiled
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return compiled

    @staticmethod
    def _rewrite(expression: str) -> str:
        """Map n8n variable syntax onto context names."""
        expression = _NODE_CALL.sub("node(", expression)
        return _N8N_VARIABLE.sub(lambda match: match.group(1), expression)
