"""Expression substitution for node configuration and inputs.

Strings may reference other nodes and run context with ``{{...}}``:

- ``{{Fetch.output}}`` / ``{{Fetch.output.items[0].id}}``: output of a node,
  addressed by name or id
- ``{{Fetch.input.value}}``: the resolved input of a node
- ``{{Fetch.items}}``: shorthand for ``{{Fetch.output.items}}``
- ``{{$input}}``, ``{{$output}}``: the current node's own input and output
- ``{{$now}}``, ``{{$timestamp}}``, ``{{$executionId}}``, ``{{$workflowId}}``,
  ``{{$nodeName}}``, ``{{$nodeId}}``
- ``{{$trigger.path}}``: trigger data of the run
- ``{{$vars.path}}``: workflow variables
- ``{{$json}}``: every available output keyed by node label

A string that is exactly one expression evaluates to the raw value; embedded
expressions are stringified (``None`` becomes the empty string, mappings and
sequences become JSON). Unknown references evaluate to ``None``.
"""

import json
import re
import time
from typing import Any, Dict, List, Mapping, Optional, Set

from ..models.core import utcnow
from .logging import get_logger

logger = get_logger(__name__)


class ExpressionContext:
    """Data an expression may reference."""

    def __init__(
        self,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        node_id: Optional[str] = None,
        node_name: Optional[str] = None,
        node_data: Optional[Dict[str, Dict[str, Any]]] = None,
        node_names: Optional[Dict[str, str]] = None,
        trigger_data: Any = None,
        variables: Optional[Dict[str, Any]] = None
    ):
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.node_id = node_id
        self.node_name = node_name
        # node id -> {"input": ..., "output": ...}
        self.node_data = node_data or {}
        # node name -> node id
        self.node_names = node_names or {}
        self.trigger_data = trigger_data
        self.variables = variables or {}

    def lookup_node(self, reference: str) -> Optional[str]:
        if reference in self.node_names:
            return self.node_names[reference]
        if reference in self.node_data:
            return reference
        return None


class ExpressionEvaluator:
    """Evaluates ``{{...}}`` expressions inside arbitrarily nested values."""

    PATTERN = re.compile(r"\{\{([^}]+)\}\}")
    FULL_PATTERN = re.compile(r"^\{\{([^}]+)\}\}$")

    def evaluate(self, value: Any, context: ExpressionContext) -> Any:
        """Evaluate all expressions in a value, returning a new value."""
        if isinstance(value, str):
            return self._evaluate_string(value, context)
        if isinstance(value, list):
            return [self.evaluate(item, context) for item in value]
        if isinstance(value, dict):
            return {key: self.evaluate(item, context) for key, item in value.items()}
        return value

    def has_expressions(self, value: Any) -> bool:
        if isinstance(value, str):
            return self.PATTERN.search(value) is not None
        if isinstance(value, list):
            return any(self.has_expressions(item) for item in value)
        if isinstance(value, dict):
            return any(self.has_expressions(item) for item in value.values())
        return False

    def extract_node_references(self, value: Any) -> Set[str]:
        """Names or ids of the nodes referenced by expressions in ``value``."""
        references: Set[str] = set()
        if isinstance(value, str):
            for match in self.PATTERN.finditer(value):
                parts = parse_path(match.group(1).strip())
                if parts and not parts[0].startswith("$"):
                    references.add(parts[0])
        elif isinstance(value, list):
            for item in value:
                references |= self.extract_node_references(item)
        elif isinstance(value, dict):
            for item in value.values():
                references |= self.extract_node_references(item)
        return references

    def _evaluate_string(self, text: str, context: ExpressionContext) -> Any:
        full_match = self.FULL_PATTERN.match(text)
        if full_match:
            return self.resolve(full_match.group(1).strip(), context)
        return self.PATTERN.sub(
            lambda match: stringify(self.resolve(match.group(1).strip(), context)), text
        )

    def resolve(self, expression: str, context: ExpressionContext) -> Any:
        """Resolve a single expression body (without the braces)."""
        parts = parse_path(expression)
        if not parts:
            return None
        if parts[0].startswith("$"):
            return self._resolve_builtin(parts, context)

        node_id = context.lookup_node(parts[0])
        if node_id is None:
            logger.debug(f"Expression '{expression}' references unknown node '{parts[0]}'")
            return None
        data = context.node_data.get(node_id)
        if data is None:
            return None
        if len(parts) == 1:
            return data.get("output")
        if parts[1] in ("input", "output"):
            return get_nested_value(data, parts[1:])
        return get_nested_value(data.get("output"), parts[1:])

    def _resolve_builtin(self, parts: List[str], context: ExpressionContext) -> Any:
        name, rest = parts[0], parts[1:]
        current = context.node_data.get(context.node_id, {}) if context.node_id else {}

        if name == "$input":
            return get_nested_value(current.get("input"), rest)
        if name == "$output":
            return get_nested_value(current.get("output"), rest)
        if name == "$now":
            return utcnow().isoformat()
        if name == "$timestamp":
            return int(time.time() * 1000)
        if name == "$executionId":
            return context.execution_id
        if name == "$workflowId":
            return context.workflow_id
        if name == "$nodeName":
            return context.node_name
        if name == "$nodeId":
            return context.node_id
        if name == "$trigger":
            return get_nested_value(context.trigger_data, rest)
        if name == "$vars":
            return get_nested_value(context.variables, rest)
        if name == "$json":
            names_by_id = {node_id: node_name for node_name, node_id in context.node_names.items()}
            outputs = {
                names_by_id.get(node_id, node_id): data["output"]
                for node_id, data in context.node_data.items()
                if data.get("output") is not None
            }
            return get_nested_value(outputs, rest)
        return None


def parse_path(expression: str) -> List[str]:
    """Split ``a.b[0].c`` into ``["a", "b", "0", "c"]``."""
    parts: List[str] = []
    current = ""
    in_bracket = False
    for char in expression:
        if char == "[":
            if current:
                parts.append(current)
                current = ""
            in_bracket = True
        elif char == "]":
            if current:
                parts.append(current.strip("'\""))
                current = ""
            in_bracket = False
        elif char == "." and not in_bracket:
            if current:
                parts.append(current)
                current = ""
        else:
            current += char
    if current:
        parts.append(current)
    return parts


def get_nested_value(value: Any, parts: List[str]) -> Any:
    current = value
    for part in parts:
        if current is None:
            return None
        if isinstance(current, (list, tuple)):
            if not part.isdigit() or int(part) >= len(current):
                return None
            current = current[int(part)]
        elif isinstance(current, Mapping):
            current = current.get(part)
        else:
            return None
    return current


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value, default=str)
    return str(value)


_default_evaluator = ExpressionEvaluator()


def evaluate_node_data(value: Any, context: Optional[ExpressionContext]) -> Any:
    """Evaluate expressions in ``value`` with the shared evaluator.

    Returns ``value`` untouched when there is no context or nothing to evaluate.
    """
    if context is None or not _default_evaluator.has_expressions(value):
        return value
    return _default_evaluator.evaluate(value, context)
