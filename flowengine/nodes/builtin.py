"""Built-in node handlers.

Handlers are plain functions called as ``handler(value, config=...,
context=...)``; only the keyword arguments a handler declares are passed.
"""

import operator
from numbers import Number
from typing import Any, Dict, List, Optional

from ..core.logging import get_logger
from ..core.node_registry import NodeHandlerRegistry
from ..core.node_runner import NodeContext

logger = get_logger(__name__)

CONDITION_NAMES = {"true": True, "false": False, "null": None, "True": True, "False": False, "None": None}

COMPARISONS = {
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
    "!==": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "contains": lambda left, right: right in left,
    "in": lambda left, right: left in right,
}


def _to_number(value: Any) -> Number:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Number):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            try:
                return float(text)
            except ValueError:
                pass
    raise ValueError(f"Expected a number, got {value!r}")


def operands(value: Any) -> List[Number]:
    """Flatten a resolved input into the numbers an arithmetic node works on.

    A mapping contributes its values in order (an explicit ``values`` list
    wins), a sequence its items, anything else is a single operand.
    """
    if value is None:
        return []
    if isinstance(value, dict):
        if isinstance(value.get("values"), (list, tuple)):
            value = value["values"]
        else:
            value = list(value.values())
    if not isinstance(value, (list, tuple)):
        value = [value]
    return [_to_number(item) for item in value]


def input_node(value: Any, context: Optional[NodeContext] = None) -> Any:
    """Emit the node's resolved input unchanged."""
    if context is not None:
        context.info(f"Input node providing value: {value!r}")
    return value


def add_node(value: Any, context: Optional[NodeContext] = None) -> Number:
    numbers = operands(value)
    result = sum(numbers)
    if context is not None:
        context.debug(f"Adding values: {' + '.join(str(n) for n in numbers)}")
        context.info(f"Addition result: {result}")
    return result


def subtract_node(value: Any, context: Optional[NodeContext] = None) -> Number:
    numbers = operands(value)
    if not numbers:
        return 0
    result = numbers[0]
    for number in numbers[1:]:
        result -= number
    if context is not None:
        context.info(f"Subtraction result: {result}")
    return result


def multiply_node(value: Any, context: Optional[NodeContext] = None) -> Number:
    numbers = operands(value)
    if not numbers:
        return 0
    result = 1
    for number in numbers:
        result *= number
    if context is not None:
        context.info(f"Multiplication result: {result}")
    return result


def divide_node(value: Any, context: Optional[NodeContext] = None) -> Number:
    """Divide the first operand by each following one; dividing by zero fails the node."""
    numbers = operands(value)
    if not numbers:
        return 0
    result = numbers[0]
    for divisor in numbers[1:]:
        if divisor == 0:
            raise ZeroDivisionError(f"Cannot divide {result} by zero")
        result = result / divisor
    if context is not None:
        context.info(f"Division result: {result}")
    return result


def evaluate_condition(condition: Any) -> bool:
    """Evaluate an IF_ELSE condition.

    Booleans and numbers are taken as they are. Strings (already expression
    substituted, e.g. ``"1500 > 1000"``) are evaluated as a Python expression
    with no builtins; JavaScript style ``===``, ``&&`` and ``||`` are accepted.
    """
    if condition is None:
        return False
    if isinstance(condition, (bool, Number)):
        return bool(condition)
    if not isinstance(condition, str):
        return bool(condition)

    expression = condition.strip()
    if not expression:
        return False
    if "__" in expression:
        raise ValueError(f"Unsupported condition: {condition}")
    expression = (expression.replace("!==", "!=").replace("===", "==")
                  .replace("&&", " and ").replace("||", " or "))
    return bool(eval(expression, {"__builtins__": {}}, dict(CONDITION_NAMES)))


def if_else_node(value: Any, config: Optional[Dict[str, Any]] = None,
                 context: Optional[NodeContext] = None) -> Dict[str, Any]:
    """Pick the ``true`` or ``false`` branch.

    Uses ``config.condition`` when present, else ``left``/``operator``/``right``,
    else the resolved input itself. Edges whose ``sourceHandle`` is the other
    branch are not followed.
    """
    config = config or {}
    if "condition" in config:
        condition = config["condition"]
        try:
            result = evaluate_condition(condition)
        except Exception as e:
            if context is not None:
                context.error(f"Failed to evaluate condition: {condition} - {e}")
            result = False
    elif "operator" in config:
        op_name = str(config["operator"]).strip()
        compare = COMPARISONS.get(op_name)
        if compare is None:
            raise ValueError(f"Unknown operator '{op_name}'")
        condition = f"{config.get('left')!r} {op_name} {config.get('right')!r}"
        try:
            result = bool(compare(config.get("left"), config.get("right")))
        except TypeError:
            result = bool(compare(_to_number(config.get("left")), _to_number(config.get("right"))))
    else:
        condition = value
        result = evaluate_condition(value)

    if context is not None:
        context.info(f"Condition '{condition}' evaluated to {result}")
    return {"result": result, "branch": "true" if result else "false"}


BUILTIN_NODES = {
    "INPUT": (input_node, "Emits its configured value"),
    "IF_ELSE": (if_else_node, "Routes to the 'true' or 'false' branch"),
    "ADD": (add_node, "Sums its inputs"),
    "SUBTRACT": (subtract_node, "Subtracts the following inputs from the first"),
    "MULTIPLY": (multiply_node, "Multiplies its inputs"),
    "DIVIDE": (divide_node, "Divides the first input by the following ones"),
}


def register_builtin_nodes(registry: NodeHandlerRegistry) -> List[str]:
    """Register every built-in handler, replacing earlier registrations."""
    for node_type, (handler, description) in BUILTIN_NODES.items():
        registry.register_handler(node_type, handler, description=description, replace=True)
    logger.info(f"Registered {len(BUILTIN_NODES)} built-in node types")
    return list(BUILTIN_NODES)
