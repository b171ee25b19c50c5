"""Effective input resolution for a node.

The priority order below is relied upon by node authors and must not change:

1. ``config["value"]`` defined: returned verbatim
2. ``config`` non-empty: a single key unwraps, otherwise the whole config
3. declared inputs as ``[{name, value}]``: an entry named ``value`` wins,
   otherwise the entries fold into ``name -> value``
4. declared inputs as a mapping: key ``value`` wins, otherwise a single key
   unwraps, otherwise the whole mapping
5. direct node-level ``value``
6. ``0`` with a warning

Static ``config`` is consulted before declared inputs, so a stale default in
config masks upstream data.
"""

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .expressions import ExpressionContext, evaluate_node_data
from .logging import get_logger

logger = get_logger(__name__)


class _Unset:
    """Marker for a direct value that was never supplied."""

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


class InputKind(str, Enum):
    """Shape of a resolved input."""
    SCALAR = "SCALAR"
    MAPPING = "MAPPING"
    COMPOSITE = "COMPOSITE"


@dataclass(frozen=True)
class ResolvedInput:
    """Tagged result of input resolution.

    ``rule`` is the number of the priority rule that produced the value.
    """
    kind: InputKind
    value: Any
    rule: int

    @classmethod
    def of(cls, value: Any, rule: int) -> "ResolvedInput":
        if isinstance(value, Mapping):
            kind = InputKind.MAPPING
        elif isinstance(value, (list, tuple)):
            kind = InputKind.COMPOSITE
        else:
            kind = InputKind.SCALAR
        return cls(kind=kind, value=value, rule=rule)

    @property
    def is_default(self) -> bool:
        return self.rule == 6


DeclaredInputs = Optional[Union[List[Any], Dict[str, Any]]]


def resolve_input(
    config: Optional[Dict[str, Any]],
    declared_inputs: DeclaredInputs = None,
    upstream_outputs: Optional[Dict[str, Any]] = None,
    direct_value: Any = UNSET,
    scope: Optional[ExpressionContext] = None,
    node_id: Optional[str] = None
) -> ResolvedInput:
    """
    Compute a node's effective input.

    Args:
        config: Static node configuration
        declared_inputs: Legacy ``[{name, value}]`` sequence or a mapping
        upstream_outputs: Outputs of successful predecessors by node id; used
            to build an expression scope when ``scope`` is not given
        direct_value: NodeSpec-level ``value``; ``UNSET`` when absent
        scope: Expression context for ``{{...}}`` references
        node_id: Only used in the diagnostic message

    Returns:
        ResolvedInput: the value and the rule that matched
    """
    if scope is None and upstream_outputs:
        scope = ExpressionContext(
            node_id=node_id,
            node_data={nid: {"output": output} for nid, output in upstream_outputs.items()}
        )

    config = evaluate_node_data(config or {}, scope)
    declared_inputs = evaluate_node_data(declared_inputs, scope)

    if "value" in config:
        return ResolvedInput.of(config["value"], 1)

    if config:
        if len(config) == 1:
            return ResolvedInput.of(next(iter(config.values())), 2)
        return ResolvedInput.of(dict(config), 2)

    if isinstance(declared_inputs, (list, tuple)) and declared_inputs:
        entries = [entry for entry in declared_inputs if isinstance(entry, Mapping)]
        for entry in entries:
            if entry.get("name") == "value" and "value" in entry:
                return ResolvedInput.of(entry["value"], 3)
        folded = {entry["name"]: entry["value"] for entry in entries if entry.get("name") and "value" in entry}
        if len(folded) == 1:
            return ResolvedInput.of(next(iter(folded.values())), 3)
        if folded:
            return ResolvedInput.of(folded, 3)

    if isinstance(declared_inputs, Mapping) and declared_inputs:
        if "value" in declared_inputs:
            return ResolvedInput.of(declared_inputs["value"], 4)
        if len(declared_inputs) == 1:
            return ResolvedInput.of(next(iter(declared_inputs.values())), 4)
        return ResolvedInput.of(dict(declared_inputs), 4)

    if direct_value is not UNSET:
        return ResolvedInput.of(evaluate_node_data(direct_value, scope), 5)

    logger.warning(f"Node {node_id or '<unnamed>'} has no value configured, defaulting to 0")
    return ResolvedInput.of(0, 6)


def upstream_inputs(outputs: List[tuple]) -> List[Dict[str, Any]]:
    """Build the legacy ``[{name, value}]`` sequence from ``(node_id, label, output)`` triples.

    A label shared by several predecessors is replaced by each node id so
    folding the sequence into a mapping keeps every output.
    """
    counts = Counter(label for _, label, _ in outputs)
    return [
        {"name": label if counts[label] == 1 else node_id, "value": output}
        for node_id, label, output in outputs
    ]
