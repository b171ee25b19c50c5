"""Tests for the built-in node handlers."""

import pytest

from flowengine.nodes.builtin import (
    BUILTIN_NODES,
    add_node,
    divide_node,
    evaluate_condition,
    if_else_node,
    input_node,
    multiply_node,
    operands,
    register_builtin_nodes,
    subtract_node,
)


class TestOperands:
    """Flattening resolved inputs into numbers."""

    def test_mapping_values_in_order(self):
        assert operands({"a": 1, "b": "2.5"}) == [1, 2.5]

    def test_explicit_values_list(self):
        """A ``values`` list inside a mapping wins."""
        assert operands({"values": [3, 4], "label": "x"}) == [3, 4]

    def test_scalar_and_none(self):
        assert operands(5) == [5]
        assert operands(None) == []
        assert operands(True) == [1]

    def test_non_number_rejected(self):
        with pytest.raises(ValueError):
            operands(["abc"])


class TestArithmetic:
    """ADD, SUBTRACT, MULTIPLY and DIVIDE."""

    def test_add(self):
        assert add_node([1, 2, 3]) == 6
        assert add_node({"a": 10, "b": 5}) == 15
        assert add_node(None) == 0

    def test_subtract(self):
        assert subtract_node([10, 3, 2]) == 5
        assert subtract_node([]) == 0

    def test_multiply(self):
        assert multiply_node([2, 3, 4]) == 24
        assert multiply_node([]) == 0

    def test_divide(self):
        assert divide_node([20, 2, 5]) == 2
        assert divide_node(7) == 7

    def test_divide_by_zero_fails(self):
        """Dividing by zero raises, which fails the node."""
        with pytest.raises(ZeroDivisionError):
            divide_node([1, 0])

    def test_input_passthrough(self):
        assert input_node({"x": 1}) == {"x": 1}


class TestConditions:
    """IF_ELSE condition evaluation and branch selection."""

    @pytest.mark.parametrize("condition,expected", [
        (True, True),
        (0, False),
        (None, False),
        ("", False),
        ("1500 > 1000", True),
        ("1 === 1 && 2 !== 3", True),
        ("false || null", False),
        ("'a' in 'abc'", True),
    ])
    def test_evaluate_condition(self, condition, expected):
        assert evaluate_condition(condition) is expected

    def test_dunder_rejected(self):
        with pytest.raises(ValueError):
            evaluate_condition("().__class__")

    def test_condition_branch(self):
        """The result carries the branch discriminator."""
        assert if_else_node(None, config={"condition": "1500 > 1000"}) == {"result": True, "branch": "true"}
        assert if_else_node(None, config={"condition": "5 > 1000"}) == {"result": False, "branch": "false"}

    def test_broken_condition_is_false(self):
        """A condition that cannot be evaluated takes the false branch."""
        assert if_else_node(None, config={"condition": "this is not python"})["branch"] == "false"

    def test_operator_form(self):
        """left/operator/right compares, coercing numeric strings."""
        assert if_else_node(None, config={"left": 5, "operator": ">=", "right": 5})["result"] is True
        assert if_else_node(None, config={"left": "10", "operator": ">", "right": 9})["result"] is True
        assert if_else_node(None, config={"left": "abc", "operator": "contains", "right": "b"})["result"] is True

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            if_else_node(None, config={"left": 1, "operator": "~", "right": 2})

    def test_value_form(self):
        """Without config the resolved input is the condition."""
        assert if_else_node(True)["branch"] == "true"
        assert if_else_node("2 < 1")["branch"] == "false"


class TestRegistration:
    """Registering the built-ins with a registry."""

    def test_register_builtin_nodes(self, temp_db):
        """Every built-in type is registered and re-registration replaces."""
        from flowengine.core.node_registry import NodeHandlerRegistry

        registry = NodeHandlerRegistry()
        registered = register_builtin_nodes(registry)
        assert set(registered) == set(BUILTIN_NODES)
        assert registry.get_handler("ADD") is add_node

        register_builtin_nodes(registry)
        assert set(registry.known_node_types()) >= set(BUILTIN_NODES)
