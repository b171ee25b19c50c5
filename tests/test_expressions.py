"""Tests for {{...}} expression substitution."""

import pytest

from flowengine.core.expressions import (
    ExpressionContext,
    ExpressionEvaluator,
    evaluate_node_data,
    get_nested_value,
    parse_path,
)


@pytest.fixture
def evaluator():
    return ExpressionEvaluator()


@pytest.fixture
def context():
    return ExpressionContext(
        execution_id="exec-1",
        workflow_id="wf-1",
        node_id="n3",
        node_name="Notify",
        node_data={
            "n1": {"input": {"url": "http://invoices"}, "output": {"items": [{"id": 7}, {"id": 8}]}},
            "n2": {"input": None, "output": {"total_amount": 1500, "vendor": "ACME"}},
            "n3": {"input": 42, "output": None},
        },
        node_names={"Fetch": "n1", "Extract": "n2", "Notify": "n3"},
        trigger_data={"user": {"email": "ops@example.com"}},
        variables={"threshold": 1000}
    )


class TestPathHelpers:
    """Path parsing and nested lookups."""

    def test_parse_path(self):
        """Dots and brackets both split the path."""
        assert parse_path("Fetch.output.items[0].id") == ["Fetch", "output", "items", "0", "id"]
        assert parse_path("a['b'].c") == ["a", "b", "c"]
        assert parse_path("") == []

    def test_get_nested_value(self):
        """Missing keys and out of range indexes give None."""
        data = {"items": [{"id": 1}]}
        assert get_nested_value(data, ["items", "0", "id"]) == 1
        assert get_nested_value(data, ["items", "5"]) is None
        assert get_nested_value(data, ["nope", "deeper"]) is None
        assert get_nested_value(3, ["x"]) is None


class TestEvaluation:
    """Node references and built-in variables."""

    def test_full_expression_keeps_type(self, evaluator, context):
        """A string that is one expression evaluates to the raw value."""
        assert evaluator.evaluate("{{Extract.output.total_amount}}", context) == 1500
        assert evaluator.evaluate("{{Fetch.output.items}}", context) == [{"id": 7}, {"id": 8}]

    def test_embedded_expression_is_stringified(self, evaluator, context):
        """Embedded expressions become text; mappings become JSON."""
        assert evaluator.evaluate("{{Extract.total_amount}} > 1000", context) == "1500 > 1000"
        assert evaluator.evaluate("total={{Extract.output.total_amount}}", context) == "total=1500"
        assert evaluator.evaluate("v: {{Fetch.output.items[0]}}", context) == 'v: {"id": 7}'
        assert evaluator.evaluate("x{{Missing.output}}y", context) == "xy"

    def test_node_reference_by_name_or_id(self, evaluator, context):
        """Nodes can be addressed by display name or by id."""
        assert evaluator.evaluate("{{n2.output.vendor}}", context) == "ACME"
        assert evaluator.evaluate("{{Extract.output.vendor}}", context) == "ACME"
        assert evaluator.evaluate("{{Extract}}", context) == {"total_amount": 1500, "vendor": "ACME"}

    def test_node_input_reference(self, evaluator, context):
        """``.input`` reaches the resolved input of a node."""
        assert evaluator.evaluate("{{Fetch.input.url}}", context) == "http://invoices"

    def test_unknown_reference_is_none(self, evaluator, context):
        """Unknown nodes and paths resolve to None."""
        assert evaluator.evaluate("{{Nobody.output}}", context) is None
        assert evaluator.evaluate("{{Extract.output.missing.deep}}", context) is None
        assert evaluator.evaluate("{{Extract.missing}}", context) is None

    def test_output_shorthand(self, evaluator, context):
        """A path not starting with input or output reads the node's output."""
        assert evaluator.evaluate("{{Extract.vendor}}", context) == "ACME"
        assert evaluator.evaluate("{{Fetch.items[1].id}}", context) == 8

    def test_builtins(self, evaluator, context):
        """Run context variables are available with a ``$`` prefix."""
        assert evaluator.evaluate("{{$executionId}}", context) == "exec-1"
        assert evaluator.evaluate("{{$workflowId}}", context) == "wf-1"
        assert evaluator.evaluate("{{$nodeId}}", context) == "n3"
        assert evaluator.evaluate("{{$nodeName}}", context) == "Notify"
        assert evaluator.evaluate("{{$input}}", context) == 42
        assert evaluator.evaluate("{{$trigger.user.email}}", context) == "ops@example.com"
        assert evaluator.evaluate("{{$vars.threshold}}", context) == 1000
        assert isinstance(evaluator.evaluate("{{$timestamp}}", context), int)
        assert isinstance(evaluator.evaluate("{{$now}}", context), str)

    def test_json_builtin_keys_by_label(self, evaluator, context):
        """``$json`` exposes every available output keyed by node name."""
        assert evaluator.evaluate("{{$json.Extract.vendor}}", context) == "ACME"
        assert "Notify" not in evaluator.evaluate("{{$json}}", context)

    def test_nested_structures(self, evaluator, context):
        """Lists and mappings are evaluated recursively without mutation."""
        value = {"to": "{{$trigger.user.email}}", "lines": ["{{Extract.output.vendor}}", 5]}
        result = evaluator.evaluate(value, context)

        assert result == {"to": "ops@example.com", "lines": ["ACME", 5]}
        assert value["to"] == "{{$trigger.user.email}}"

    def test_extract_node_references(self, evaluator):
        """Only node references are collected, not built-ins."""
        refs = evaluator.extract_node_references({"a": "{{Fetch.output}} {{$now}}", "b": ["{{n2.x}}"]})
        assert refs == {"Fetch", "n2"}

    def test_evaluate_node_data_passthrough(self, context):
        """Values without expressions are returned untouched."""
        value = {"plain": [1, 2]}
        assert evaluate_node_data(value, context) is value
        assert evaluate_node_data("{{$nodeId}}", None) == "{{$nodeId}}"
