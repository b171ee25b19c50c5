"""Tests for effective input resolution."""

import logging

import pytest

from flowengine.core.expressions import ExpressionContext
from flowengine.core.input_resolver import UNSET, InputKind, resolve_input, upstream_inputs


CONFORMANCE_TABLE = [
    ({"config": {"value": 10}}, 10),
    ({"inputs": {"myVar": 50}}, 50),
    ({"inputs": {"value": 100, "other": 200}}, 100),
    ({"inputs": {"a": 1, "b": 2}}, {"a": 1, "b": 2}),
    ({"inputs": [{"name": "value", "value": 99}]}, 99),
    ({"inputs": {}}, 0),
]


class TestConformance:
    """The resolution table node authors rely on."""

    @pytest.mark.parametrize("node,expected", CONFORMANCE_TABLE)
    def test_conformance_table(self, node, expected):
        """Each documented case resolves to exactly the documented value."""
        resolved = resolve_input(node.get("config"), node.get("inputs"))
        assert resolved.value == expected


class TestPriority:
    """Ordering between the resolution rules."""

    def test_config_value_wins_over_everything(self):
        """config.value is returned verbatim even when inputs are declared."""
        resolved = resolve_input({"value": None, "other": 1}, {"value": 5}, direct_value=7)
        assert resolved.value is None
        assert resolved.rule == 1

    def test_single_config_key_unwraps(self):
        """A config with one key yields that key's value."""
        resolved = resolve_input({"amount": 3})
        assert resolved.value == 3
        assert resolved.rule == 2

    def test_multi_key_config_is_whole_mapping(self):
        """A config with several keys yields the whole config."""
        resolved = resolve_input({"a": 1, "b": 2})
        assert resolved.value == {"a": 1, "b": 2}
        assert resolved.kind == InputKind.MAPPING

    def test_static_config_masks_declared_inputs(self):
        """Non-empty config is consulted before declared inputs."""
        resolved = resolve_input({"default": 1}, {"value": 2})
        assert resolved.value == 1
        assert resolved.rule == 2

    def test_legacy_list_folds_by_name(self):
        """[{name, value}] entries fold into a mapping when no entry is named value."""
        resolved = resolve_input({}, [{"name": "a", "value": 1}, {"name": "b", "value": 2}])
        assert resolved.value == {"a": 1, "b": 2}
        assert resolved.rule == 3

    def test_legacy_list_single_entry_unwraps(self):
        """A single legacy entry yields its value."""
        resolved = resolve_input({}, [{"name": "Fetch", "value": [1, 2]}])
        assert resolved.value == [1, 2]
        assert resolved.kind == InputKind.COMPOSITE

    def test_direct_value(self):
        """The node-level value is used when config and inputs are empty."""
        resolved = resolve_input({}, None, direct_value="hello")
        assert resolved.value == "hello"
        assert resolved.rule == 5
        assert resolved.kind == InputKind.SCALAR

    def test_explicit_null_direct_value(self):
        """An explicitly supplied null value is not the default."""
        resolved = resolve_input({}, None, direct_value=None)
        assert resolved.value is None
        assert not resolved.is_default

    def test_default_zero_warns(self, caplog):
        """Nothing configured resolves to 0 with a warning."""
        with caplog.at_level(logging.WARNING):
            resolved = resolve_input(None, None, direct_value=UNSET, node_id="lonely")

        assert resolved.value == 0
        assert resolved.is_default
        assert any("lonely" in record.getMessage() for record in caplog.records)


class TestExpressions:
    """Expressions inside config and inputs are substituted first."""

    def test_upstream_outputs_scope(self):
        """Without an explicit scope, upstream outputs are addressable by id."""
        resolved = resolve_input({"value": "{{fetch.output.total}}"}, upstream_outputs={"fetch": {"total": 12}})
        assert resolved.value == 12

    def test_explicit_scope(self):
        """An explicit scope resolves names, trigger data and variables."""
        scope = ExpressionContext(
            node_id="n2",
            node_data={"n1": {"input": None, "output": 4}},
            node_names={"Source": "n1"},
            trigger_data={"factor": 3}
        )
        resolved = resolve_input({}, {"left": "{{Source}}", "right": "{{$trigger.factor}}"}, scope=scope)
        assert resolved.value == {"left": 4, "right": 3}

    def test_upstream_inputs_shape(self):
        """Predecessor outputs become the legacy [{name, value}] sequence."""
        assert upstream_inputs([("a", "A", 1), ("b", "B", {"x": 2})]) == [
            {"name": "A", "value": 1},
            {"name": "B", "value": {"x": 2}},
        ]

    def test_shared_labels_fall_back_to_node_ids(self):
        """Two predecessors named alike keep both outputs when folded."""
        declared = upstream_inputs([("p1", "Price", 10), ("p2", "Price", 20), ("q", "Qty", 3)])

        assert [entry["name"] for entry in declared] == ["p1", "p2", "Qty"]
        assert resolve_input({}, declared).value == {"p1": 10, "p2": 20, "Qty": 3}
