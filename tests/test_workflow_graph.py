"""Tests for workflow graph validation and queries."""

import pytest

from flowengine.core.exceptions import GraphValidationError
from flowengine.core.workflow_graph import WorkflowGraph
from flowengine.models.core import WorkflowDefinition


def node(node_id, node_type="INPUT", **extra):
    return {"id": node_id, "type": node_type, **extra}


class TestValidation:
    """Structural validation of definitions."""

    def test_valid_chain(self, make_workflow):
        """A simple chain validates without errors or warnings."""
        definition = make_workflow([node("a"), node("b"), node("c")], [("a", "b"), ("b", "c")])
        result = WorkflowGraph.validate(definition)

        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_empty_workflow(self):
        """A workflow without nodes is rejected."""
        result = WorkflowGraph.validate(WorkflowDefinition(name="empty"))

        assert not result.is_valid
        assert result.errors[0].code == "EMPTY_WORKFLOW"

    def test_cycle_detected(self, make_workflow):
        """Cycles are reported with their path."""
        definition = make_workflow(
            [node("a"), node("b"), node("c")],
            [("a", "b"), ("b", "c"), ("c", "a")]
        )
        result = WorkflowGraph.validate(definition)

        assert not result.is_valid
        cycle = [e for e in result.errors if e.code == "CYCLE"]
        assert len(cycle) == 1
        assert "a -> b -> c -> a" in cycle[0].message

    def test_self_loop_is_cycle(self, make_workflow):
        """An edge from a node to itself is a cycle."""
        definition = make_workflow([node("a")], [("a", "a")])
        result = WorkflowGraph.validate(definition)

        assert [e.code for e in result.errors] == ["CYCLE"]

    def test_dangling_edge(self, make_workflow):
        """Edges must reference existing nodes."""
        definition = make_workflow([node("a")], [("a", "ghost")])
        result = WorkflowGraph.validate(definition)

        assert not result.is_valid
        assert result.errors[0].code == "DANGLING_EDGE"
        assert "ghost" in result.errors[0].message

    def test_duplicate_node_id(self, make_workflow):
        """Node ids must be unique."""
        definition = make_workflow([node("a"), node("a")])
        result = WorkflowGraph.validate(definition)

        assert result.errors[0].code == "DUPLICATE_NODE_ID"

    def test_unknown_node_type(self, make_workflow):
        """Node types are checked against the known types when given."""
        definition = make_workflow([node("a", "INPUT"), node("b", "MYSTERY")], [("a", "b")])

        assert WorkflowGraph.validate(definition).is_valid
        result = WorkflowGraph.validate(definition, known_node_types=["INPUT"])
        assert not result.is_valid
        assert result.errors[0].code == "UNKNOWN_NODE_TYPE"
        assert result.errors[0].node_id == "b"

    def test_disconnected_graph_warns(self, make_workflow):
        """Disconnected parts are a warning, not an error."""
        definition = make_workflow([node("a"), node("b")])
        result = WorkflowGraph.validate(definition)

        assert result.is_valid
        assert result.warnings[0].code == "DISCONNECTED_GRAPH"

    def test_duplicate_edge_warns(self, make_workflow):
        """Repeated edges are tolerated with a warning."""
        definition = make_workflow([node("a"), node("b")], [("a", "b"), ("a", "b")])
        result = WorkflowGraph.validate(definition)

        assert result.is_valid
        assert [w.code for w in result.warnings] == ["DUPLICATE_EDGE"]

    def test_build_raises_typed_error(self, make_workflow):
        """build() raises GraphValidationError carrying the first error code."""
        definition = make_workflow([node("a"), node("b")], [("a", "b"), ("b", "a")])

        with pytest.raises(GraphValidationError) as exc_info:
            WorkflowGraph.build(definition, workflow_id="wf-1")

        assert exc_info.value.kind == "CYCLE"
        assert exc_info.value.details["kind"] == "CYCLE"
        assert exc_info.value.details["validation_errors"]


class TestGraphQueries:
    """Adjacency, layering and branch queries on a built graph."""

    @pytest.fixture
    def diamond(self, make_workflow):
        definition = make_workflow(
            [node("start"), node("check", "IF_ELSE"), node("yes"), node("no"), node("join")],
            [
                ("start", "check"),
                ("check", "yes", "true"),
                ("check", "no", "false"),
                ("yes", "join"),
                ("no", "join"),
            ]
        )
        return WorkflowGraph.build(definition)

    def test_layers(self, diamond):
        """Nodes are layered by longest distance from a root."""
        assert diamond.layers == [["start"], ["check"], ["yes", "no"], ["join"]]
        assert diamond.layer_of("join") == 3
        assert diamond.topological_order() == ["start", "check", "yes", "no", "join"]

    def test_roots_and_terminals(self, diamond):
        """Roots have no incoming edges, terminals no outgoing ones."""
        assert diamond.roots() == ["start"]
        assert diamond.terminal_nodes() == ["join"]

    def test_successors_follow_chosen_branch(self, diamond):
        """Only edges matching the chosen handle (or without one) are live."""
        assert [e.target for e in diamond.successors("check", "true")] == ["yes"]
        assert [e.target for e in diamond.successors("check", "false")] == ["no"]
        assert [e.target for e in diamond.successors("check")] == ["yes", "no"]
        assert [e.target for e in diamond.successors("start", "anything")] == ["check"]

    def test_ancestors_and_descendants(self, diamond):
        """Transitive closure in both directions excludes the node itself."""
        assert diamond.descendants("check") == {"yes", "no", "join"}
        assert diamond.ancestors("join") == {"start", "check", "yes", "no"}
        assert diamond.descendants("join") == set()

    def test_exclusive_descendants(self, diamond):
        """A join reachable from the live branch is not exclusive to the dead one."""
        assert diamond.exclusive_descendants("check", "true") == {"no"}
        assert diamond.exclusive_descendants("check", "false") == {"yes"}

    def test_find_node_by_name_or_id(self, make_workflow):
        """Nodes can be referenced by display name or id."""
        definition = make_workflow([node("n1", name="Fetch"), node("n2")], [("n1", "n2")])
        graph = WorkflowGraph.build(definition)

        assert graph.find_node("Fetch") == "n1"
        assert graph.find_node("n2") == "n2"
        assert graph.find_node("missing") is None
        assert graph.node_label("n1") == "Fetch"
        assert graph.node_label("n2") == "n2"
