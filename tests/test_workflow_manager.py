"""Tests for storing and validating workflow definitions."""

import pytest

from flowengine.core.exceptions import GraphValidationError, ResourceNotFoundError
from flowengine.core.workflow_manager import WorkflowManager


@pytest.fixture
def simple_definition(make_workflow):
    return make_workflow(
        [
            {"id": "a", "type": "INPUT", "value": None},
            {"id": "b", "type": "ADD", "retries": 1},
        ],
        [("a", "b")],
        name="adder",
        max_concurrency=3
    )


class TestWorkflowManager:
    """CRUD over saved workflows."""

    def test_create_and_get(self, workflow_manager, simple_definition):
        """A saved definition comes back unchanged."""
        saved = workflow_manager.create_workflow(simple_definition)
        loaded = workflow_manager.get_workflow(saved.id)

        assert loaded.id == saved.id
        assert loaded.definition.name == "adder"
        assert loaded.definition.settings.max_concurrency == 3
        assert [n.id for n in loaded.definition.nodes] == ["a", "b"]
        assert loaded.definition.nodes[1].retries == 1

    def test_explicit_null_value_survives_storage(self, workflow_manager, simple_definition):
        """Whether a node value was given at all is kept through storage."""
        saved = workflow_manager.create_workflow(simple_definition)
        nodes = workflow_manager.get_definition(saved.id).nodes

        assert nodes[0].has_direct_value
        assert not nodes[1].has_direct_value

    def test_invalid_definition_rejected(self, workflow_manager, make_workflow):
        """Invalid definitions are not stored."""
        definition = make_workflow([{"id": "a", "type": "INPUT"}], [("a", "missing")])

        with pytest.raises(GraphValidationError) as exc_info:
            workflow_manager.create_workflow(definition)
        assert exc_info.value.kind == "DANGLING_EDGE"
        assert workflow_manager.list_workflows() == []

    def test_unknown_type_rejected_with_registry(self, workflow_manager, make_workflow):
        definition = make_workflow([{"id": "a", "type": "UNREGISTERED"}])

        result = workflow_manager.validate_workflow(definition)
        assert not result.is_valid
        assert result.errors[0].code == "UNKNOWN_NODE_TYPE"

    def test_without_registry_types_are_not_checked(self, temp_db, make_workflow):
        manager = WorkflowManager()
        definition = make_workflow([{"id": "a", "type": "UNREGISTERED"}])

        assert manager.validate_workflow(definition).is_valid

    def test_update(self, workflow_manager, simple_definition, make_workflow):
        saved = workflow_manager.create_workflow(simple_definition)
        replacement = make_workflow([{"id": "only", "type": "INPUT", "config": {"value": 1}}], name="renamed")

        updated = workflow_manager.update_workflow(saved.id, replacement)

        assert updated.definition.name == "renamed"
        assert updated.updated_at >= saved.updated_at
        assert workflow_manager.get_definition(saved.id).nodes[0].id == "only"

    def test_update_missing(self, workflow_manager, simple_definition):
        with pytest.raises(ResourceNotFoundError):
            workflow_manager.update_workflow("missing", simple_definition)

    def test_list_summaries(self, workflow_manager, simple_definition):
        workflow_manager.create_workflow(simple_definition)

        summaries = workflow_manager.list_workflows()
        assert len(summaries) == 1
        assert summaries[0].name == "adder"
        assert summaries[0].node_count == 2
        assert summaries[0].edge_count == 1

    def test_delete(self, workflow_manager, simple_definition):
        saved = workflow_manager.create_workflow(simple_definition)

        assert workflow_manager.delete_workflow(saved.id) is True
        assert workflow_manager.delete_workflow(saved.id) is False
        with pytest.raises(ResourceNotFoundError):
            workflow_manager.get_workflow(saved.id)
