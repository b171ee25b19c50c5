"""Pytest configuration and fixtures."""

import os
import tempfile

import pytest

from flowengine.core.coordinator import ExecutionCoordinator
from flowengine.core.node_registry import NodeHandlerRegistry
from flowengine.core.replay_manager import ReplayManager
from flowengine.core.status_tracker import StatusTracker
from flowengine.core.workflow_manager import WorkflowManager
from flowengine.models.core import Edge, NodeSpec, WorkflowDefinition, WorkflowSettings
from flowengine.nodes.builtin import register_builtin_nodes
from flowengine.storage.database import configure_database, create_tables, reset_database_engine


@pytest.fixture
def temp_db():
    """Create a temporary file database and bind the session factory to it."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    configure_database(f"sqlite:///{db_path}")
    create_tables()

    yield db_path

    reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def registry(temp_db):
    """Node handler registry with the built-in node types."""
    registry = NodeHandlerRegistry()
    register_builtin_nodes(registry)
    return registry


@pytest.fixture
def tracker(temp_db):
    """StatusTracker with small log pages."""
    return StatusTracker(logs_default_page_size=50, logs_max_page_size=100)


@pytest.fixture
def coordinator(tracker, registry):
    """ExecutionCoordinator tuned for fast tests."""
    coordinator = ExecutionCoordinator(
        tracker,
        registry,
        max_concurrent_executions=4,
        default_max_concurrency=2,
        node_timeout=5.0,
        execution_timeout=20.0,
        node_retry_delay=0.01,
        poll_interval=0.01
    )
    yield coordinator
    coordinator.shutdown(timeout=2.0)


@pytest.fixture
def replay_manager(coordinator, tracker):
    return ReplayManager(coordinator, tracker)


@pytest.fixture
def workflow_manager(registry):
    return WorkflowManager(registry)


@pytest.fixture
def make_workflow():
    """Build a WorkflowDefinition from compact node and edge tuples.

    Nodes are ``NodeSpec`` keyword dicts; edges are ``(source, target)`` or
    ``(source, target, source_handle)``.
    """

    def build(nodes, edges=(), name="test-workflow", **settings):
        return WorkflowDefinition(
            name=name,
            nodes=[NodeSpec(**node) for node in nodes],
            edges=[
                Edge(id=f"e{index}", source=edge[0], target=edge[1],
                     source_handle=edge[2] if len(edge) > 2 else None)
                for index, edge in enumerate(edges)
            ],
            settings=WorkflowSettings(**settings)
        )

    return build
