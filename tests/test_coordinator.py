"""Tests for the execution coordinator."""

import threading
import time

import pytest

from flowengine.core.exceptions import ExecutionStateError, GraphValidationError, StorageError
from flowengine.models.core import (
    ErrorCause, ErrorScope, ExecutionStatus, NodeLogLevel, NodeStatus, SkipReason
)


class ConcurrencyProbe:
    """Handler recording how many calls overlap."""

    def __init__(self, duration=0.1):
        self.duration = duration
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, value, context=None):
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.duration)
        finally:
            with self._lock:
                self.in_flight -= 1
        return value


def echo_handler(value):
    return value


def fail_handler(value):
    raise RuntimeError("boom")


def sleep_handler(value, context):
    """Sleep ``value`` seconds unless the run is cancelled first."""
    if context.token.wait(float(value)):
        context.check_cancelled()
    return {"slept": value}


def chatty_handler(value, context):
    context.info("working on it")
    context.warn("almost there")
    return value


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


@pytest.fixture
def probe():
    return ConcurrencyProbe()


@pytest.fixture
def handlers(registry, probe):
    """Register the test node types."""
    registry.register_handler("ECHO", echo_handler)
    registry.register_handler("FAIL", fail_handler)
    registry.register_handler("SLEEP", sleep_handler)
    registry.register_handler("CHATTY", chatty_handler)
    registry.register_handler("PROBE", probe)
    return registry


class TestScheduling:
    """Ordering, concurrency and data flow."""

    def test_linear_data_flow(self, coordinator, handlers, make_workflow):
        """Outputs of predecessors become the input of their successor."""
        definition = make_workflow(
            [
                {"id": "a", "type": "INPUT", "config": {"value": 2}},
                {"id": "b", "type": "INPUT", "config": {"value": 3}},
                {"id": "sum", "type": "ADD"},
            ],
            [("a", "sum"), ("b", "sum")]
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.status == ExecutionStatus.COMPLETED
        assert record.node_record("sum").inputs == {"a": 2, "b": 3}
        assert record.node_record("sum").outputs == 5
        assert record.final_result == 5
        assert record.primary_error is None
        assert record.metrics.total_nodes == 3
        assert record.metrics.completed == 3

    def test_successor_starts_after_predecessors_finish(self, coordinator, handlers, make_workflow):
        """A node is never dispatched before its live predecessors are terminal."""
        definition = make_workflow(
            [
                {"id": "slow", "type": "PROBE", "value": 1},
                {"id": "fast", "type": "ECHO", "value": 2},
                {"id": "after", "type": "ECHO"},
            ],
            [("slow", "after"), ("fast", "after")]
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        after = record.node_record("after")
        for upstream in ("slow", "fast"):
            assert after.start_time >= record.node_record(upstream).end_time

    def test_predecessors_sharing_a_name(self, coordinator, handlers, make_workflow):
        """Predecessors with the same display name are keyed by node id instead."""
        definition = make_workflow(
            [
                {"id": "p1", "name": "Price", "type": "ECHO", "value": 10},
                {"id": "p2", "name": "Price", "type": "ECHO", "value": 20},
                {"id": "q", "name": "Qty", "type": "ECHO", "value": 3},
                {"id": "collect", "type": "ECHO"},
            ],
            [("p1", "collect"), ("p2", "collect"), ("q", "collect")]
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.node_record("collect").outputs == {"p1": 10, "p2": 20, "Qty": 3}

    def test_concurrency_bound(self, coordinator, handlers, probe, make_workflow):
        """No more than max_concurrency nodes run at once."""
        definition = make_workflow(
            [{"id": f"p{i}", "type": "PROBE", "value": i} for i in range(6)],
            max_concurrency=2
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.status == ExecutionStatus.COMPLETED
        assert probe.calls == 6
        assert probe.max_in_flight <= 2
        assert len(record.final_result) == 6

    def test_default_input_warns(self, coordinator, tracker, handlers, make_workflow):
        """A node with nothing configured receives 0 and logs a warning."""
        definition = make_workflow([{"id": "empty", "type": "INPUT"}])
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.node_record("empty").outputs == 0
        warnings = [line for line in tracker.get_logs(record.id, node_id="empty").items
                    if line.level == NodeLogLevel.WARN]
        assert any("has no value configured, using 0" in line.message for line in warnings)

    def test_handler_logs_are_captured(self, coordinator, tracker, handlers, make_workflow):
        """Lines logged through the node context land in the execution log."""
        definition = make_workflow([{"id": "talk", "type": "CHATTY", "value": 1}])
        record = coordinator.execute("wf-1", definition, timeout=10)

        messages = [line.message for line in tracker.get_logs(record.id, node_id="talk").items]
        assert "working on it" in messages
        assert "almost there" in messages

    def test_retries(self, coordinator, handlers, make_workflow):
        """A failing handler is retried up to the node's retry count."""
        attempts = {"count": 0}

        def flaky(value):
            attempts["count"] += 1
            if attempts["count"] < 3:
                raise ConnectionError("flaky")
            return "ok"

        handlers.register_handler("FLAKY", flaky)
        definition = make_workflow([{"id": "f", "type": "FLAKY", "value": 1, "retries": 2}])
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.status == ExecutionStatus.COMPLETED
        assert record.node_record("f").attempts == 3
        assert record.node_record("f").outputs == "ok"


class TestBranching:
    """Conditional routing and skip propagation."""

    def test_untaken_branch_is_skipped(self, coordinator, handlers, make_workflow):
        """Nodes only reachable through the untaken branch are skipped."""
        definition = make_workflow(
            [
                {"id": "amount", "type": "INPUT", "config": {"value": 1500}},
                {"id": "check", "type": "IF_ELSE", "config": {"condition": "{{amount}} > 1000"}},
                {"id": "big", "type": "ECHO", "config": {"value": "big"}},
                {"id": "small", "type": "ECHO", "config": {"value": "small"}},
                {"id": "small_followup", "type": "ECHO"},
            ],
            [
                ("amount", "check"),
                ("check", "big", "true"),
                ("check", "small", "false"),
                ("small", "small_followup"),
            ]
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.status == ExecutionStatus.COMPLETED
        assert record.node_record("check").outputs["branch"] == "true"
        assert record.node_record("big").status == NodeStatus.SUCCESS
        for skipped in ("small", "small_followup"):
            assert record.node_record(skipped).status == NodeStatus.SKIPPED
            assert record.node_record(skipped).skip_reason == SkipReason.BRANCH_NOT_TAKEN
        assert record.final_result == "big"

    def test_join_after_branch_runs(self, coordinator, handlers, make_workflow):
        """A join with one live predecessor still runs."""
        definition = make_workflow(
            [
                {"id": "check", "type": "IF_ELSE", "config": {"condition": "false"}},
                {"id": "yes", "type": "ECHO", "config": {"value": 1}},
                {"id": "no", "type": "ECHO", "config": {"value": 2}},
                {"id": "join", "type": "ECHO"},
            ],
            [("check", "yes", "true"), ("check", "no", "false"), ("yes", "join"), ("no", "join")]
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.node_record("yes").status == NodeStatus.SKIPPED
        assert record.node_record("join").status == NodeStatus.SUCCESS
        assert record.node_record("join").inputs == 2


class TestFailures:
    """Fail-fast, continue_on_fail and timeouts."""

    def test_fail_fast(self, coordinator, handlers, make_workflow):
        """A failure stops dispatching; descendants and unrelated nodes are skipped."""
        definition = make_workflow(
            [
                {"id": "bad", "type": "FAIL", "value": 1},
                {"id": "other", "type": "ECHO", "value": 1},
                {"id": "child", "type": "ECHO"},
            ],
            [("bad", "child")],
            max_concurrency=1
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.status == ExecutionStatus.FAILED
        bad = record.node_record("bad")
        assert bad.status == NodeStatus.FAILED
        assert bad.error.message == "boom"
        assert bad.error.cause == ErrorCause.NODE_EXCEPTION
        assert record.node_record("child").skip_reason == SkipReason.UPSTREAM_FAILED
        assert record.node_record("other").skip_reason == SkipReason.RUN_ABORTED
        assert record.primary_error.code == "NODE_EXECUTION_FAILED"
        assert record.primary_error.node_id == "bad"
        assert record.primary_error.scope == ErrorScope.NODE

    def test_continue_on_fail(self, coordinator, handlers, make_workflow):
        """A tolerated failure stays FAILED while its successors and the rest of the run proceed."""
        definition = make_workflow(
            [
                {"id": "bad", "type": "FAIL", "value": 1, "continue_on_fail": True},
                {"id": "other", "type": "ECHO", "value": 7},
                {"id": "child", "type": "ECHO"},
                {"id": "grandchild", "type": "ECHO"},
            ],
            [("bad", "child"), ("other", "child"), ("child", "grandchild")],
            max_concurrency=1
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.status == ExecutionStatus.COMPLETED
        assert record.node_record("bad").status == NodeStatus.FAILED
        assert record.node_record("other").status == NodeStatus.SUCCESS
        # The failed upstream contributes nothing to the child's input
        assert record.node_record("child").status == NodeStatus.SUCCESS
        assert record.node_record("child").outputs == 7
        assert record.node_record("grandchild").outputs == 7
        assert [e.code for e in record.errors] == ["NODE_EXECUTION_FAILED"]
        assert record.primary_error is None

    def test_system_error_on_status_commit(self, coordinator, tracker, handlers, make_workflow, monkeypatch):
        """A persistence failure while committing RUNNING fails the run at SYSTEM scope."""
        persist = tracker._persist_record
        failed_once = []

        def flaky_persist(record, previous):
            if record.status == ExecutionStatus.RUNNING and not failed_once:
                failed_once.append(record.id)
                raise StorageError("database is locked", operation="commit")
            return persist(record, previous)

        monkeypatch.setattr(tracker, "_persist_record", flaky_persist)
        definition = make_workflow(
            [{"id": "a", "type": "ECHO", "value": 1}, {"id": "b", "type": "ECHO"}],
            [("a", "b")]
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert failed_once
        assert record.status == ExecutionStatus.FAILED
        assert record.primary_error.code == "SYSTEM_ERROR"
        assert record.primary_error.scope == ErrorScope.SYSTEM
        assert not [e for e in record.errors if e.scope == ErrorScope.NODE]
        assert all(n.status == NodeStatus.SKIPPED for n in record.node_executions)

    def test_unknown_handler_fails_node(self, coordinator, handlers, make_workflow):
        """A type known at validation but without a loadable handler fails its node."""
        handlers.register_handler("GONE", echo_handler)
        definition = make_workflow([{"id": "g", "type": "GONE", "value": 1}])
        record = coordinator.initiate("wf-1", definition)
        handlers.unregister_handler("GONE")

        coordinator.start(record.id)
        record = coordinator.tracker.wait_for_terminal(record.id, timeout=10)

        assert record.node_record("g").error.cause == ErrorCause.UNKNOWN_NODE_TYPE
        assert record.primary_error.code == "UNKNOWN_NODE_TYPE"

    def test_node_timeout(self, coordinator, handlers, make_workflow):
        """A node exceeding its timeout fails with cause TIMEOUT."""
        definition = make_workflow([{"id": "slow", "type": "SLEEP", "value": 1, "timeout": 0.1}])
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.status == ExecutionStatus.FAILED
        assert record.node_record("slow").error.cause == ErrorCause.TIMEOUT
        assert record.primary_error.code == "NODE_TIMEOUT"

    def test_execution_timeout(self, coordinator, handlers, make_workflow):
        """The run deadline stops in-flight nodes and fails the run."""
        definition = make_workflow(
            [{"id": "slow", "type": "SLEEP", "value": 5}, {"id": "next", "type": "ECHO"}],
            [("slow", "next")],
            execution_timeout=0.3
        )
        record = coordinator.execute("wf-1", definition, timeout=10)

        assert record.status == ExecutionStatus.FAILED
        assert record.node_record("slow").status == NodeStatus.FAILED
        assert record.node_record("slow").error.cause == ErrorCause.TIMEOUT
        assert record.node_record("next").status == NodeStatus.SKIPPED
        assert record.primary_error.code == "EXECUTION_TIMEOUT"
        assert record.primary_error.scope == ErrorScope.EXECUTION


class TestLifecycle:
    """Initiate, start and cancel."""

    def test_initiate_creates_pending_record(self, coordinator, tracker, handlers, make_workflow):
        """initiate persists a PENDING record with one PENDING entry per node."""
        definition = make_workflow([{"id": "a", "type": "ECHO", "value": 1}])
        record = coordinator.initiate("wf-1", definition, {"source": "test"})

        assert record.status == ExecutionStatus.PENDING
        assert [n.status for n in record.node_executions] == [NodeStatus.PENDING]
        assert tracker.fingerprint(record.id).status == ExecutionStatus.PENDING
        assert tracker.get(record.id).trigger_data == {"source": "test"}

    def test_cycle_rejected_without_record(self, coordinator, tracker, handlers, make_workflow):
        """An invalid definition never creates an execution."""
        definition = make_workflow(
            [{"id": "a", "type": "ECHO"}, {"id": "b", "type": "ECHO"}],
            [("a", "b"), ("b", "a")]
        )
        with pytest.raises(GraphValidationError) as exc_info:
            coordinator.initiate("wf-1", definition)

        assert exc_info.value.kind == "CYCLE"
        assert tracker.list_executions().total == 0

    def test_unknown_type_rejected(self, coordinator, handlers, make_workflow):
        definition = make_workflow([{"id": "a", "type": "NOPE"}])
        with pytest.raises(GraphValidationError) as exc_info:
            coordinator.initiate("wf-1", definition)
        assert exc_info.value.kind == "UNKNOWN_NODE_TYPE"

    def test_start_twice_rejected(self, coordinator, handlers, make_workflow):
        """Only a PENDING execution can be started."""
        definition = make_workflow([{"id": "a", "type": "ECHO", "value": 1}])
        record = coordinator.initiate("wf-1", definition)
        coordinator.start(record.id)
        coordinator.tracker.wait_for_terminal(record.id, timeout=10)

        with pytest.raises(ExecutionStateError):
            coordinator.start(record.id)

    def test_cancel_running(self, coordinator, tracker, handlers, make_workflow):
        """Cancelling stops the in-flight node and skips pending ones."""
        definition = make_workflow(
            [{"id": "slow", "type": "SLEEP", "value": 5}, {"id": "next", "type": "ECHO"}],
            [("slow", "next")]
        )
        record = coordinator.initiate("wf-1", definition)
        coordinator.start(record.id)
        assert wait_until(lambda: tracker.get(record.id).node_record("slow").status == NodeStatus.RUNNING)

        assert coordinator.cancel(record.id, "user request") is True
        record = tracker.wait_for_terminal(record.id, timeout=10)

        assert record.status == ExecutionStatus.CANCELLED
        assert record.cancel_reason == "user request"
        assert record.node_record("slow").status == NodeStatus.FAILED
        assert record.node_record("slow").error.cause == ErrorCause.CANCELLED
        assert record.node_record("next").skip_reason == SkipReason.CANCELLED
        assert record.primary_error.code == "EXECUTION_CANCELLED"
        assert coordinator.cancel(record.id) is False
        assert not coordinator.is_active(record.id)

    def test_cancel_pending(self, coordinator, tracker, handlers, make_workflow):
        """A PENDING execution is cancelled directly and cannot be started."""
        definition = make_workflow([{"id": "a", "type": "ECHO", "value": 1}])
        record = coordinator.initiate("wf-1", definition)

        assert coordinator.cancel(record.id) is True
        record = tracker.get(record.id)
        assert record.status == ExecutionStatus.CANCELLED
        assert record.node_record("a").skip_reason == SkipReason.CANCELLED
        with pytest.raises(ExecutionStateError):
            coordinator.start(record.id)


class TestSingleNode:
    """Running one handler outside a workflow."""

    def test_test_node_success(self, coordinator, handlers):
        result = coordinator.test_node("ADD", inputs={"a": 1, "b": 2})

        assert result.success
        assert result.status == NodeStatus.SUCCESS
        assert result.output == 3
        assert any("Addition result" in line.message for line in result.logs)

    def test_test_node_failure(self, coordinator, handlers):
        result = coordinator.test_node("FAIL", config={"value": 1})

        assert not result.success
        assert result.error.message == "boom"

    def test_test_node_unknown_type(self, coordinator, handlers):
        result = coordinator.test_node("DOES_NOT_EXIST")

        assert not result.success
        assert result.error.cause == ErrorCause.UNKNOWN_NODE_TYPE
