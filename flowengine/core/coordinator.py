"""Execution Coordinator: schedules the nodes of one execution on a bounded pool."""

import threading
import time
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Set, Union

from ..models.core import (
    ErrorCause, ErrorScope, ExecutionErrorEntry, ExecutionFingerprint, ExecutionMetrics,
    ExecutionMode, ExecutionRecord, ExecutionStatus, NodeError, NodeExecutionRecord,
    NodeLogLevel, NodeSpec, NodeStatus, NodeTestResult, SkipReason, WorkflowDefinition, utcnow
)
from .exceptions import EngineSystemError, ExecutionStateError, WorkflowEngineError
from .expressions import ExpressionContext, evaluate_node_data
from .input_resolver import UNSET, resolve_input, upstream_inputs
from .logging import clear_logging_context, get_logger, set_logging_context
from .node_registry import NodeHandlerRegistry
from .node_runner import CancellationToken, NodeContext, NodeRunner
from .status_tracker import ExecutionWriter, StatusTracker
from .workflow_graph import WorkflowGraph

logger = get_logger(__name__)

NODE_ERROR_CODES = {
    ErrorCause.NODE_EXCEPTION: "NODE_EXECUTION_FAILED",
    ErrorCause.TIMEOUT: "NODE_TIMEOUT",
    ErrorCause.CANCELLED: "NODE_CANCELLED",
    ErrorCause.UNKNOWN_NODE_TYPE: "UNKNOWN_NODE_TYPE",
}

SCOPE_PRIORITY = {
    ErrorScope.SYSTEM: 0,
    ErrorScope.EXECUTION: 1,
    ErrorScope.WORKFLOW: 2,
    ErrorScope.NODE: 3,
}


def branch_of(outputs: Any) -> Optional[str]:
    """Branch discriminator of a node output: the ``branch`` key of a mapping."""
    if not isinstance(outputs, dict) or outputs.get("branch") is None:
        return None
    branch = outputs["branch"]
    if isinstance(branch, bool):
        return "true" if branch else "false"
    return str(branch)


def primary_error_of(errors: List[ExecutionErrorEntry]) -> Optional[ExecutionErrorEntry]:
    """First error of the highest scope."""
    if not errors:
        return None
    return min(errors, key=lambda entry: SCOPE_PRIORITY[entry.scope])


class _ActiveRun:
    def __init__(self, writer: ExecutionWriter, token: CancellationToken):
        self.writer = writer
        self.token = token
        self.future: Optional[Future] = None


class _Schedule:
    """Mutable scheduling state of one run, owned by its loop thread."""

    def __init__(self, graph: WorkflowGraph, record: ExecutionRecord):
        self.graph = graph
        self.status: Dict[str, NodeStatus] = {r.node_id: r.status for r in record.node_executions}
        self.edge_live: Dict[int, Optional[bool]] = {id(e): None for e in graph.edges}
        self.pending: Dict[str, int] = {nid: len(graph.incoming(nid)) for nid in graph.node_ids}
        self.ready: deque = deque()
        self.failed: Set[str] = set()
        self.tainted: Set[str] = set()
        self.hard_failure = False
        self.updates: Dict[str, NodeExecutionRecord] = {}
        self.forced: Set[str] = set()
        if record.mode == ExecutionMode.REPLAY and record.from_node_id:
            self.forced.add(record.from_node_id)


class ExecutionCoordinator:
    """Runs executions: one scheduling loop per run, node work on a per-run pool.

    Node failures are captured in their NodeExecutionRecord and never raised;
    only validation errors (from ``initiate``) and system errors propagate.
    """

    def __init__(
        self,
        tracker: StatusTracker,
        registry: NodeHandlerRegistry,
        runner: Optional[NodeRunner] = None,
        max_concurrent_executions: int = 10,
        default_max_concurrency: int = 2,
        node_timeout: Optional[float] = 60.0,
        execution_timeout: Optional[float] = 300.0,
        node_max_retries: int = 0,
        node_retry_delay: float = 0.5,
        poll_interval: float = 0.05
    ):
        self.tracker = tracker
        self.registry = registry
        self.runner = runner or NodeRunner(default_timeout=node_timeout, poll_interval=poll_interval)
        self.default_max_concurrency = default_max_concurrency
        self.node_timeout = node_timeout
        self.execution_timeout = execution_timeout
        self.node_max_retries = node_max_retries
        self.node_retry_delay = node_retry_delay
        self.poll_interval = poll_interval
        self._loops = ThreadPoolExecutor(max_workers=max_concurrent_executions, thread_name_prefix="execution-loop")
        self._active: Dict[str, _ActiveRun] = {}
        self._lock = threading.RLock()
        logger.info(f"ExecutionCoordinator initialized with max_concurrent_executions={max_concurrent_executions}")

    @classmethod
    def from_config(cls, config, tracker: StatusTracker, registry: NodeHandlerRegistry) -> "ExecutionCoordinator":
        runner = NodeRunner(
            default_timeout=config.node_timeout,
            poll_interval=config.scheduler_poll_interval
        )
        return cls(
            tracker,
            registry,
            runner=runner,
            max_concurrent_executions=config.max_concurrent_executions,
            default_max_concurrency=config.default_max_concurrency,
            node_timeout=config.node_timeout,
            execution_timeout=config.execution_timeout,
            node_max_retries=config.node_max_retries,
            node_retry_delay=config.node_retry_delay,
            poll_interval=config.scheduler_poll_interval
        )

    # Lifecycle

    def initiate(
        self,
        workflow_id: str,
        definition: WorkflowDefinition,
        trigger_data: Optional[Dict[str, Any]] = None,
        mode: ExecutionMode = ExecutionMode.RUN,
        parent_execution_id: Optional[str] = None,
        from_node_id: Optional[str] = None,
        scope: Optional[List[str]] = None,
        seeded: Optional[Dict[str, NodeExecutionRecord]] = None
    ) -> ExecutionRecord:
        """
        Validate the definition and persist a PENDING execution record.

        Args:
            workflow_id: Workflow the run belongs to
            definition: Snapshot of the definition to run
            trigger_data: Data exposed to expressions as ``$trigger``
            mode, parent_execution_id, from_node_id, scope, seeded: set by replays

        Returns:
            ExecutionRecord: the new record

        Raises:
            GraphValidationError: If the definition is invalid; no record is created
            EngineSystemError: If the record cannot be persisted
        """
        graph = WorkflowGraph.build(definition, self.registry.known_node_types(), workflow_id=workflow_id)
        seeded = seeded or {}
        record = ExecutionRecord(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            status=ExecutionStatus.PENDING,
            mode=mode,
            parent_execution_id=parent_execution_id,
            from_node_id=from_node_id,
            scope=scope,
            definition=definition,
            trigger_data=trigger_data or {},
            node_executions=[
                seeded.get(node.id) or NodeExecutionRecord(node_id=node.id, node_type=node.type)
                for node in graph.nodes
            ]
        )
        record = self.tracker.create(record)
        self.tracker.append_log(record.id, NodeLogLevel.INFO,
                                f"Execution created for workflow {workflow_id} ({mode.value})")
        return record

    def start(self, execution_id: str) -> ExecutionFingerprint:
        """
        Queue a PENDING execution on the scheduling pool.

        Raises:
            ExecutionStateError: If the run is not PENDING or already claimed
            ResourceNotFoundError: If the execution does not exist
            EngineSystemError: If the QUEUED transition cannot be persisted
        """
        writer = self.tracker.open_writer(execution_id)
        try:
            record = writer.record
            if record.status != ExecutionStatus.PENDING:
                raise ExecutionStateError(
                    f"Execution {execution_id} is {record.status.value}; only PENDING executions can be started",
                    execution_id=execution_id, current_status=record.status.value
                )
            graph = WorkflowGraph.build(record.definition, workflow_id=record.workflow_id)
            active = _ActiveRun(writer, CancellationToken())
            with self._lock:
                self._active[execution_id] = active
            writer.set_status(ExecutionStatus.QUEUED)
            writer.append_log(NodeLogLevel.INFO, "Execution queued")
            active.future = self._loops.submit(self._run_loop, graph, active)
        except Exception:
            with self._lock:
                self._active.pop(execution_id, None)
            writer.close()
            raise
        logger.info(f"Queued execution {execution_id}")
        return self.tracker.fingerprint(execution_id)

    def execute(self, workflow_id: str, definition: WorkflowDefinition,
                trigger_data: Optional[Dict[str, Any]] = None,
                timeout: Optional[float] = None) -> ExecutionRecord:
        """Initiate, start and wait for a run; returns the terminal record."""
        record = self.initiate(workflow_id, definition, trigger_data)
        self.start(record.id)
        return self.tracker.wait_for_terminal(record.id, timeout)

    def cancel(self, execution_id: str, reason: Optional[str] = None) -> bool:
        """
        Request cancellation. Returns False when the run is already terminal.

        A running execution stops at its next scheduling step; a PENDING one
        is cancelled directly.
        """
        with self._lock:
            active = self._active.get(execution_id)
        if active is not None:
            accepted = active.token.cancel(ErrorCause.CANCELLED, reason)
            if accepted:
                logger.info(f"Cancellation requested for execution {execution_id}")
            return accepted

        try:
            writer = self.tracker.open_writer(execution_id)
        except ExecutionStateError:
            return False
        try:
            record = writer.record
            if record.status != ExecutionStatus.PENDING:
                return False
            now = utcnow()
            nodes = [
                node.model_copy(update={"status": NodeStatus.SKIPPED, "skip_reason": SkipReason.CANCELLED,
                                        "end_time": now})
                for node in record.node_executions if not node.status.is_terminal
            ]
            entry = ExecutionErrorEntry(code="EXECUTION_CANCELLED", message=reason or "Execution cancelled",
                                        scope=ErrorScope.EXECUTION)
            writer.set_nodes(
                nodes,
                status=ExecutionStatus.CANCELLED,
                end_time=now,
                cancel_reason=reason,
                errors=list(record.errors) + [entry],
                primary_error=entry
            )
            writer.append_log(NodeLogLevel.WARN, f"Execution cancelled before start: {reason or 'no reason given'}")
            return True
        finally:
            writer.close()

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active

    def active_executions(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def shutdown(self, timeout: float = 10.0):
        """Cancel every active run and stop the pools."""
        with self._lock:
            active = list(self._active.values())
        for run in active:
            run.token.cancel(ErrorCause.CANCELLED, "Engine shutting down")
        deadline = time.monotonic() + timeout
        for run in active:
            if run.future is not None:
                wait([run.future], timeout=max(0.0, deadline - time.monotonic()))
        self._loops.shutdown(wait=False, cancel_futures=True)
        self.runner.shutdown()
        logger.info("ExecutionCoordinator shutdown completed")

    # Single node

    def test_node(self, node_type: str, config: Optional[Dict[str, Any]] = None,
                  inputs: Optional[Union[List[Any], Dict[str, Any]]] = None,
                  credentials: Optional[Dict[str, str]] = None) -> NodeTestResult:
        """Run one handler in isolation with the same input resolution as a run."""
        node = NodeSpec(id="test-node", type=node_type, config=config or {}, inputs=inputs,
                        credentials=credentials or {})
        resolved = resolve_input(node.config, node.inputs, node_id=node.id)
        ctx = NodeContext(
            node,
            token=CancellationToken(),
            timeout=self.node_timeout,
            retries=0,
            retry_delay=self.node_retry_delay
        )
        return self.runner.test_node(ctx, self.registry.find_handler(node_type), resolved)

    # Scheduling loop

    def _run_loop(self, graph: WorkflowGraph, active: _ActiveRun):
        writer = active.writer
        execution_id = writer.execution_id
        set_logging_context(execution_id=execution_id, workflow_id=writer.record.workflow_id)
        try:
            self._schedule(graph, writer, active.token)
        except EngineSystemError as e:
            logger.error(f"System error in execution {execution_id}: {e.message}")
            active.token.cancel(ErrorCause.CANCELLED, "System error")
            self._fail_system(writer, e)
        except Exception as e:
            logger.error(f"Unexpected error in execution {execution_id}: {str(e)}", exc_info=True)
            active.token.cancel(ErrorCause.CANCELLED, "System error")
            self._fail_system(writer, EngineSystemError(f"Unexpected engine error: {str(e)}",
                                                        execution_id=execution_id, operation="schedule"))
        finally:
            writer.close()
            with self._lock:
                self._active.pop(execution_id, None)
            clear_logging_context()

    def _schedule(self, graph: WorkflowGraph, writer: ExecutionWriter, token: CancellationToken):
        record = writer.record
        settings = record.definition.settings
        max_concurrency = settings.max_concurrency or self.default_max_concurrency
        execution_timeout = settings.execution_timeout or self.execution_timeout
        deadline = time.monotonic() + execution_timeout if execution_timeout else None
        state = _Schedule(graph, record)

        # Seeded records are already terminal: decide their outgoing edges up front
        for node_id in graph.topological_order():
            status = state.status[node_id]
            if status == NodeStatus.SUCCESS:
                self._decide_edges(state, node_id, graph.successors(node_id, branch_of(record.node_record(node_id).outputs)))
            elif status.is_terminal:
                if status == NodeStatus.FAILED or record.node_record(node_id).skip_reason in (
                        SkipReason.UPSTREAM_FAILED, SkipReason.RUN_ABORTED):
                    state.tainted.add(node_id)
                self._decide_edges(state, node_id, [])
        for node_id in graph.topological_order():
            if state.status[node_id] == NodeStatus.PENDING and state.pending[node_id] == 0 \
                    and node_id not in state.ready:
                self._decide_node(state, node_id)
        self._flush(writer, state)

        writer.append_log(NodeLogLevel.INFO,
                          f"Execution started: {len(graph)} nodes, max concurrency {max_concurrency}")
        in_flight: Dict[Future, str] = {}
        pool = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix=f"exec-{writer.execution_id[:8]}")
        try:
            while True:
                if token.is_cancelled:
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    token.cancel(ErrorCause.TIMEOUT, f"Execution timed out after {execution_timeout} seconds")
                    break

                while not state.hard_failure and state.ready and len(in_flight) < max_concurrency:
                    node_id = state.ready.popleft()
                    future = self._dispatch(graph, writer, state, node_id, token, pool)
                    in_flight[future] = node_id

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    node_id = in_flight.pop(future)
                    self._complete(graph, writer, state, node_id, self._result_of(future, graph, node_id),
                                   cascade=True)

            # Stopped by cancellation or deadline: in-flight nodes observe the token and return promptly
            if in_flight:
                wait(list(in_flight))
                for future, node_id in list(in_flight.items()):
                    self._complete(graph, writer, state, node_id, self._result_of(future, graph, node_id),
                                   cascade=False)
                in_flight.clear()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        self._finalize(graph, writer, state, token)

    def _decide_edges(self, state: _Schedule, node_id: str, live_edges):
        live = {id(edge) for edge in live_edges}
        for edge in state.graph.outgoing(node_id):
            if state.edge_live[id(edge)] is not None:
                continue
            state.edge_live[id(edge)] = id(edge) in live
            state.pending[edge.target] -= 1

    def _decide_node(self, state: _Schedule, node_id: str):
        """All incoming edges are decided: queue the node or skip it and cascade."""
        graph = state.graph
        incoming = graph.incoming(node_id)
        if not incoming or node_id in state.forced or any(state.edge_live[id(e)] for e in incoming):
            state.ready.append(node_id)
            return

        tainted = any(edge.source in state.tainted for edge in incoming)
        reason = SkipReason.UPSTREAM_FAILED if tainted else SkipReason.BRANCH_NOT_TAKEN
        if tainted:
            state.tainted.add(node_id)
        self._skip(state, node_id, reason)
        self._decide_edges(state, node_id, [])
        for edge in graph.outgoing(node_id):
            target = edge.target
            if state.pending[target] == 0 and state.status[target] == NodeStatus.PENDING \
                    and target not in state.ready:
                self._decide_node(state, target)

    def _skip(self, state: _Schedule, node_id: str, reason: SkipReason):
        state.status[node_id] = NodeStatus.SKIPPED
        node = state.graph.node(node_id)
        state.updates[node_id] = NodeExecutionRecord(
            node_id=node_id, node_type=node.type, status=NodeStatus.SKIPPED,
            end_time=utcnow(), skip_reason=reason
        )

    def _flush(self, writer: ExecutionWriter, state: _Schedule, **changes):
        if not state.updates and not changes:
            return
        updates = list(state.updates.values())
        state.updates.clear()
        writer.set_nodes(updates, **changes)
        for update in updates:
            if update.status == NodeStatus.SKIPPED:
                writer.append_log(NodeLogLevel.INFO,
                                  f"Node '{state.graph.node_label(update.node_id)}' skipped ({update.skip_reason.value})",
                                  node_id=update.node_id)

    def _dispatch(self, graph: WorkflowGraph, writer: ExecutionWriter, state: _Schedule, node_id: str,
                  token: CancellationToken, pool: ThreadPoolExecutor) -> Future:
        record = writer.record
        node = graph.node(node_id)
        settings = record.definition.settings
        now = utcnow()

        state.status[node_id] = NodeStatus.RUNNING
        state.updates[node_id] = record.node_record(node_id).model_copy(
            update={"status": NodeStatus.RUNNING, "start_time": now, "end_time": None}
        )
        changes = {}
        if record.status == ExecutionStatus.QUEUED:
            changes = {"status": ExecutionStatus.RUNNING, "start_time": now}
        self._flush(writer, state, **changes)
        writer.append_log(NodeLogLevel.INFO, f"Node '{node.label}' started", node_id=node_id)

        scope = self._expression_scope(graph, writer.record, node)
        live_predecessors = list(dict.fromkeys(
            edge.source for edge in graph.incoming(node_id)
            if state.edge_live[id(edge)] and state.status[edge.source] == NodeStatus.SUCCESS
        ))
        upstream = {pid: writer.record.node_record(pid).outputs for pid in live_predecessors}
        declared = node.inputs
        if declared is None:
            declared = upstream_inputs([(pid, graph.node_label(pid), upstream[pid]) for pid in live_predecessors])

        ctx = NodeContext(
            node,
            execution_id=writer.execution_id,
            workflow_id=record.workflow_id,
            config=evaluate_node_data(dict(node.config), scope),
            credentials=dict(node.credentials),
            token=token,
            timeout=node.timeout or settings.node_timeout or self.node_timeout,
            retries=self._retries_for(node, settings),
            retry_delay=self.node_retry_delay,
            upstream_outputs=upstream,
            log_sink=lambda nid, level, message: writer.append_log(level, message, node_id=nid)
        )
        handler = self.registry.find_handler(node.type)
        return pool.submit(self._run_node, ctx, handler, node, declared, scope)

    def _retries_for(self, node: NodeSpec, settings) -> int:
        if node.retries is not None:
            return node.retries
        if settings.node_retries is not None:
            return settings.node_retries
        return self.node_max_retries

    @staticmethod
    def _expression_scope(graph: WorkflowGraph, record: ExecutionRecord, node: NodeSpec) -> ExpressionContext:
        node_data = {
            r.node_id: {"input": r.inputs, "output": r.outputs}
            for r in record.node_executions if r.status == NodeStatus.SUCCESS
        }
        node_data.setdefault(node.id, {"input": None, "output": None})
        return ExpressionContext(
            execution_id=record.id,
            workflow_id=record.workflow_id,
            node_id=node.id,
            node_name=node.name,
            node_data=node_data,
            node_names={spec.name: spec.id for spec in graph.nodes if spec.name},
            trigger_data=record.trigger_data,
            variables=record.definition.variables
        )

    def _run_node(self, ctx: NodeContext, handler, node: NodeSpec, declared, scope: ExpressionContext) -> NodeExecutionRecord:
        try:
            resolved = resolve_input(
                node.config, declared,
                direct_value=node.value if node.has_direct_value else UNSET,
                scope=scope, node_id=node.id
            )
            if resolved.is_default:
                ctx.warn(f"Node '{node.label}' has no value configured, using 0")
            return self.runner.run(ctx, handler, resolved)
        finally:
            ctx.close()

    @staticmethod
    def _result_of(future: Future, graph: WorkflowGraph, node_id: str) -> NodeExecutionRecord:
        try:
            return future.result()
        except Exception as e:
            logger.error(f"Node {node_id} crashed outside its handler: {str(e)}", exc_info=True)
            node = graph.node(node_id)
            now = utcnow()
            return NodeExecutionRecord(
                node_id=node_id, node_type=node.type, status=NodeStatus.FAILED, start_time=now, end_time=now,
                error=NodeError(message=str(e) or type(e).__name__, cause=ErrorCause.NODE_EXCEPTION)
            )

    def _complete(self, graph: WorkflowGraph, writer: ExecutionWriter, state: _Schedule, node_id: str,
                  result: NodeExecutionRecord, cascade: bool):
        node = graph.node(node_id)
        state.status[node_id] = result.status
        state.updates[node_id] = result
        changes = {}

        if result.status == NodeStatus.SUCCESS:
            writer.append_log(NodeLogLevel.INFO, f"Node '{node.label}' succeeded in {result.duration} ms",
                              node_id=node_id)
            live = graph.successors(node_id, branch_of(result.outputs))
        else:
            state.failed.add(node_id)
            if not node.continue_on_fail:
                state.tainted.add(node_id)
                state.hard_failure = True
            entry = ExecutionErrorEntry(
                code=NODE_ERROR_CODES[result.error.cause],
                message=f"Node '{node.label}' failed: {result.error.message}",
                scope=ErrorScope.NODE,
                node_id=node_id,
                cause=result.error.cause
            )
            changes["errors"] = list(writer.record.errors) + [entry]
            # Tolerated failure: successors run without this upstream
            live = graph.outgoing(node_id) if node.continue_on_fail else []

        if cascade:
            self._decide_edges(state, node_id, live)
            for edge in graph.outgoing(node_id):
                target = edge.target
                if state.pending[target] == 0 and state.status[target] == NodeStatus.PENDING \
                        and target not in state.ready:
                    self._decide_node(state, target)
        self._flush(writer, state, **changes)

    def _finalize(self, graph: WorkflowGraph, writer: ExecutionWriter, state: _Schedule, token: CancellationToken):
        record = writer.record
        cancelled = token.is_cancelled and token.cause == ErrorCause.CANCELLED
        timed_out = token.is_cancelled and token.cause == ErrorCause.TIMEOUT
        failure_descendants: Set[str] = set()
        for failed in state.failed:
            if graph.node(failed).continue_on_fail:
                continue
            failure_descendants |= graph.descendants(failed)

        for node_id in graph.node_ids:
            if state.status[node_id].is_terminal:
                continue
            if cancelled:
                reason = SkipReason.CANCELLED
            elif node_id in failure_descendants:
                reason = SkipReason.UPSTREAM_FAILED
            elif state.hard_failure or timed_out:
                reason = SkipReason.RUN_ABORTED
            else:
                reason = SkipReason.OUT_OF_SCOPE
            self._skip(state, node_id, reason)

        errors = list(record.errors)
        if cancelled:
            status = ExecutionStatus.CANCELLED
            errors.append(ExecutionErrorEntry(code="EXECUTION_CANCELLED",
                                              message=token.reason or "Execution cancelled",
                                              scope=ErrorScope.EXECUTION))
        elif timed_out:
            status = ExecutionStatus.FAILED
            errors.append(ExecutionErrorEntry(code="EXECUTION_TIMEOUT",
                                              message=token.reason or "Execution timed out",
                                              scope=ErrorScope.EXECUTION))
        elif state.hard_failure:
            status = ExecutionStatus.FAILED
        else:
            status = ExecutionStatus.COMPLETED

        final_nodes = [state.updates.get(r.node_id, r) for r in record.node_executions]
        by_id = {r.node_id: r for r in final_nodes}
        successful_terminals = [nid for nid in graph.terminal_nodes() if by_id[nid].status == NodeStatus.SUCCESS]
        if len(successful_terminals) == 1:
            final_result = by_id[successful_terminals[0]].outputs
        elif successful_terminals:
            final_result = {graph.node_label(nid): by_id[nid].outputs for nid in successful_terminals}
        else:
            final_result = None

        end_time = utcnow()
        start_time = record.start_time or end_time
        self._flush(
            writer, state,
            status=status,
            start_time=start_time,
            end_time=end_time,
            duration=round((end_time - start_time).total_seconds() * 1000, 3),
            final_result=final_result,
            errors=errors,
            primary_error=primary_error_of(errors) if status != ExecutionStatus.COMPLETED else None,
            metrics=ExecutionMetrics.from_records(final_nodes),
            cancel_reason=token.reason if cancelled else record.cancel_reason
        )
        writer.append_log(
            NodeLogLevel.ERROR if status == ExecutionStatus.FAILED else NodeLogLevel.INFO,
            f"Execution {status.value}"
        )
        logger.info(f"Execution {writer.execution_id} finished with status {status.value}")

    def _fail_system(self, writer: ExecutionWriter, error: EngineSystemError):
        """Record an engine failure as FAILED with a SYSTEM scoped error."""
        try:
            record = writer.record
            now = utcnow()
            nodes = []
            for node in record.node_executions:
                if node.status == NodeStatus.RUNNING:
                    nodes.append(node.model_copy(update={
                        "status": NodeStatus.FAILED, "end_time": now,
                        "error": NodeError(message="Aborted by system error", cause=ErrorCause.CANCELLED)
                    }))
                elif node.status == NodeStatus.PENDING:
                    nodes.append(node.model_copy(update={
                        "status": NodeStatus.SKIPPED, "skip_reason": SkipReason.RUN_ABORTED, "end_time": now
                    }))
            entry = ExecutionErrorEntry(code="SYSTEM_ERROR", message=error.message, scope=ErrorScope.SYSTEM)
            start_time = record.start_time or now
            writer.set_nodes(
                nodes,
                status=ExecutionStatus.FAILED,
                start_time=start_time,
                end_time=now,
                duration=round((now - start_time).total_seconds() * 1000, 3),
                errors=list(record.errors) + [entry],
                primary_error=entry
            )
        except WorkflowEngineError as e:
            logger.critical(f"Could not record system failure of execution {writer.execution_id}: {e.message}")
