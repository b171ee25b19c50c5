"""Replay Manager: re-runs finished executions, fully or from a node, and retries failures."""

from typing import Dict, List, Optional

from ..models.core import (
    ExecutionMode, ExecutionRecord, NodeExecutionRecord, NodeStatus, SkipReason, utcnow
)
from .coordinator import ExecutionCoordinator
from .exceptions import ExecutionStateError, NothingToRetryError, ResourceNotFoundError
from .logging import get_logger
from .status_tracker import StatusTracker
from .workflow_graph import WorkflowGraph

logger = get_logger(__name__)

RETRYABLE_SKIP_REASONS = (SkipReason.UPSTREAM_FAILED, SkipReason.RUN_ABORTED)


class ReplayManager:
    """Builds new executions from a terminal one.

    Nodes outside the replayed scope are seeded from the source execution:
    successful records are copied (``reused=True``) and never re-invoked.
    """

    def __init__(self, coordinator: ExecutionCoordinator, tracker: StatusTracker):
        self.coordinator = coordinator
        self.tracker = tracker

    def _terminal_source(self, execution_id: str) -> ExecutionRecord:
        source = self.tracker.get(execution_id)
        if not source.is_terminal or self.tracker.has_writer(execution_id):
            raise ExecutionStateError(
                f"Execution {execution_id} is {source.status.value}; only finished executions can be replayed",
                execution_id=execution_id, current_status=source.status.value
            )
        return source

    @staticmethod
    def _reuse(record: NodeExecutionRecord) -> NodeExecutionRecord:
        return record.model_copy(update={"reused": True})

    def replay(self, execution_id: str, from_node_id: Optional[str] = None, start: bool = True) -> ExecutionRecord:
        """
        Re-run a finished execution.

        Args:
            execution_id: Source execution, must be terminal
            from_node_id: Restrict the run to this node and its descendants
            start: Queue the new execution immediately

        Returns:
            ExecutionRecord: the new execution

        Raises:
            ExecutionStateError: If the source execution is not terminal
            ResourceNotFoundError: If the execution or node does not exist
        """
        source = self._terminal_source(execution_id)

        if from_node_id is None:
            logger.info(f"Replaying execution {execution_id} in full")
            record = self.coordinator.initiate(
                source.workflow_id, source.definition, source.trigger_data,
                mode=ExecutionMode.REPLAY, parent_execution_id=source.id
            )
        else:
            graph = WorkflowGraph.build(source.definition, workflow_id=source.workflow_id)
            if from_node_id not in graph:
                raise ResourceNotFoundError(f"Node '{from_node_id}' not found in execution {execution_id}",
                                            resource="node", resource_id=from_node_id)
            in_scope = {from_node_id} | graph.descendants(from_node_id)
            scope = [nid for nid in graph.topological_order() if nid in in_scope]

            now = utcnow()
            seeded: Dict[str, NodeExecutionRecord] = {}
            for node in graph.nodes:
                if node.id in in_scope:
                    continue
                original = source.node_record(node.id)
                if original is not None and original.status == NodeStatus.SUCCESS:
                    seeded[node.id] = self._reuse(original)
                else:
                    seeded[node.id] = NodeExecutionRecord(
                        node_id=node.id, node_type=node.type, status=NodeStatus.SKIPPED,
                        skip_reason=SkipReason.OUT_OF_SCOPE, end_time=now
                    )

            logger.info(f"Replaying execution {execution_id} from node {from_node_id} "
                        f"({len(scope)} nodes in scope, {len(seeded)} seeded)")
            record = self.coordinator.initiate(
                source.workflow_id, source.definition, source.trigger_data,
                mode=ExecutionMode.REPLAY, parent_execution_id=source.id,
                from_node_id=from_node_id, scope=scope, seeded=seeded
            )

        if start:
            self.coordinator.start(record.id)
        return self.tracker.get(record.id)

    def retry_failed_execution(self, execution_id: str, start: bool = True) -> ExecutionRecord:
        """
        Re-run only the failed part of a finished execution.

        The scope is every FAILED node plus nodes skipped because of a failure
        (``UPSTREAM_FAILED``, ``RUN_ABORTED``). Everything else is copied as is.

        Raises:
            ExecutionStateError: If the source execution is not terminal
            NothingToRetryError: If no node qualifies
        """
        source = self._terminal_source(execution_id)

        scope: List[str] = []
        seeded: Dict[str, NodeExecutionRecord] = {}
        for record in source.node_executions:
            retryable = record.status == NodeStatus.FAILED or (
                record.status == NodeStatus.SKIPPED and record.skip_reason in RETRYABLE_SKIP_REASONS
            )
            if retryable:
                scope.append(record.node_id)
            elif record.status == NodeStatus.SUCCESS:
                seeded[record.node_id] = self._reuse(record)
            else:
                seeded[record.node_id] = record

        if not scope:
            raise NothingToRetryError(f"Execution {execution_id} has no failed nodes to retry",
                                      execution_id=execution_id)

        logger.info(f"Retrying {len(scope)} nodes of execution {execution_id}")
        new_record = self.coordinator.initiate(
            source.workflow_id, source.definition, source.trigger_data,
            mode=ExecutionMode.RETRY, parent_execution_id=source.id,
            scope=scope, seeded=seeded
        )
        if start:
            self.coordinator.start(new_record.id)
        return self.tracker.get(new_record.id)
