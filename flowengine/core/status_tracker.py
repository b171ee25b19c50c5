"""Status Tracker: single-writer, copy-on-write store of execution records."""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    ErrorCause, ErrorScope, ExecutionErrorEntry, ExecutionFingerprint, ExecutionLogEntry,
    ExecutionMetrics, ExecutionMode, ExecutionPage, ExecutionRecord, ExecutionStats,
    ExecutionStatus, ExecutionSummary, LogPage, NodeError, NodeExecutionRecord, NodeLogLevel,
    NodeStatus, SkipReason, WorkflowDefinition, utcnow
)
from ..storage.database import get_db
from ..storage.models import ExecutionLogModel, ExecutionModel, NodeExecutionModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import (
    EngineSystemError, ExecutionStateError, ResourceNotFoundError, StorageError
)
from .logging import get_logger

logger = get_logger(__name__)

_TICK = timedelta(microseconds=1)


@dataclass(frozen=True)
class TrackerEvent:
    """Notification delivered to subscribers.

    ``kind`` is ``"record"`` for a committed record change (``previous`` and
    ``fingerprint`` set, ``record`` the new snapshot) or ``"log"`` for a new
    log line (``log`` set).
    """
    kind: str
    execution_id: str
    fingerprint: Optional[ExecutionFingerprint] = None
    previous: Optional[ExecutionFingerprint] = None
    record: Optional[ExecutionRecord] = None
    log: Optional[ExecutionLogEntry] = None


Listener = Callable[[TrackerEvent], None]


class ExecutionWriter:
    """The only handle allowed to mutate one execution record.

    Obtained from ``StatusTracker.open_writer``; every mutation builds a new
    immutable record, persists it and then publishes it.
    """

    def __init__(self, tracker: "StatusTracker", execution_id: str):
        self._tracker = tracker
        self.execution_id = execution_id
        self._closed = False

    @property
    def record(self) -> ExecutionRecord:
        return self._tracker._live_record(self.execution_id)

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self):
        if self._closed:
            raise ExecutionStateError("Writer is closed", execution_id=self.execution_id)

    def update(self, **changes: Any) -> ExecutionRecord:
        """Replace top-level fields of the record."""
        self._check_open()
        return self._tracker._commit(self.execution_id, changes)

    def set_status(self, status: ExecutionStatus, **changes: Any) -> ExecutionRecord:
        return self.update(status=status, **changes)

    def set_nodes(self, node_records: List[NodeExecutionRecord], **changes: Any) -> ExecutionRecord:
        """Replace node records by node id, together with optional top-level changes.

        A SUCCESS record is never replaced.
        """
        self._check_open()
        current = self.record
        by_id = {record.node_id: record for record in node_records}
        merged = []
        for existing in current.node_executions:
            replacement = by_id.pop(existing.node_id, None)
            if replacement is None or replacement is existing:
                merged.append(existing)
                continue
            if existing.status == NodeStatus.SUCCESS:
                raise ExecutionStateError(
                    f"Node '{existing.node_id}' already succeeded and cannot be replaced",
                    execution_id=self.execution_id, current_status=existing.status.value
                )
            merged.append(replacement)
        merged.extend(by_id.values())
        return self._tracker._commit(self.execution_id, {**changes, "node_executions": merged})

    def set_node(self, node_record: NodeExecutionRecord, **changes: Any) -> ExecutionRecord:
        return self.set_nodes([node_record], **changes)

    def add_error(self, entry: ExecutionErrorEntry, **changes: Any) -> ExecutionRecord:
        self._check_open()
        return self.update(errors=list(self.record.errors) + [entry], **changes)

    def append_log(self, level: NodeLogLevel, message: str, node_id: Optional[str] = None) -> Optional[ExecutionLogEntry]:
        return self._tracker.append_log(self.execution_id, level, message, node_id=node_id)

    def close(self):
        """Release the claim; terminal records leave the in-memory cache."""
        if not self._closed:
            self._closed = True
            self._tracker._release(self.execution_id)


class StatusTracker:
    """Store of execution records with cheap fingerprint reads.

    Live records (those with an open writer) are held in memory; every
    transition is written through to the database before it becomes
    visible, so readers only ever observe committed snapshots.
    """

    def __init__(self, logs_default_page_size: int = 200, logs_max_page_size: int = 1000):
        self.logs_default_page_size = logs_default_page_size
        self.logs_max_page_size = logs_max_page_size
        self._records: Dict[str, ExecutionRecord] = {}
        self._writers: Dict[str, ExecutionWriter] = {}
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._db_lock = threading.Lock()
        self._log_lock = threading.Lock()
        self._log_sequence: Optional[int] = None
        self._subscribers: Dict[int, Tuple[Listener, Optional[str]]] = {}
        self._next_subscription = 0
        logger.info("StatusTracker initialized")

    # Creation and writers

    def create(self, record: ExecutionRecord) -> ExecutionRecord:
        """Persist a brand-new record.

        Raises:
            EngineSystemError: If the record cannot be persisted
        """
        now = utcnow()
        record = record.model_copy(update={"created_at": now, "updated_at": now})
        try:
            self._persist_record(record, None)
        except StorageError as e:
            raise EngineSystemError(f"Failed to persist execution {record.id}: {e.message}",
                                    execution_id=record.id, operation="create")
        logger.info(f"Created execution record {record.id} for workflow {record.workflow_id}")
        self._publish(None, record)
        return record

    def open_writer(self, execution_id: str) -> ExecutionWriter:
        """Claim the single writer of an execution.

        Raises:
            ExecutionStateError: If a writer is already open
            ResourceNotFoundError: If the execution does not exist
        """
        with self._lock:
            if execution_id in self._writers:
                raise ExecutionStateError(
                    f"Execution {execution_id} already has an active writer", execution_id=execution_id
                )
            record = self._records.get(execution_id) or self._load(execution_id)
            self._records[execution_id] = record
            writer = ExecutionWriter(self, execution_id)
            self._writers[execution_id] = writer
        logger.debug(f"Opened writer for execution {execution_id}")
        return writer

    def has_writer(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._writers

    def _release(self, execution_id: str):
        with self._changed:
            self._writers.pop(execution_id, None)
            record = self._records.get(execution_id)
            if record is not None and record.is_terminal:
                del self._records[execution_id]
            self._changed.notify_all()
        logger.debug(f"Released writer for execution {execution_id}")

    def _live_record(self, execution_id: str) -> ExecutionRecord:
        with self._lock:
            return self._records[execution_id]

    def _commit(self, execution_id: str, changes: Dict[str, Any]) -> ExecutionRecord:
        if not changes:
            return self._live_record(execution_id)
        current = self._live_record(execution_id)
        updated_at = max(utcnow(), current.updated_at + _TICK)
        new_record = current.model_copy(update={**changes, "updated_at": updated_at})
        try:
            self._persist_record(new_record, current)
        except StorageError as e:
            logger.error(f"Failed to persist transition of execution {execution_id}: {e.message}")
            raise EngineSystemError(f"Failed to persist execution {execution_id}: {e.message}",
                                    execution_id=execution_id, operation="commit")
        with self._changed:
            self._records[execution_id] = new_record
            self._changed.notify_all()
        self._publish(current, new_record)
        return new_record

    # Persistence

    @with_retry(RetryConfig.for_storage())
    def _persist_record(self, record: ExecutionRecord, previous: Optional[ExecutionRecord]) -> None:
        """Write the record and its changed node records in one transaction."""
        previous_nodes = {n.node_id: n for n in previous.node_executions} if previous else {}
        with self._db_lock:
            db = next(get_db())
            try:
                model = db.get(ExecutionModel, record.id)
                if model is None:
                    model = ExecutionModel(id=record.id)
                    db.add(model)
                self._apply_execution(model, record)

                existing_rows = {}
                if previous is not None:
                    existing_rows = {
                        row.node_id: row for row in db.query(NodeExecutionModel)
                        .filter(NodeExecutionModel.execution_id == record.id).all()
                    }
                for position, node in enumerate(record.node_executions):
                    if previous_nodes.get(node.node_id) is node:
                        continue
                    row = existing_rows.get(node.node_id)
                    if row is None:
                        row = NodeExecutionModel(execution_id=record.id, node_id=node.node_id)
                        db.add(row)
                    self._apply_node(row, node, position)

                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to persist execution: {str(e)}",
                                   operation="persist_execution", table="executions")
            finally:
                db.close()

    @staticmethod
    def _apply_execution(model: ExecutionModel, record: ExecutionRecord):
        model.workflow_id = record.workflow_id
        model.status = record.status.value
        model.mode = record.mode.value
        model.parent_execution_id = record.parent_execution_id
        model.from_node_id = record.from_node_id
        model.scope = record.scope
        model.definition = record.definition.to_storage()
        model.trigger_data = record.trigger_data
        model.start_time = record.start_time
        model.end_time = record.end_time
        model.duration = record.duration
        model.final_result = record.final_result
        model.errors = [entry.model_dump(mode="json") for entry in record.errors]
        model.primary_error = record.primary_error.model_dump(mode="json") if record.primary_error else None
        model.metrics = record.metrics.model_dump(mode="json") if record.metrics else None
        model.cancel_reason = record.cancel_reason
        model.created_at = record.created_at
        model.updated_at = record.updated_at

    @staticmethod
    def _apply_node(row: NodeExecutionModel, node: NodeExecutionRecord, position: int):
        row.node_type = node.node_type
        row.position = position
        row.status = node.status.value
        row.start_time = node.start_time
        row.end_time = node.end_time
        row.duration = node.duration
        row.inputs = node.inputs
        row.outputs = node.outputs
        row.error = node.error.model_dump(mode="json") if node.error else None
        row.attempts = node.attempts
        row.skip_reason = node.skip_reason.value if node.skip_reason else None
        row.reused = node.reused

    @staticmethod
    def _to_record(model: ExecutionModel) -> ExecutionRecord:
        return ExecutionRecord(
            id=model.id,
            workflow_id=model.workflow_id,
            status=ExecutionStatus(model.status),
            mode=ExecutionMode(model.mode or ExecutionMode.RUN.value),
            parent_execution_id=model.parent_execution_id,
            from_node_id=model.from_node_id,
            scope=model.scope,
            definition=WorkflowDefinition.model_validate(model.definition),
            trigger_data=model.trigger_data or {},
            start_time=model.start_time,
            end_time=model.end_time,
            duration=model.duration,
            node_executions=[
                NodeExecutionRecord(
                    node_id=row.node_id,
                    node_type=row.node_type,
                    status=NodeStatus(row.status),
                    start_time=row.start_time,
                    end_time=row.end_time,
                    duration=row.duration,
                    inputs=row.inputs,
                    outputs=row.outputs,
                    error=NodeError.model_validate(row.error) if row.error else None,
                    attempts=row.attempts or 0,
                    skip_reason=SkipReason(row.skip_reason) if row.skip_reason else None,
                    reused=bool(row.reused)
                )
                for row in model.node_executions
            ],
            final_result=model.final_result,
            errors=[ExecutionErrorEntry.model_validate(entry) for entry in model.errors or []],
            primary_error=ExecutionErrorEntry.model_validate(model.primary_error) if model.primary_error else None,
            metrics=ExecutionMetrics.model_validate(model.metrics) if model.metrics else None,
            cancel_reason=model.cancel_reason,
            created_at=model.created_at,
            updated_at=model.updated_at
        )

    def _load(self, execution_id: str) -> ExecutionRecord:
        db = next(get_db())
        try:
            model = db.get(ExecutionModel, execution_id)
            if model is None:
                raise ResourceNotFoundError(f"Execution '{execution_id}' not found",
                                            resource="execution", resource_id=execution_id)
            return self._to_record(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load execution: {str(e)}", operation="load", table="executions")
        finally:
            db.close()

    # Reads

    def get(self, execution_id: str) -> ExecutionRecord:
        """Full record.

        Raises:
            ResourceNotFoundError: If the execution does not exist
        """
        with self._lock:
            record = self._records.get(execution_id)
        if record is not None:
            return record
        return self._load(execution_id)

    def fingerprint(self, execution_id: str) -> ExecutionFingerprint:
        """``id, status, updated_at`` without loading node records."""
        with self._lock:
            record = self._records.get(execution_id)
        if record is not None:
            return record.fingerprint()

        db = next(get_db())
        try:
            row = db.query(ExecutionModel.id, ExecutionModel.status, ExecutionModel.updated_at) \
                .filter(ExecutionModel.id == execution_id).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read execution status: {str(e)}", operation="fingerprint",
                               table="executions")
        finally:
            db.close()
        if row is None:
            raise ResourceNotFoundError(f"Execution '{execution_id}' not found",
                                        resource="execution", resource_id=execution_id)
        return ExecutionFingerprint(id=row.id, status=ExecutionStatus(row.status), updated_at=row.updated_at)

    def wait_for_change(self, execution_id: str, since: Optional[datetime] = None,
                        timeout: float = 30.0) -> ExecutionFingerprint:
        """Block until the fingerprint is newer than ``since`` or ``timeout`` passes."""
        deadline = time.monotonic() + timeout
        with self._changed:
            while execution_id in self._records:
                fingerprint = self._records[execution_id].fingerprint()
                if since is None or fingerprint.updated_at > since:
                    return fingerprint
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return fingerprint
                self._changed.wait(remaining)
        return self.fingerprint(execution_id)

    def wait_for_terminal(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionRecord:
        """Block until the execution is terminal and its writer released, or ``timeout`` passes."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        with self._changed:
            while execution_id in self._writers:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                self._changed.wait(remaining)
        return self.get(execution_id)

    # Subscriptions

    def subscribe(self, listener: Listener, execution_id: Optional[str] = None) -> Callable[[], None]:
        """Register a listener for one execution (or all); returns the unsubscribe callable."""
        with self._lock:
            token = self._next_subscription
            self._next_subscription += 1
            self._subscribers[token] = (listener, execution_id)

        def unsubscribe():
            with self._lock:
                self._subscribers.pop(token, None)
        return unsubscribe

    def _listeners_for(self, execution_id: str) -> List[Listener]:
        with self._lock:
            return [listener for listener, scope in self._subscribers.values()
                    if scope is None or scope == execution_id]

    def _publish(self, previous: Optional[ExecutionRecord], record: ExecutionRecord):
        previous_fp = previous.fingerprint() if previous else None
        fingerprint = record.fingerprint()
        if previous_fp == fingerprint:
            return
        self._dispatch(TrackerEvent(kind="record", execution_id=record.id, fingerprint=fingerprint,
                                    previous=previous_fp, record=record))

    def _dispatch(self, event: TrackerEvent):
        for listener in self._listeners_for(event.execution_id):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Tracker listener failed for execution {event.execution_id}: {str(e)}",
                             exc_info=True)

    # Logs

    def _ensure_sequence(self, db) -> int:
        if self._log_sequence is None:
            self._log_sequence = db.query(func.max(ExecutionLogModel.sequence)).scalar() or 0
        return self._log_sequence

    def append_log(self, execution_id: str, level: NodeLogLevel, message: str,
                   node_id: Optional[str] = None) -> Optional[ExecutionLogEntry]:
        """Append one line to an execution's log stream.

        Thread safe; sequence numbers are global and increase in emission
        order. Returns None when the line could not be stored.
        """
        with self._log_lock:
            with self._db_lock:
                db = next(get_db())
                try:
                    sequence = self._ensure_sequence(db) + 1
                    entry = ExecutionLogEntry(
                        sequence=sequence,
                        execution_id=execution_id,
                        node_id=node_id,
                        level=NodeLogLevel(level),
                        message=message,
                        timestamp=utcnow()
                    )
                    db.add(ExecutionLogModel(
                        sequence=entry.sequence,
                        execution_id=entry.execution_id,
                        node_id=entry.node_id,
                        level=entry.level.value,
                        message=entry.message,
                        timestamp=entry.timestamp
                    ))
                    db.commit()
                    self._log_sequence = sequence
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.error(f"Failed to store log line for execution {execution_id}: {str(e)}")
                    return None
                finally:
                    db.close()
        self._dispatch(TrackerEvent(kind="log", execution_id=execution_id, log=entry))
        return entry

    def get_logs(self, execution_id: str, page: int = 1, limit: Optional[int] = None,
                 node_id: Optional[str] = None) -> LogPage:
        """Page through an execution's log lines in emission order.

        Raises:
            ResourceNotFoundError: If the execution does not exist
        """
        self.fingerprint(execution_id)
        page = max(page, 1)
        limit = limit or self.logs_default_page_size
        limit = max(1, min(limit, self.logs_max_page_size))

        db = next(get_db())
        try:
            query = db.query(ExecutionLogModel).filter(ExecutionLogModel.execution_id == execution_id)
            if node_id is not None:
                query = query.filter(ExecutionLogModel.node_id == node_id)
            total = query.count()
            rows = query.order_by(ExecutionLogModel.sequence).offset((page - 1) * limit).limit(limit).all()
            items = [
                ExecutionLogEntry(
                    sequence=row.sequence,
                    execution_id=row.execution_id,
                    node_id=row.node_id,
                    level=NodeLogLevel(row.level),
                    message=row.message,
                    timestamp=row.timestamp
                )
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read logs: {str(e)}", operation="get_logs", table="execution_logs")
        finally:
            db.close()
        return LogPage(items=items, page=page, limit=limit, total=total, has_more=page * limit < total)

    # History

    def list_executions(self, workflow_id: Optional[str] = None, status: Optional[ExecutionStatus] = None,
                        page: int = 1, limit: int = 20) -> ExecutionPage:
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        db = next(get_db())
        try:
            query = db.query(ExecutionModel)
            if workflow_id is not None:
                query = query.filter(ExecutionModel.workflow_id == workflow_id)
            if status is not None:
                query = query.filter(ExecutionModel.status == ExecutionStatus(status).value)
            total = query.count()
            rows = query.order_by(ExecutionModel.created_at.desc()) \
                .offset((page - 1) * limit).limit(limit).all()
            items = [
                ExecutionSummary(
                    id=row.id,
                    workflow_id=row.workflow_id,
                    status=ExecutionStatus(row.status),
                    mode=ExecutionMode(row.mode or ExecutionMode.RUN.value),
                    parent_execution_id=row.parent_execution_id,
                    start_time=row.start_time,
                    end_time=row.end_time,
                    duration=row.duration,
                    created_at=row.created_at,
                    updated_at=row.updated_at
                )
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list executions: {str(e)}", operation="list", table="executions")
        finally:
            db.close()
        return ExecutionPage(items=items, page=page, limit=limit, total=total, has_more=page * limit < total)

    def stats(self, workflow_id: Optional[str] = None) -> ExecutionStats:
        db = next(get_db())
        try:
            query = db.query(ExecutionModel.status, func.count(ExecutionModel.id))
            if workflow_id is not None:
                query = query.filter(ExecutionModel.workflow_id == workflow_id)
            by_status = {status: count for status, count in query.group_by(ExecutionModel.status).all()}

            aggregates = db.query(func.avg(ExecutionModel.duration), func.max(ExecutionModel.created_at))
            if workflow_id is not None:
                aggregates = aggregates.filter(ExecutionModel.workflow_id == workflow_id)
            average_duration, last_execution_at = aggregates.one()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to compute execution stats: {str(e)}", operation="stats",
                               table="executions")
        finally:
            db.close()

        finished = sum(by_status.get(s.value, 0) for s in ExecutionStatus if s.is_terminal)
        completed = by_status.get(ExecutionStatus.COMPLETED.value, 0)
        return ExecutionStats(
            workflow_id=workflow_id,
            total=sum(by_status.values()),
            by_status=by_status,
            average_duration=round(average_duration, 3) if average_duration is not None else None,
            success_rate=round(completed / finished, 4) if finished else None,
            last_execution_at=last_execution_at
        )

    def latest(self, workflow_id: str) -> Optional[ExecutionRecord]:
        db = next(get_db())
        try:
            row = db.query(ExecutionModel.id).filter(ExecutionModel.workflow_id == workflow_id) \
                .order_by(ExecutionModel.created_at.desc()).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read latest execution: {str(e)}", operation="latest",
                               table="executions")
        finally:
            db.close()
        return self.get(row.id) if row else None

    def delete(self, execution_id: str) -> bool:
        """Delete a finished execution with its node records and logs.

        Raises:
            ExecutionStateError: If the execution is still being written
        """
        if self.has_writer(execution_id):
            raise ExecutionStateError(f"Execution {execution_id} is still active and cannot be deleted",
                                      execution_id=execution_id)
        with self._db_lock:
            db = next(get_db())
            try:
                model = db.get(ExecutionModel, execution_id)
                if model is None:
                    return False
                db.delete(model)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to delete execution: {str(e)}", operation="delete",
                                   table="executions")
            finally:
                db.close()
        with self._lock:
            self._records.pop(execution_id, None)
        logger.info(f"Deleted execution {execution_id}")
        return True

    def recover_interrupted(self) -> List[str]:
        """Fail executions a previous process left QUEUED or RUNNING.

        Running nodes become FAILED (cancelled) and pending ones SKIPPED, so
        the run can be retried.
        """
        db = next(get_db())
        try:
            rows = db.query(ExecutionModel.id).filter(
                ExecutionModel.status.in_([ExecutionStatus.QUEUED.value, ExecutionStatus.RUNNING.value])
            ).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to scan interrupted executions: {str(e)}", operation="recover",
                               table="executions")
        finally:
            db.close()

        recovered = []
        for (execution_id,) in rows:
            if self.has_writer(execution_id):
                continue
            writer = self.open_writer(execution_id)
            try:
                record = writer.record
                now = utcnow()
                nodes = []
                for node in record.node_executions:
                    if node.status == NodeStatus.RUNNING:
                        nodes.append(node.model_copy(update={
                            "status": NodeStatus.FAILED, "end_time": now,
                            "error": NodeError(message="Interrupted by engine restart", cause=ErrorCause.CANCELLED)
                        }))
                    elif node.status == NodeStatus.PENDING:
                        nodes.append(node.model_copy(update={
                            "status": NodeStatus.SKIPPED, "skip_reason": SkipReason.RUN_ABORTED, "end_time": now
                        }))
                entry = ExecutionErrorEntry(
                    code="SYSTEM_ERROR",
                    message="Execution interrupted by engine restart",
                    scope=ErrorScope.SYSTEM
                )
                writer.set_nodes(
                    nodes,
                    status=ExecutionStatus.FAILED,
                    end_time=now,
                    errors=list(record.errors) + [entry],
                    primary_error=entry
                )
                recovered.append(execution_id)
            finally:
                writer.close()

        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted executions as FAILED")
        return recovered
