"""Core Pydantic models for the workflow execution engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CamelModel(BaseModel):
    """Base model serialising with camelCase aliases and accepting both spellings."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenModel(CamelModel):
    """Immutable model; updates go through ``model_copy(update=...)``."""
    model_config = ConfigDict(frozen=True)


class ExecutionStatus(str, Enum):
    """Workflow-level execution status."""
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class NodeStatus(str, Enum):
    """Node-level execution status."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.FAILED, NodeStatus.SKIPPED)


class ErrorCause(str, Enum):
    """Normalised cause attached to a failed node."""
    NODE_EXCEPTION = "NODE_EXCEPTION"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    UNKNOWN_NODE_TYPE = "UNKNOWN_NODE_TYPE"


class SkipReason(str, Enum):
    """Why a node ended up SKIPPED."""
    BRANCH_NOT_TAKEN = "BRANCH_NOT_TAKEN"
    UPSTREAM_FAILED = "UPSTREAM_FAILED"
    RUN_ABORTED = "RUN_ABORTED"
    CANCELLED = "CANCELLED"
    OUT_OF_SCOPE = "OUT_OF_SCOPE"


class ExecutionMode(str, Enum):
    """How an execution came to exist."""
    RUN = "RUN"
    REPLAY = "REPLAY"
    RETRY = "RETRY"


class ErrorScope(str, Enum):
    """Which layer an execution error belongs to."""
    WORKFLOW = "WORKFLOW"
    EXECUTION = "EXECUTION"
    NODE = "NODE"
    SYSTEM = "SYSTEM"


class NodeLogLevel(str, Enum):
    """Levels of the per-execution log stream."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


# Workflow definition

class NodeSpec(CamelModel):
    """A typed unit of work inside a workflow."""
    id: str = Field(..., description="Unique identifier of the node within the workflow")
    type: str = Field(..., description="Node type, selects the handler")
    name: Optional[str] = Field(None, description="Display name, usable in expressions")
    config: Dict[str, Any] = Field(default_factory=dict, description="Handler configuration")
    inputs: Optional[Union[List[Any], Dict[str, Any]]] = Field(
        None, description="Declared inputs: legacy [{name, value}] sequence or a mapping"
    )
    value: Any = Field(None, description="Direct value kept for older definitions")
    credentials: Dict[str, str] = Field(default_factory=dict, description="Credential references by slot")
    continue_on_fail: bool = Field(False, description="Let the run proceed when this node fails")
    timeout: Optional[float] = Field(None, description="Node timeout in seconds")
    retries: Optional[int] = Field(None, description="Handler retries after an exception")

    @field_validator('id', 'type')
    @classmethod
    def validate_not_blank(cls, v):
        """Node id and type must be non-empty."""
        if not v or not v.strip():
            raise ValueError("Node id and type cannot be empty")
        return v.strip()

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        """Ensure timeout is positive if specified."""
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")
        return timeout

    @field_validator('retries')
    @classmethod
    def validate_retries(cls, retries):
        if retries is not None and retries < 0:
            raise ValueError("Retries cannot be negative")
        return retries

    @property
    def has_direct_value(self) -> bool:
        """True when ``value`` was given explicitly, even as null."""
        return "value" in self.model_fields_set

    @property
    def label(self) -> str:
        return self.name or self.id


class Edge(CamelModel):
    """Directed connection between two nodes."""
    id: Optional[str] = Field(None, description="Edge identifier")
    source: str = Field(..., description="Source node id")
    target: str = Field(..., description="Target node id")
    source_handle: Optional[str] = Field(None, description="Branch discriminator on the source node")
    target_handle: Optional[str] = Field(None, description="Input slot on the target node")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are non-empty."""
        if not node_id or not node_id.strip():
            raise ValueError("Edge endpoints cannot be empty")
        return node_id.strip()

    @property
    def key(self) -> str:
        return self.id or f"{self.source}->{self.target}:{self.source_handle or ''}"


class WorkflowSettings(CamelModel):
    """Run settings carried by a workflow definition."""
    max_concurrency: Optional[int] = Field(None, ge=1, description="Nodes in flight at once")
    node_timeout: Optional[float] = Field(None, gt=0, description="Default node timeout in seconds")
    execution_timeout: Optional[float] = Field(None, gt=0, description="Execution timeout in seconds")
    node_retries: Optional[int] = Field(None, ge=0, description="Default handler retries")


class WorkflowDefinition(CamelModel):
    """Complete definition of a workflow graph.

    Structural checks (dangling edges, cycles, duplicates) are done by
    WorkflowGraph so that they surface as typed validation errors.
    """
    name: str = Field("untitled", description="Workflow name")
    description: str = Field("", description="Workflow description")
    nodes: List[NodeSpec] = Field(default_factory=list, description="Nodes of the workflow")
    edges: List[Edge] = Field(default_factory=list, description="Edges of the workflow")
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings, description="Run settings")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Workflow variables for expressions")

    def to_storage(self) -> Dict[str, Any]:
        """JSON-ready dump that keeps which optional fields were actually given."""
        return self.model_dump(mode="json", exclude_unset=True)


class ValidationIssue(CamelModel):
    """One validation error or warning."""
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None


class ValidationResult(CamelModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


class SavedWorkflow(CamelModel):
    """A workflow definition stored by the WorkflowManager."""
    id: str
    definition: WorkflowDefinition
    created_at: datetime
    updated_at: datetime


class WorkflowSummary(CamelModel):
    """Summary information about a saved workflow."""
    id: str
    name: str
    description: str
    node_count: int
    edge_count: int
    created_at: datetime
    updated_at: datetime


# Execution state

class NodeError(FrozenModel):
    """Normalised node failure. Never carries a stack trace."""
    message: str
    cause: ErrorCause


class NodeLogLine(FrozenModel):
    """A log line emitted by a handler through its NodeContext."""
    level: NodeLogLevel
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class NodeExecutionRecord(FrozenModel):
    """Outcome of one node inside one execution."""
    node_id: str
    node_type: str
    status: NodeStatus = NodeStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = Field(None, description="Milliseconds")
    inputs: Any = None
    outputs: Any = None
    error: Optional[NodeError] = None
    attempts: int = 0
    skip_reason: Optional[SkipReason] = None
    reused: bool = Field(False, description="Copied from an earlier execution")


class ExecutionErrorEntry(FrozenModel):
    """An error attached to an execution."""
    code: str
    message: str
    scope: ErrorScope
    node_id: Optional[str] = None
    cause: Optional[ErrorCause] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionMetrics(FrozenModel):
    """Per-execution node statistics."""
    total_nodes: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    average_duration: Optional[float] = None
    fastest_node: Optional[str] = None
    slowest_node: Optional[str] = None

    @classmethod
    def from_records(cls, records: Sequence[NodeExecutionRecord]) -> "ExecutionMetrics":
        timed = [r for r in records if r.duration is not None and not r.reused
                 and r.status in (NodeStatus.SUCCESS, NodeStatus.FAILED)]
        fastest = min(timed, key=lambda r: r.duration) if timed else None
        slowest = max(timed, key=lambda r: r.duration) if timed else None
        return cls(
            total_nodes=len(records),
            completed=sum(1 for r in records if r.status == NodeStatus.SUCCESS),
            failed=sum(1 for r in records if r.status == NodeStatus.FAILED),
            skipped=sum(1 for r in records if r.status == NodeStatus.SKIPPED),
            average_duration=round(sum(r.duration for r in timed) / len(timed), 3) if timed else None,
            fastest_node=fastest.node_id if fastest else None,
            slowest_node=slowest.node_id if slowest else None,
        )


class ExecutionFingerprint(FrozenModel):
    """Cheap change-detection read: id, status and last update time."""
    id: str
    status: ExecutionStatus
    updated_at: datetime


class ExecutionRecord(FrozenModel):
    """The record of one run of a workflow.

    Replaced wholesale on every transition; readers always hold a complete
    snapshot.
    """
    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    mode: ExecutionMode = ExecutionMode.RUN
    parent_execution_id: Optional[str] = None
    from_node_id: Optional[str] = None
    scope: Optional[List[str]] = Field(None, description="Node ids this run may execute; None means all")
    definition: WorkflowDefinition
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = Field(None, description="Milliseconds")
    node_executions: List[NodeExecutionRecord] = Field(default_factory=list)
    final_result: Any = None
    errors: List[ExecutionErrorEntry] = Field(default_factory=list)
    primary_error: Optional[ExecutionErrorEntry] = None
    metrics: Optional[ExecutionMetrics] = None
    cancel_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def node_record(self, node_id: str) -> Optional[NodeExecutionRecord]:
        for record in self.node_executions:
            if record.node_id == node_id:
                return record
        return None

    def fingerprint(self) -> ExecutionFingerprint:
        return ExecutionFingerprint(id=self.id, status=self.status, updated_at=self.updated_at)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ExecutionLogEntry(FrozenModel):
    """One line of an execution's append-only log stream."""
    sequence: int
    execution_id: str
    node_id: Optional[str] = None
    level: NodeLogLevel
    message: str
    timestamp: datetime


class LogPage(CamelModel):
    """A page of execution log lines."""
    items: List[ExecutionLogEntry]
    page: int
    limit: int
    total: int
    has_more: bool


class ExecutionSummary(CamelModel):
    """Row of an execution history listing."""
    id: str
    workflow_id: str
    status: ExecutionStatus
    mode: ExecutionMode
    parent_execution_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    created_at: datetime
    updated_at: datetime


class ExecutionPage(CamelModel):
    """A page of execution summaries."""
    items: List[ExecutionSummary]
    page: int
    limit: int
    total: int
    has_more: bool


class ExecutionStats(CamelModel):
    """Aggregate numbers over a workflow's execution history."""
    workflow_id: Optional[str] = None
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    average_duration: Optional[float] = None
    success_rate: Optional[float] = None
    last_execution_at: Optional[datetime] = None


class NodeTestResult(CamelModel):
    """Result of running a single node in isolation."""
    success: bool
    status: NodeStatus
    output: Any = None
    logs: List[NodeLogLine] = Field(default_factory=list)
    error: Optional[NodeError] = None
    duration: Optional[float] = None
